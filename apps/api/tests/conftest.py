import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from database import Base
from main import app
from routers import rate_limit
from services.credit_plans import CREDIT_PLANS, MODEL_CREDIT_COSTS, PlanCatalog
from services.credits import CreditsManager
from services.ledger_store import LedgerStore


@pytest.fixture(autouse=True)
def reset_local_rate_limit_counters():
    """Keep in-memory rate-limit state isolated between tests."""
    previous = getattr(app.state, "disable_rate_limits", False)
    app.state.disable_rate_limits = True
    rate_limit._local_counters.clear()
    yield
    rate_limit._local_counters.clear()
    app.state.disable_rate_limits = previous


@pytest_asyncio.fixture
async def session_maker(tmp_path):
    db_path = tmp_path / "credits.db"
    engine = create_async_engine(f"sqlite+aiosqlite:///{db_path}", connect_args={"timeout": 15})
    maker = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield maker
    await engine.dispose()


@pytest.fixture
def catalog():
    return PlanCatalog(CREDIT_PLANS, MODEL_CREDIT_COSTS, default_model_cost=1)


@pytest.fixture
def store(session_maker):
    return LedgerStore(session_maker, timeout_seconds=15)


@pytest.fixture
def manager(store, catalog):
    return CreditsManager(store, catalog, free_tier_credits=10)
