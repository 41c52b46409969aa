"""
Async database engine, declarative base and session factory.
"""

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import declarative_base

from config import settings


def _async_database_url(url: str) -> str:
    if url.startswith("postgresql://"):
        return url.replace("postgresql://", "postgresql+asyncpg://", 1)
    if url.startswith("postgres://"):
        return url.replace("postgres://", "postgresql+asyncpg://", 1)
    if url.startswith("sqlite://") and "+aiosqlite" not in url:
        return url.replace("sqlite://", "sqlite+aiosqlite://", 1)
    return url


def _connect_args(url: str) -> dict:
    # Bound connection setup and single statements so a stalled store surfaces as unavailable.
    if url.startswith("postgresql+asyncpg://"):
        timeout = max(float(settings.LEDGER_OPERATION_TIMEOUT_SECONDS), 1.0)
        return {"timeout": timeout, "command_timeout": timeout}
    if url.startswith("sqlite+aiosqlite://"):
        return {"timeout": max(float(settings.LEDGER_OPERATION_TIMEOUT_SECONDS), 1.0)}
    return {}


DATABASE_URL = _async_database_url(settings.DATABASE_URL)

engine = create_async_engine(
    DATABASE_URL,
    pool_pre_ping=True,
    connect_args=_connect_args(DATABASE_URL),
)
async_session_maker = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)

Base = declarative_base()
