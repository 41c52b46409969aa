"""
AI Workspace Credits - FastAPI Backend
Credit balances, usage accounting and purchase webhooks.
"""

import asyncio
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from config import settings, validate_security_settings
from database import engine, Base
import models  # noqa: F401
from routers import health, billing, webhooks
from services.billing_errors import BillingError, StorageUnavailable
from services.credits import get_credits_manager


async def _expire_stale_purchases() -> int:
    return await get_credits_manager().expire_stale_purchases(settings.PENDING_PURCHASE_TIMEOUT_MINUTES)


async def _periodic_purchase_expiry() -> None:
    interval_minutes = max(int(settings.PURCHASE_EXPIRY_INTERVAL_MINUTES), 0)
    if interval_minutes <= 0:
        return
    while True:
        await asyncio.sleep(interval_minutes * 60)
        try:
            expired = await _expire_stale_purchases()
            if expired:
                print(f"⌛ Purchase expiry tick: failed {expired} abandoned checkouts.")
        except Exception as exc:
            print(f"⚠️ Purchase expiry tick failed: {exc}")


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan handler for startup/shutdown."""
    # Startup
    print("🚀 Starting AI Workspace Credits API...")
    validate_security_settings()
    if settings.AUTO_CREATE_DB_SCHEMA:
        try:
            async with engine.begin() as conn:
                await conn.run_sync(Base.metadata.create_all)
            print("🗄️ Database schema verified.")
        except Exception as e:
            print(f"⚠️ Database bootstrap skipped: {e}")
    try:
        expired = await _expire_stale_purchases()
        if expired:
            print(f"♻️ Expired {expired} stale pending purchases after startup.")
    except Exception as exc:
        print(f"⚠️ Stale purchase expiry skipped: {exc}")
    expiry_task = None
    if settings.BILLING_ENABLED and int(settings.PURCHASE_EXPIRY_INTERVAL_MINUTES) > 0:
        expiry_task = asyncio.create_task(_periodic_purchase_expiry())
        print(
            "📅 Purchase expiry loop enabled "
            f"(every {int(settings.PURCHASE_EXPIRY_INTERVAL_MINUTES)} min)."
        )
    yield
    # Shutdown
    if expiry_task is not None:
        expiry_task.cancel()
        try:
            await expiry_task
        except asyncio.CancelledError:
            pass
    print("👋 Shutting down API...")


app = FastAPI(
    title="AI Workspace Credits API",
    description="Prepaid credit balances, per-model usage accounting and credit bundle purchases",
    version="0.1.0",
    lifespan=lifespan,
)

# CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(BillingError)
async def billing_error_handler(request: Request, exc: BillingError):
    headers = {"Retry-After": "5"} if isinstance(exc, StorageUnavailable) else None
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.to_dict()}, headers=headers)



# Include routers
app.include_router(health.router, tags=["Health"])
app.include_router(billing.router, prefix="/billing", tags=["Billing"])
app.include_router(webhooks.router, prefix="/webhooks", tags=["Webhooks"])


@app.get("/")
async def root():
    """Root endpoint."""
    return {
        "name": "AI Workspace Credits API",
        "version": "0.1.0",
        "status": "running"
    }
