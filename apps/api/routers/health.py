"""
Health check endpoints.
"""

from fastapi import APIRouter
from fastapi.responses import JSONResponse
from sqlalchemy import text
import redis.asyncio as redis

from config import settings
from database import engine
from services.payments import gateway_capabilities

router = APIRouter()


async def _database_status() -> str:
    try:
        async with engine.connect() as conn:
            await conn.execute(text("SELECT 1"))
        return "up"
    except Exception as exc:
        return f"down: {exc}"


async def _redis_status() -> str:
    if not settings.USAGE_RETRY_QUEUE_ENABLED:
        return "disabled"
    try:
        client = redis.from_url(settings.REDIS_URL, socket_connect_timeout=1)
        try:
            await client.ping()
        finally:
            await client.aclose()
        return "up"
    except Exception as exc:
        return f"down: {exc}"


@router.get("/health")
async def health_check():
    """
    Overall service health.
    The ledger database is required; Redis only backs the usage replay queue.
    """
    database = await _database_status()
    redis_state = await _redis_status()
    status = "healthy"
    if database != "up" or redis_state.startswith("down"):
        status = "degraded"
    return {
        "status": status,
        "api": "up",
        "database": database,
        "redis": redis_state,
        "billing_enabled": bool(settings.BILLING_ENABLED),
        "gateways": gateway_capabilities(),
    }


@router.get("/health/ready")
async def readiness_check():
    """Kubernetes-style readiness check."""
    database = await _database_status()
    if database != "up":
        return JSONResponse(
            status_code=503,
            content={"ready": False, "database": database},
        )
    return {"ready": True}


@router.get("/health/live")
async def liveness_check():
    """Kubernetes-style liveness check."""
    return {"alive": True}
