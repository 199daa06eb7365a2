"""
Health check endpoints.
"""

from fastapi import APIRouter
from fastapi.responses import JSONResponse
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
import redis.asyncio as redis
from redis.exceptions import RedisError

from config import settings
from database import engine
from services.entitlements import ENTITLEMENTS

router = APIRouter()


async def _database_up() -> bool:
    try:
        async with engine.connect() as conn:
            await conn.execute(text("SELECT 1"))
        return True
    except (SQLAlchemyError, OSError):
        return False


@router.get("/health")
async def health_check():
    """
    Overall service health: store, Redis and payment provider configuration.
    """
    health_status = {
        "status": "healthy",
        "api": "up",
        "database": "unknown",
        "redis": "unknown",
        "payment_provider": "configured" if settings.PORTONE_API_KEY and settings.PORTONE_API_SECRET else "missing",
        "entitlement_version": ENTITLEMENTS.version,
    }

    if await _database_up():
        health_status["database"] = "up"
    else:
        health_status["database"] = "down"
        health_status["status"] = "degraded"

    try:
        client = redis.from_url(settings.REDIS_URL)
        try:
            await client.ping()
        finally:
            await client.aclose()
        health_status["redis"] = "up"
    except (RedisError, OSError):
        # Rate limiting falls back to local counters
        health_status["redis"] = "down"

    return health_status


@router.get("/health/ready")
async def readiness_check():
    """Kubernetes-style readiness probe."""
    missing = []
    if not settings.PORTONE_API_KEY or not settings.PORTONE_API_SECRET:
        missing.append("PORTONE_API_KEY/PORTONE_API_SECRET")
    if not await _database_up():
        missing.append("database")

    if missing:
        return JSONResponse(
            status_code=503,
            content={"ready": False, "missing": missing},
        )
    return {"ready": True}


@router.get("/health/live")
async def liveness_check():
    """Kubernetes-style liveness probe."""
    return {"alive": True}
