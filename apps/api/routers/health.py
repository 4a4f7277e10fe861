"""
Health check endpoints.
"""

import logging

from fastapi import APIRouter
from fastapi.responses import JSONResponse
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
import redis.asyncio as redis

from config import settings
from database import engine

router = APIRouter()
logger = logging.getLogger(__name__)


async def _check_database() -> str:
    try:
        async with engine.connect() as conn:
            await conn.execute(text("SELECT 1"))
    except (SQLAlchemyError, OSError) as exc:
        logger.warning("health_database_down reason=%s", exc)
        return f"down: {exc}"
    return "up"


async def _check_redis() -> str:
    client = redis.from_url(settings.REDIS_URL)
    try:
        await client.ping()
    except (redis.RedisError, OSError) as exc:
        return f"down: {exc}"
    finally:
        await client.aclose()
    return "up"


@router.get("/health")
async def health_check():
    """
    Health check endpoint.
    Redis only backs rate limiting, so an unreachable Redis is reported but
    does not degrade the service.
    """
    database = await _check_database()
    return {
        "status": "healthy" if database == "up" else "degraded",
        "api": "up",
        "database": database,
        "redis": await _check_redis(),
        "billing": "enabled" if settings.BILLING_ENABLED else "disabled",
    }


@router.get("/health/ready")
async def readiness_check():
    """Kubernetes-style readiness check."""
    missing = []
    if await _check_database() != "up":
        missing.append("DATABASE_URL")
    if settings.BILLING_ENABLED and not (settings.PAYMENT_WEBHOOK_SECRET or "").strip():
        missing.append("PAYMENT_WEBHOOK_SECRET")

    if missing:
        return JSONResponse(
            status_code=503,
            content={"ready": False, "missing": missing},
        )
    return {"ready": True}


@router.get("/health/live")
async def liveness_check():
    """Kubernetes-style liveness check."""
    return {"alive": True}
