"""
Health check endpoints.
"""

import logging

from fastapi import APIRouter
from fastapi.responses import JSONResponse
from sqlalchemy import text
import redis.asyncio as redis

from config import settings
from database import engine

router = APIRouter()
logger = logging.getLogger(__name__)


async def _database_status() -> str:
    try:
        async with engine.connect() as conn:
            await conn.execute(text("SELECT 1"))
        return "up"
    except Exception as exc:
        logger.warning("Database health check failed: %s", exc)
        return f"down: {exc}"


async def _redis_status() -> str:
    try:
        client = redis.from_url(settings.REDIS_URL)
        try:
            await client.ping()
        finally:
            await client.aclose()
        return "up"
    except Exception as exc:
        logger.warning("Redis health check failed: %s", exc)
        return f"down: {exc}"


@router.get("/health")
async def health_check():
    """
    Health check endpoint.
    Returns overall system health status.
    """
    health_status = {
        "status": "healthy",
        "api": "up",
        "database": await _database_status(),
        "redis": await _redis_status(),
        "expiry_sweep": "enabled" if settings.EXPIRY_SWEEP_ENABLED else "disabled",
    }
    if health_status["database"] != "up" or health_status["redis"] != "up":
        health_status["status"] = "degraded"
    return health_status


@router.get("/health/ready")
async def readiness_check():
    """Readiness probe: the ledger store must be reachable."""
    database = await _database_status()
    if database != "up":
        return JSONResponse(
            status_code=503,
            content={"ready": False, "database": database},
        )
    return {"ready": True}


@router.get("/health/live")
async def liveness_check():
    """Kubernetes-style liveness probe."""
    return {"alive": True}
