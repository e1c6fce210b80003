"""Health check route."""

import asyncio

import redis
from fastapi import APIRouter
from sqlalchemy import text

from speakeval.config import get_settings
from speakeval.schemas.schemas import HealthResponse
from speakeval.services.storage import storage_service

router = APIRouter(tags=["System"])

settings = get_settings()


def _redis_ok() -> bool:
    try:
        redis.from_url(settings.redis_url, socket_connect_timeout=2).ping()
        return True
    except Exception:
        return False


@router.get(
    "/health",
    response_model=HealthResponse,
    summary="Health check",
    description="Check the health status of the service and its dependencies.",
)
async def health_check():
    """
    Health check endpoint.

    Returns the status of:
    - Database connection
    - Redis connection (Celery broker)
    - Object storage connection
    """
    redis_status = "ok" if await asyncio.to_thread(_redis_ok) else "error"
    storage_status = "ok" if await asyncio.to_thread(storage_service.health_check) else "error"

    db_status = "ok"
    try:
        from speakeval.db.session import get_engine

        async with get_engine().connect() as conn:
            await conn.execute(text("SELECT 1"))
    except Exception:
        db_status = "error"

    overall_status = "healthy"
    if any(s == "error" for s in [redis_status, storage_status, db_status]):
        overall_status = "degraded"

    return HealthResponse(
        status=overall_status,
        version="1.0.0",
        database=db_status,
        redis=redis_status,
        storage=storage_status,
    )
