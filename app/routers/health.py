import logging
from datetime import datetime, timezone

import psutil
from fastapi import APIRouter, Depends, status
from fastapi.responses import JSONResponse
from redis.asyncio import RedisError
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlmodel.ext.asyncio.session import AsyncSession

from app.cache.layer import CacheLayer, get_cache
from app.core.config import Settings, SettingsDep
from app.database import get_db

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/health", tags=["health"])


async def _check_database(db: AsyncSession) -> dict:
    try:
        conn = await db.connection()
        await conn.execute(text("SELECT 1"))
        return {"status": "up"}
    except SQLAlchemyError as e:
        logger.error(f"Database health check failed: {e}")
        return {"status": "down", "message": str(e)}


async def _check_redis(cache: CacheLayer) -> dict:
    try:
        await cache.store.ping()
        return {"status": "up", "message": "Redis is up"}
    except (RedisError, RuntimeError) as e:
        logger.error(f"Redis health check failed: {e}")
        return {"status": "down", "message": str(e)}


def _check_memory(settings: Settings) -> dict:
    rss_mb = psutil.Process().memory_info().rss / (1024 * 1024)
    if rss_mb > settings.health_max_rss_mb:
        logger.warning(f"Process RSS {rss_mb:.0f}MB exceeds {settings.health_max_rss_mb}MB")
        return {"status": "down", "rss_mb": round(rss_mb, 1)}
    return {"status": "up", "rss_mb": round(rss_mb, 1)}


async def _report(db: AsyncSession, cache: CacheLayer, settings: Settings) -> JSONResponse:
    details = {
        "database": await _check_database(db),
        "redis": await _check_redis(cache),
        "memory_rss": _check_memory(settings),
    }
    healthy = all(check["status"] == "up" for check in details.values())
    return JSONResponse(
        status_code=status.HTTP_200_OK if healthy else status.HTTP_503_SERVICE_UNAVAILABLE,
        content={"status": "ok" if healthy else "error", "details": details},
    )


@router.get("")
async def health_check(
    settings: SettingsDep,
    db: AsyncSession = Depends(get_db),
    cache: CacheLayer = Depends(get_cache),
):
    """Check database and Redis connectivity and process memory"""
    return await _report(db, cache, settings)


@router.get("/liveness")
async def liveness():
    return {"status": "ok", "timestamp": datetime.now(timezone.utc).isoformat()}


@router.get("/readiness")
async def readiness(
    settings: SettingsDep,
    db: AsyncSession = Depends(get_db),
    cache: CacheLayer = Depends(get_cache),
):
    """Ready when the database and Redis answer and memory is within bounds"""
    return await _report(db, cache, settings)
