"""
Health check
"""

import logging

from fastapi import APIRouter
from sqlalchemy import text

from app.core.deps import RedisDep, SessionDep

logger = logging.getLogger(__name__)

router = APIRouter()


@router.get("/health")
async def health_check(db: SessionDep, redis: RedisDep):
    status = {"api": "ok", "db": "ok", "redis": "ok"}

    try:
        await db.execute(text("SELECT 1"))
    except Exception as e:
        logger.warning(f"Health check: database unavailable: {e}")
        status["db"] = "error"

    try:
        await redis.ping()
    except Exception as e:
        logger.warning(f"Health check: redis unavailable: {e}")
        status["redis"] = "error"

    return status
