"""
Health check endpoints - used by load balancers and monitoring.

- GET /health       - basic liveness (always 200 if app running)
- GET /health/ready - readiness check (DB + Redis + queue depth + worker heartbeat)
"""
import logging
from datetime import datetime, timezone

from fastapi import APIRouter, Depends
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

from intakeflow.database import get_db

logger = logging.getLogger(__name__)
router = APIRouter(tags=["health"])

VERSION = "1.0.0"


@router.get("/health")
async def health_check():
    """Basic liveness check - returns 200 if the app is running."""
    return {
        "status": "healthy",
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "version": VERSION,
    }


@router.get("/health/ready")
async def readiness_check(
    db: AsyncSession = Depends(get_db),
):
    """
    Readiness check - verifies database and Redis connectivity.
    Redis is reported but does not make the service unready: the queue lives in the database.
    """
    checks = {"database": False, "redis": False}
    details: dict = {}

    try:
        await db.execute(text("SELECT 1"))
        checks["database"] = True
    except Exception as e:
        logger.error("Database health check failed: %s", str(e))

    if checks["database"]:
        try:
            from intakeflow.services.job_queue import queue_depth
            details["queue"] = await queue_depth()
        except Exception as e:
            logger.warning("Queue depth check failed: %s", str(e))

    try:
        from intakeflow.utils.redis_client import get_redis
        from intakeflow.workers.webhook_worker import HEARTBEAT_KEY
        redis = await get_redis()
        await redis.ping()
        checks["redis"] = True
        details["worker_heartbeat"] = await redis.get(HEARTBEAT_KEY)
    except Exception as e:
        logger.warning("Redis health check failed: %s", str(e))

    return {
        "status": "ready" if checks["database"] else "unavailable",
        "degraded": not all(checks.values()),
        "checks": checks,
        "details": details,
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }
