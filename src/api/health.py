"""
Health check endpoints - used by load balancers, Docker healthcheck, and monitoring.

- GET /health       - basic liveness (always 200 if app running)
- GET /health/ready - readiness check (DB + Redis)
- GET /health/deep  - deep check (DB + Redis + worker heartbeats + queue backlog)
"""
import logging
from datetime import datetime, timezone
from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import func, select, text
from src.database import get_db
from src.models.task_queue import TaskQueue, TaskStatus
from src.utils.cache import make_key

logger = logging.getLogger(__name__)
router = APIRouter(tags=["health"])

VERSION = "1.0.0"
WORKER_NAMES = ("task_processor", "pipeline_sweeper")


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
    """Readiness check - verifies database and Redis connectivity."""
    checks = {
        "database": (await _check_database(db))["healthy"],
        "redis": (await _check_redis())["healthy"],
    }
    return {
        "status": "ready" if all(checks.values()) else "degraded",
        "checks": checks,
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }


@router.get("/health/deep")
async def deep_health_check(
    db: AsyncSession = Depends(get_db),
):
    """
    Deep health check - database, Redis, worker heartbeats and task backlog.
    Database and Redis are critical; the rest only degrade the status.
    """
    checks = {
        "database": await _check_database(db),
        "redis": await _check_redis(),
        "workers": await _check_workers(),
        "task_queue": await _check_task_queue(db),
    }

    critical_healthy = checks["database"]["healthy"] and checks["redis"]["healthy"]
    if all(c.get("healthy", False) for c in checks.values()):
        status = "healthy"
    elif critical_healthy:
        status = "degraded"
    else:
        status = "unhealthy"

    return {
        "status": status,
        "checks": checks,
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "version": VERSION,
    }


async def _check_database(db: AsyncSession) -> dict:
    try:
        result = await db.execute(text("SELECT 1"))
        result.scalar()
        return {"healthy": True}
    except Exception as e:
        logger.error("Health: database check failed: %s", str(e))
        return {"healthy": False, "error": str(e)}


async def _check_redis() -> dict:
    try:
        from src.utils.cache import get_redis
        redis = await get_redis()
        await redis.ping()
        return {"healthy": True}
    except Exception as e:
        logger.warning("Health: Redis check failed: %s", str(e))
        return {"healthy": False, "error": str(e)}


async def _check_workers() -> dict:
    """Check worker heartbeat timestamps in Redis."""
    try:
        from src.utils.cache import get_redis
        redis = await get_redis()

        workers = {}
        for name in WORKER_NAMES:
            heartbeat = await redis.get(make_key("worker_health", name))
            workers[name] = {
                "healthy": heartbeat is not None,
                "last_heartbeat": heartbeat,
            }
        return {"healthy": all(w["healthy"] for w in workers.values()), "workers": workers}
    except Exception as e:
        logger.debug("Health: worker heartbeat check failed: %s", str(e))
        return {"healthy": False, "note": "Unable to check worker heartbeats"}


async def _check_task_queue(db: AsyncSession) -> dict:
    """Overdue pending tasks and failures are reported, never fatal."""
    try:
        now = datetime.now(timezone.utc)
        overdue = await db.scalar(
            select(func.count()).select_from(TaskQueue).where(
                TaskQueue.status == TaskStatus.PENDING, TaskQueue.scheduled_at <= now,
            )
        )
        failed = await db.scalar(
            select(func.count()).select_from(TaskQueue).where(TaskQueue.status == TaskStatus.FAILED)
        )
        return {"healthy": True, "due_pending": int(overdue or 0), "failed": int(failed or 0)}
    except Exception as e:
        logger.warning("Health: task queue check failed: %s", str(e))
        return {"healthy": False, "error": str(e)}
