"""
Task dispatch - the only way work enters the task queue.

With db= the task joins the caller's transaction, so a stage's state change
and the task that continues it commit together. Without it the task is
committed in a session of its own.

Tasks due now also get a Redis wake-up so the task processor's BRPOP returns
at once instead of on its next poll.
"""
import logging
from datetime import datetime, timedelta, timezone
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncSession

from src.database import async_session_factory
from src.models.task_queue import TaskQueue
from src.utils.cache import make_key
from src.utils.logging import get_correlation_id

logger = logging.getLogger(__name__)

TASK_NOTIFY_KEY = make_key("task_notify")


def build_task(
    task_type: str,
    payload: Optional[dict],
    priority: int,
    max_retries: int,
    run_at: datetime,
    retry_until: Optional[datetime],
) -> TaskQueue:
    return TaskQueue(
        task_type=task_type,
        payload=payload or {},
        priority=priority,
        max_retries=max_retries,
        scheduled_at=run_at,
        retry_until=retry_until,
        correlation_id=get_correlation_id(),
    )


async def notify_processor(task_id: str) -> None:
    """Best-effort wake-up; the row stays the source of truth."""
    try:
        from src.utils.cache import get_redis
        redis = await get_redis()
        await redis.lpush(TASK_NOTIFY_KEY, task_id)
    except Exception as e:
        logger.debug("Task notify failed for %s: %s", task_id[:8], str(e))


async def enqueue_task(
    task_type: str,
    payload: Optional[dict] = None,
    priority: int = 5,
    delay_seconds: int = 0,
    max_retries: int = 3,
    db: Optional[AsyncSession] = None,
    retry_until: Optional[datetime] = None,
) -> str:
    """
    Queue one task and return its id.

    priority runs 0 (low) to 10 (high). delay_seconds holds the task back
    from the processor; retry_until stops retries past that instant.
    """
    now = datetime.now(timezone.utc)
    run_at = now + timedelta(seconds=delay_seconds) if delay_seconds > 0 else now
    task = build_task(task_type, payload, priority, max_retries, run_at, retry_until)

    if db is None:
        async with async_session_factory() as session:
            session.add(task)
            await session.commit()
    else:
        db.add(task)
        await db.flush()
    task_id = str(task.id)

    logger.info(
        "Task queued: %s id=%s run_at=%s",
        task_type, task_id[:8], run_at.isoformat(),
        extra={"task_type": task_type},
    )
    if delay_seconds <= 0:
        await notify_processor(task_id)
    return task_id
