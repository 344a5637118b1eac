"""
Task processor worker - polls the task_queue table and dispatches tasks.
Every pipeline stage, deferred publish and metrics fetch runs through here.

Uses BRPOP on a Redis notification key for near-instant wake on new tasks,
with a 30-second timeout falling back to DB poll as safety net.

Retries follow the per-stage policy in src.services.pipeline: stage backoff,
an attempt ceiling and, for publish tasks, a retry-until horizon. Whichever
is hit first ends retrying and runs the exhaustion handler.
"""
import asyncio
import logging
import uuid
from datetime import datetime, timedelta, timezone

from sqlalchemy import select, and_
from sqlalchemy.ext.asyncio import AsyncSession

from src.database import async_session_factory
from src.models.task_queue import TaskQueue, TaskStatus
from src.services.content_pipeline import (
    run_brief,
    run_draft,
    run_moderation,
    run_outline,
    run_process_topic,
    run_variants,
)
from src.services.pipeline import PipelineDataError, TaskType, get_policy, handle_exhausted
from src.services.task_dispatch import TASK_NOTIFY_KEY
from src.utils.cache import make_key
from src.utils.logging import correlation_scope
from src.utils.timezone import ensure_utc

logger = logging.getLogger(__name__)

POLL_INTERVAL_SECONDS = 30  # Fallback DB poll interval
MAX_TASKS_PER_CYCLE = 10
BRPOP_TIMEOUT = 30  # seconds to wait for Redis notification
HEARTBEAT_KEY = make_key("worker_health", "task_processor")


async def _heartbeat():
    """Store heartbeat timestamp in Redis."""
    try:
        from src.utils.cache import get_redis
        redis = await get_redis()
        await redis.set(HEARTBEAT_KEY, datetime.now(timezone.utc).isoformat(), ex=120)
    except Exception as e:
        logger.debug("Heartbeat write failed: %s", str(e))


async def run_task_processor():
    """Main loop - wait for notification or poll every 30s."""
    logger.info("Task processor started (adaptive polling, BRPOP %ds timeout)", BRPOP_TIMEOUT)

    while True:
        try:
            await process_cycle()
        except Exception as e:
            logger.error("Task processor cycle error: %s", str(e), exc_info=True)

        await _heartbeat()

        # Wait for either a Redis notification or timeout
        try:
            from src.utils.cache import get_redis
            redis = await get_redis()
            result = await redis.brpop(TASK_NOTIFY_KEY, timeout=BRPOP_TIMEOUT)
            if result:
                # Drain any additional notifications to avoid stacking
                while await redis.rpop(TASK_NOTIFY_KEY):
                    pass
        except Exception as e:
            logger.debug("Redis BRPOP unavailable, falling back to sleep: %s", str(e))
            await asyncio.sleep(POLL_INTERVAL_SECONDS)


async def process_cycle() -> int:
    """Find and execute pending tasks that are due. Returns how many ran."""
    ran = 0
    async with async_session_factory() as db:
        while ran < MAX_TASKS_PER_CYCLE:
            task = await _claim_next(db)
            if task is None:
                break
            await _execute_task(db, task)
            await db.commit()
            ran += 1

    if ran:
        logger.info("Processed %d tasks", ran)
    return ran


async def _claim_next(db: AsyncSession):
    """
    Claim the highest-priority due task and commit the claim.

    One task at a time: started_at is stamped right before the task runs,
    so the sweeper's stuck-task timeout never fires on a task still waiting
    its turn behind slow ones.
    """
    now = datetime.now(timezone.utc)
    result = await db.execute(
        select(TaskQueue)
        .where(
            and_(
                TaskQueue.status == TaskStatus.PENDING,
                TaskQueue.scheduled_at <= now,
            )
        )
        .order_by(TaskQueue.priority.desc(), TaskQueue.created_at)
        .limit(1)
        .with_for_update(skip_locked=True)
    )
    task = result.scalars().first()
    if task is None:
        return None

    task.status = TaskStatus.PROCESSING
    task.started_at = datetime.now(timezone.utc)
    await db.commit()
    return task


async def _execute_task(db: AsyncSession, task: TaskQueue) -> None:
    """Execute a single task and handle success/failure."""
    policy = get_policy(task.task_type)
    payload = task.payload or {}

    with correlation_scope(task.correlation_id):
        try:
            result = await asyncio.wait_for(
                _dispatch_task(task.task_type, payload),
                timeout=policy.timeout,
            )
            task.status = TaskStatus.COMPLETED
            task.completed_at = datetime.now(timezone.utc)
            task.result_data = result
            logger.info(
                "Task completed: id=%s type=%s", str(task.id)[:8], task.task_type,
                extra={"task_type": task.task_type},
            )
            return

        except PipelineDataError as e:
            task.retry_count = task.retry_count + 1
            exhausted, error_msg = True, str(e)

        except asyncio.TimeoutError:
            task.retry_count = task.retry_count + 1
            error_msg = f"Timed out after {policy.timeout}s"
            exhausted = _is_exhausted(task)

        except Exception as e:
            task.retry_count = task.retry_count + 1
            error_msg = str(e) or type(e).__name__
            exhausted = _is_exhausted(task)

        task.error_message = error_msg[:2000]
        if exhausted:
            task.status = TaskStatus.FAILED
            task.completed_at = datetime.now(timezone.utc)
            logger.error(
                "Task failed: id=%s type=%s attempts=%d error=%s",
                str(task.id)[:8], task.task_type, task.retry_count, error_msg,
                extra={"task_type": task.task_type},
            )
            try:
                await handle_exhausted(task.task_type, payload, error_msg)
            except Exception as e:
                logger.error(
                    "Exhaustion handler failed for task %s: %s", str(task.id)[:8], str(e),
                    exc_info=True, extra={"task_type": task.task_type},
                )
            return

        backoff = policy.backoff_for(task.retry_count)
        task.status = TaskStatus.PENDING
        task.started_at = None
        task.scheduled_at = datetime.now(timezone.utc) + timedelta(seconds=backoff)
        logger.warning(
            "Task retry %d/%d: id=%s type=%s backoff=%ds error=%s",
            task.retry_count, task.max_retries,
            str(task.id)[:8], task.task_type, backoff, error_msg,
            extra={"task_type": task.task_type},
        )


def _is_exhausted(task: TaskQueue) -> bool:
    if task.retry_count >= task.max_retries:
        return True
    horizon = ensure_utc(task.retry_until)
    return horizon is not None and datetime.now(timezone.utc) >= horizon


async def _dispatch_task(task_type: str, payload: dict) -> dict:
    """
    Route task to its handler function.
    Each handler receives the payload dict and returns a result dict.
    """
    handlers = {
        TaskType.PROCESS_TOPIC: run_process_topic,
        TaskType.GENERATE_BRIEF: run_brief,
        TaskType.GENERATE_OUTLINE: run_outline,
        TaskType.GENERATE_DRAFT: run_draft,
        TaskType.MODERATE_CONTENT: run_moderation,
        TaskType.GENERATE_VARIANTS: run_variants,
        TaskType.PUBLISH_DRAFT: _handle_publish_draft,
        TaskType.PUBLISH_JOB: _handle_publish_job,
        TaskType.FETCH_METRICS: _handle_fetch_metrics,
    }

    handler = handlers.get(task_type)
    if not handler:
        logger.warning("Unknown task type: %s", task_type)
        return {"status": "skipped", "reason": f"unknown task type: {task_type}"}

    return await handler(payload)


def _payload_uuid(payload: dict, key: str) -> uuid.UUID:
    try:
        return uuid.UUID(str(payload[key]))
    except (KeyError, ValueError) as e:
        raise PipelineDataError(f"Task payload has no valid {key}") from e


async def _handle_publish_draft(payload: dict) -> dict:
    """Publish (or hold until publish_at) an approved draft."""
    from src.models.content_draft import ContentDraft
    from src.services.publishing_engine import get_engine
    from src.services.publishing_orchestrator import PublishFailedError

    async with async_session_factory() as db:
        draft = await db.get(ContentDraft, _payload_uuid(payload, "draft_id"))
        if draft is None or draft.deleted_at is not None:
            raise PipelineDataError(f"Draft {payload.get('draft_id')} not found")

        result = await get_engine().publish_draft(db, draft, payload.get("options") or {})
        await db.commit()

    if result.get("skipped") or result.get("scheduled") or result.get("success"):
        return _summarize(result)
    if result.get("deferred"):
        # Deferred legs carry their own publish_job tasks
        return _summarize(result)
    if result.get("retryable"):
        raise PublishFailedError("; ".join(result.get("errors") or []) or "All publish legs failed")
    raise PipelineDataError("; ".join(result.get("errors") or []) or "All publish legs failed")


async def _handle_publish_job(payload: dict) -> dict:
    """Re-run one deferred or retried publish leg."""
    from src.models.publish_job import PublishJob, PublishJobStatus
    from src.services.publishing_orchestrator import PublishFailedError, get_orchestrator

    async with async_session_factory() as db:
        job = await db.get(PublishJob, _payload_uuid(payload, "publish_job_id"))
        if job is None:
            raise PipelineDataError(f"Publish job {payload.get('publish_job_id')} not found")
        if job.status in (PublishJobStatus.PUBLISHED, PublishJobStatus.CANCELLED):
            return {"status": "skipped", "reason": f"job is {job.status}"}

        leg = await get_orchestrator().run_job(db, job)
        await db.commit()

    if leg["success"] or leg["deferred"]:
        return leg
    if leg["retryable"]:
        raise PublishFailedError(leg["error"] or "Publish failed")
    raise PipelineDataError(leg["error"] or "Publish failed")


async def _handle_fetch_metrics(payload: dict) -> dict:
    """Collect engagement metrics for a published social post."""
    from src.models.publish_job import PublishJob
    from src.services.metrics_collector import collect_for_job

    async with async_session_factory() as db:
        job = await db.get(PublishJob, _payload_uuid(payload, "publish_job_id"))
        if job is None:
            raise PipelineDataError(f"Publish job {payload.get('publish_job_id')} not found")
        result = await collect_for_job(db, job)
        await db.commit()
        return result


def _summarize(result: dict) -> dict:
    """JSON-safe subset of an orchestrator result for task.result_data."""
    return {
        "success": result.get("success", False),
        "scheduled": result.get("scheduled", False),
        "skipped": result.get("skipped", False),
        "publish_at": result.get("publish_at"),
        "deferred": result.get("deferred") or [],
        "errors": result.get("errors") or [],
    }
