"""
Pipeline sweeper - finds and recovers work stuck between pipeline stages.
Runs every 5 minutes. Everything it needs is in the database, so a crash
anywhere in the pipeline is recoverable from persisted state alone.

Actions:
- draft in a working stage whose stage task is gone or finished -> re-enqueue the stage
- draft whose stage task failed -> reject
- task stuck in processing past its stage timeout -> back to pending
- topic queued with no live task -> back to discovered
- discovered topics past their freshness -> expired
"""
import asyncio
import logging
from datetime import datetime, timedelta, timezone

from sqlalchemy import select, and_

from src.database import async_session_factory
from src.models.content_draft import ContentDraft, DraftStage
from src.models.task_queue import TaskQueue, TaskStatus
from src.models.topic import Topic, TopicStatus
from src.services.pipeline import TaskType, advance, get_policy, reject_draft
from src.services.topic_discovery import expire_old_topics, release_topic
from src.utils.cache import make_key
from src.utils.timezone import ensure_utc

logger = logging.getLogger(__name__)

SWEEP_INTERVAL_SECONDS = 300  # 5 minutes
STALE_STAGE_AFTER = timedelta(minutes=15)
STUCK_TASK_GRACE = timedelta(minutes=5)
STALE_TOPIC_AFTER = timedelta(minutes=15)
BATCH_LIMIT = 100
HEARTBEAT_KEY = make_key("worker_health", "pipeline_sweeper")

TOPIC_TASK_TYPES = (TaskType.PROCESS_TOPIC, TaskType.GENERATE_BRIEF)


async def _heartbeat():
    """Store heartbeat timestamp in Redis."""
    try:
        from src.utils.cache import get_redis
        redis = await get_redis()
        await redis.set(HEARTBEAT_KEY, datetime.now(timezone.utc).isoformat(), ex=600)
    except Exception as e:
        logger.debug("Heartbeat write failed: %s", str(e))


async def run_pipeline_sweeper():
    """Main sweeper loop. Runs continuously every 5 minutes."""
    logger.info("Pipeline sweeper started")

    while True:
        try:
            stats = await sweep()
            if any(stats.values()):
                logger.info("Pipeline sweep: %s", stats)
        except Exception as e:
            logger.error("Pipeline sweeper error: %s", str(e), exc_info=True)

        await _heartbeat()
        await asyncio.sleep(SWEEP_INTERVAL_SECONDS)


async def sweep() -> dict:
    """One full pass. Returns counts per action."""
    now = datetime.now(timezone.utc)
    async with async_session_factory() as db:
        stats = {
            "tasks_reset": await _reset_stuck_tasks(db, now),
            **await _resume_stalled_drafts(db, now),
            "topics_released": await _release_orphaned_topics(db, now),
            "topics_expired": await expire_old_topics(db),
        }
        await db.commit()
    return stats


async def _reset_stuck_tasks(db, now: datetime) -> int:
    """A worker died mid-task: the row stays processing forever unless we put it back."""
    result = await db.execute(
        select(TaskQueue).where(TaskQueue.status == TaskStatus.PROCESSING).limit(BATCH_LIMIT)
    )
    reset = 0
    for task in result.scalars().all():
        started = ensure_utc(task.started_at)
        limit = timedelta(seconds=get_policy(task.task_type).timeout) + STUCK_TASK_GRACE
        if started is not None and now - started < limit:
            continue
        task.status = TaskStatus.PENDING
        task.started_at = None
        task.scheduled_at = now
        reset += 1
        logger.warning(
            "Stuck task reset to pending: id=%s type=%s", str(task.id)[:8], task.task_type,
            extra={"task_type": task.task_type},
        )
    return reset


def _stage_payload(draft: ContentDraft) -> dict:
    if draft.stage != DraftStage.MODERATION:
        return {}
    moderation = (draft.seo_metadata or {}).get("moderation") or {}
    # A recorded check that did not pass means the body was already regenerated once more
    attempt = int(moderation.get("regeneration_attempt") or 0)
    if moderation and not moderation.get("passed"):
        attempt += 1
    return {"regeneration_attempt": attempt}


async def _resume_stalled_drafts(db, now: datetime) -> dict:
    cutoff = now - STALE_STAGE_AFTER
    result = await db.execute(
        select(ContentDraft)
        .where(
            and_(
                ContentDraft.stage.in_(DraftStage.WORKING),
                ContentDraft.updated_at < cutoff,
                ContentDraft.deleted_at.is_(None),
            )
        )
        .limit(BATCH_LIMIT)
    )

    stats = {"drafts_resumed": 0, "drafts_rejected": 0}
    for draft in result.scalars().all():
        task = await db.get(TaskQueue, draft.stage_task_id) if draft.stage_task_id else None
        draft_id = str(draft.id)[:8]

        if task is not None and task.status in (TaskStatus.PENDING, TaskStatus.PROCESSING):
            continue

        if task is not None and task.status == TaskStatus.FAILED:
            logger.warning(
                "Draft %s stage %s task failed; rejecting", draft_id, draft.stage,
                extra={"draft_id": str(draft.id), "stage": draft.stage},
            )
            if reject_draft(draft, f"{draft.stage} stage task failed: {task.error_message or 'unknown error'}"):
                stats["drafts_rejected"] += 1
            continue

        logger.warning(
            "Draft %s stalled at %s (task %s); re-enqueueing", draft_id, draft.stage,
            task.status if task else "missing",
            extra={"draft_id": str(draft.id), "stage": draft.stage},
        )
        options = ((task.payload or {}).get("options") if task else None) or {}
        await advance(db, draft, draft.stage, options=options, **_stage_payload(draft))
        stats["drafts_resumed"] += 1
    return stats


async def _release_orphaned_topics(db, now: datetime) -> int:
    cutoff = now - STALE_TOPIC_AFTER
    queued = (await db.execute(
        select(Topic.id).where(Topic.status == TopicStatus.QUEUED, Topic.updated_at < cutoff).limit(BATCH_LIMIT)
    )).scalars().all()
    if not queued:
        return 0

    live_payloads = (await db.execute(
        select(TaskQueue.payload).where(
            TaskQueue.task_type.in_(TOPIC_TASK_TYPES),
            TaskQueue.status.in_([TaskStatus.PENDING, TaskStatus.PROCESSING]),
        )
    )).scalars().all()
    live_topics = {str((p or {}).get("topic_id")) for p in live_payloads}

    released = 0
    for topic_id in queued:
        if str(topic_id) in live_topics:
            continue
        if await release_topic(db, topic_id):
            released += 1
    return released
