"""
Content pipeline state machine.

ContentDraft.stage is the persisted state; each stage runs as one task_queue
row and, on success, enqueues the next stage in the same transaction. A crash
between stages leaves (stage, stage_task_id) behind, which the pipeline
sweeper uses to resume.

    topic --process_topic--> generate_brief --> outline --> draft
        --> moderation (regenerate up to N times) --> variants
        --> review | approved --> published
    any working stage --> rejected
"""
import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncSession

from src.database import async_session_factory
from src.models.content_draft import Approval, ApprovalStatus, ContentDraft, DraftStage, DraftStatus
from src.services.task_dispatch import enqueue_task
from src.utils.alerting import AlertType, send_alert

logger = logging.getLogger(__name__)


class PipelineDataError(Exception):
    """Missing or invalid data. Retrying cannot fix it, so the task fails at once."""
    pass


class TaskType:
    PROCESS_TOPIC = "process_topic"
    GENERATE_BRIEF = "generate_brief"
    GENERATE_OUTLINE = "generate_outline"
    GENERATE_DRAFT = "generate_draft"
    MODERATE_CONTENT = "moderate_content"
    GENERATE_VARIANTS = "generate_variants"
    PUBLISH_DRAFT = "publish_draft"
    PUBLISH_JOB = "publish_job"
    FETCH_METRICS = "fetch_metrics"


@dataclass(frozen=True)
class StagePolicy:
    backoff: tuple[int, ...]
    timeout: int
    max_attempts: int = 3
    horizon_hours: Optional[int] = None

    def backoff_for(self, retry_count: int) -> int:
        """Delay before retry number retry_count (1-based)."""
        index = min(max(retry_count, 1), len(self.backoff)) - 1
        return self.backoff[index]

    def retry_until(self, start: Optional[datetime] = None) -> Optional[datetime]:
        if not self.horizon_hours:
            return None
        return (start or datetime.now(timezone.utc)) + timedelta(hours=self.horizon_hours)


STAGE_POLICIES = {
    TaskType.PROCESS_TOPIC: StagePolicy(backoff=(300,), timeout=600),
    TaskType.GENERATE_BRIEF: StagePolicy(backoff=(60, 300, 900), timeout=300),
    TaskType.GENERATE_OUTLINE: StagePolicy(backoff=(60, 300, 900), timeout=300),
    TaskType.GENERATE_DRAFT: StagePolicy(backoff=(60, 300, 900), timeout=600),
    TaskType.MODERATE_CONTENT: StagePolicy(backoff=(30, 60, 120), timeout=180),
    TaskType.GENERATE_VARIANTS: StagePolicy(backoff=(60, 300, 900), timeout=600),
    TaskType.PUBLISH_DRAFT: StagePolicy(backoff=(600,), timeout=300, horizon_hours=24),
    TaskType.PUBLISH_JOB: StagePolicy(backoff=(600,), timeout=300, horizon_hours=24),
    TaskType.FETCH_METRICS: StagePolicy(backoff=(300, 600, 1200), timeout=120),
}

DEFAULT_POLICY = StagePolicy(backoff=(30, 120, 480), timeout=300)

STAGE_TASK_TYPES = {
    DraftStage.OUTLINE: TaskType.GENERATE_OUTLINE,
    DraftStage.DRAFT: TaskType.GENERATE_DRAFT,
    DraftStage.MODERATION: TaskType.MODERATE_CONTENT,
    DraftStage.VARIANTS: TaskType.GENERATE_VARIANTS,
}

TASK_STAGES = {task_type: stage for stage, task_type in STAGE_TASK_TYPES.items()}


def get_policy(task_type: str) -> StagePolicy:
    return STAGE_POLICIES.get(task_type, DEFAULT_POLICY)


async def enqueue_pipeline_task(
    db: Optional[AsyncSession],
    task_type: str,
    payload: dict,
    delay_seconds: int = 0,
    priority: int = 5,
    horizon_start: Optional[datetime] = None,
) -> str:
    """enqueue_task with the stage's attempt ceiling and retry horizon applied."""
    policy = get_policy(task_type)
    return await enqueue_task(
        task_type,
        payload,
        priority=priority,
        delay_seconds=delay_seconds,
        max_retries=policy.max_attempts,
        db=db,
        retry_until=policy.retry_until(horizon_start),
    )


async def advance(
    db: AsyncSession,
    draft: ContentDraft,
    stage: str,
    delay_seconds: int = 0,
    **payload,
) -> str:
    """Move the draft to a working stage and enqueue the task that runs it."""
    task_type = STAGE_TASK_TYPES[stage]
    task_id = await enqueue_pipeline_task(
        db, task_type, {"draft_id": str(draft.id), **payload}, delay_seconds=delay_seconds,
    )
    draft.stage = stage
    draft.stage_task_id = uuid.UUID(task_id)
    logger.info(
        "Draft %s advanced to %s", str(draft.id)[:8], stage,
        extra={"draft_id": str(draft.id), "stage": stage},
    )
    return task_id


def approve_draft(
    db: AsyncSession,
    draft: ContentDraft,
    reviewer: Optional[str] = None,
    comment: Optional[str] = None,
) -> bool:
    """Approve a draft. reviewer None means the system approved it."""
    if not draft.can_transition_to(DraftStatus.APPROVED):
        logger.warning("Draft %s cannot be approved from %s", str(draft.id)[:8], draft.status)
        return False
    now = datetime.now(timezone.utc)
    db.add(Approval(
        content_draft_id=draft.id,
        reviewer=reviewer or "system",
        status=ApprovalStatus.APPROVED,
        comment=comment,
    ))
    draft.status = DraftStatus.APPROVED
    draft.stage = DraftStage.APPROVED
    draft.stage_task_id = None
    draft.approved_by = reviewer
    draft.approved_at = now
    return True


def reject_draft(
    draft: ContentDraft,
    reason: str,
    violations: Optional[list] = None,
    regeneration_attempts: Optional[int] = None,
) -> bool:
    """Terminal rejection; the reason is kept in seo_metadata.rejection."""
    if not draft.can_transition_to(DraftStatus.REJECTED):
        logger.warning("Draft %s cannot be rejected from %s", str(draft.id)[:8], draft.status)
        return False
    rejection = {
        "rejected_at": datetime.now(timezone.utc).isoformat(),
        "reason": reason,
        "violations": violations or [],
    }
    if regeneration_attempts is not None:
        rejection["regeneration_attempts"] = regeneration_attempts
    draft.seo_metadata = {**(draft.seo_metadata or {}), "rejection": rejection}
    draft.status = DraftStatus.REJECTED
    draft.stage = DraftStage.REJECTED
    draft.stage_task_id = None
    logger.info(
        "Draft %s rejected: %s", str(draft.id)[:8], reason,
        extra={"draft_id": str(draft.id), "stage": DraftStage.REJECTED},
    )
    return True


async def handle_exhausted(task_type: str, payload: dict, error: str) -> None:
    """
    Terminal handling once a stage task stops retrying.
    Generation stages reject the draft; topic stages hand the topic back.
    """
    logger.critical(
        "Task %s exhausted retries: payload=%s error=%s", task_type, payload, error,
        extra={"task_type": task_type},
    )

    if task_type in (TaskType.PROCESS_TOPIC, TaskType.GENERATE_BRIEF):
        topic_id = payload.get("topic_id")
        if topic_id:
            from src.services.topic_discovery import release_topic
            async with async_session_factory() as db:
                await release_topic(db, uuid.UUID(topic_id))
                await db.commit()
        await send_alert(
            AlertType.STAGE_RETRIES_EXHAUSTED,
            f"{task_type} exhausted retries for topic {topic_id}: {error}",
            severity="critical",
            cooldown_scope=task_type,
        )
        return

    if task_type in TASK_STAGES:
        draft_id = payload.get("draft_id")
        if draft_id:
            async with async_session_factory() as db:
                draft = await db.get(ContentDraft, uuid.UUID(draft_id))
                if draft and draft.stage == TASK_STAGES[task_type]:
                    reject_draft(draft, f"{TASK_STAGES[task_type]} stage exhausted retries: {error}")
                    await db.commit()
        await send_alert(
            AlertType.STAGE_RETRIES_EXHAUSTED,
            f"{task_type} exhausted retries for draft {draft_id}: {error}",
            severity="critical",
            cooldown_scope=task_type,
        )
        return

    if task_type in (TaskType.PUBLISH_DRAFT, TaskType.PUBLISH_JOB):
        await send_alert(
            AlertType.PUBLISH_RETRIES_EXHAUSTED,
            f"{task_type} exhausted retries ({payload}): {error}",
            severity="critical",
            cooldown_scope=payload.get("draft_id") or payload.get("publish_job_id"),
        )
