"""
Publishing engine - the brand-level entry points operators and scripts call.

Generation is always asynchronous: these functions claim topics and enqueue
pipeline tasks; the task processor does the work. Publishing either runs now
or is pushed to a scheduler slot as a delayed publish_draft task.
"""
import logging
import uuid
from datetime import datetime, timedelta, timezone
from typing import Optional

from sqlalchemy import delete, func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from src.models.brand import Brand
from src.models.content_draft import ContentDraft, DraftStatus
from src.models.topic import Topic, TopicStatus
from src.services.pipeline import PipelineDataError, TaskType, approve_draft, enqueue_pipeline_task
from src.services.publishing_orchestrator import PublishingOrchestrator, get_orchestrator
from src.services.scheduler import calculate_slot, get_next_available_slot
from src.services.topic_discovery import FRESH_TOPIC_DAYS, claim_topic
from src.utils.timezone import ensure_utc, get_zone

logger = logging.getLogger(__name__)

MIN_TOPIC_CONFIDENCE = 0.6
GENERATION_LEAD_HOURS = 2
CLEANUP_DAYS = 30


def _parse_time(value) -> Optional[datetime]:
    if not value:
        return None
    if isinstance(value, datetime):
        return ensure_utc(value)
    return ensure_utc(datetime.fromisoformat(str(value)))


class PublishingEngine:

    def __init__(self, orchestrator: Optional[PublishingOrchestrator] = None):
        self.orchestrator = orchestrator or get_orchestrator()

    async def _candidate_topics(self, db: AsyncSession, brand: Brand, limit: int, category_id=None) -> list[Topic]:
        cutoff = datetime.now(timezone.utc) - timedelta(days=FRESH_TOPIC_DAYS)
        query = (
            select(Topic)
            .where(
                Topic.brand_id == brand.id,
                Topic.status == TopicStatus.DISCOVERED,
                Topic.trending_at >= cutoff,
                Topic.confidence_score >= MIN_TOPIC_CONFIDENCE,
            )
            .order_by(Topic.confidence_score.desc(), Topic.trending_at.desc())
            .limit(limit)
        )
        if category_id:
            query = query.where(Topic.category_id == category_id)
        return list((await db.execute(query)).scalars().all())

    async def generate_for_brand(
        self,
        db: AsyncSession,
        brand: Brand,
        limit: Optional[int] = None,
        category_id=None,
        auto_approve: Optional[bool] = None,
        dry_run: bool = False,
        publish_mode: Optional[str] = None,
    ) -> dict:
        """
        Start generation for the brand's best fresh topics.

        Args:
            limit: Topics to process (defaults to posts_per_day)
            auto_approve: Override brand.auto_approve for these runs
            dry_run: Select topics without claiming or enqueueing anything
            publish_mode: "schedule" or "immediate" once auto-approved

        Returns:
            {"topics_processed", "content_generated", "scheduled", "publish_queued", "errors"}
            Counts are the same for a dry run, which only skips the writes.
            publish_queued counts runs that will publish as soon as they are approved.
        """
        stats = {"topics_processed": 0, "content_generated": 0, "scheduled": 0, "publish_queued": 0, "errors": []}
        topics = await self._candidate_topics(db, brand, limit or brand.posts_per_day, category_id)

        for topic in topics:
            stats["topics_processed"] += 1
            if dry_run:
                logger.info("[dry-run] would generate from topic %s (%.4f)", topic.title, topic.confidence_score)
            else:
                try:
                    await self.generate_from_topic(db, topic, auto_approve=auto_approve, publish_mode=publish_mode)
                except PipelineDataError as e:
                    stats["errors"].append(f"{topic.title[:60]}: {e}")
                    continue
            stats["content_generated"] += 1
            if publish_mode == "schedule":
                stats["scheduled"] += 1
            elif publish_mode == "immediate":
                stats["publish_queued"] += 1

        logger.info(
            "generate_for_brand %s: %s", brand.slug,
            {k: v for k, v in stats.items() if k != "errors"},
            extra={"brand_id": str(brand.id)},
        )
        return stats

    async def generate_from_topic(
        self,
        db: AsyncSession,
        topic: Topic,
        auto_approve: Optional[bool] = None,
        publish_mode: Optional[str] = None,
    ) -> str:
        """Claim a topic and enqueue its brief. Raises PipelineDataError if it is not available."""
        if topic.status == TopicStatus.USED:
            raise PipelineDataError("Topic has already been used")
        if topic.status == TopicStatus.EXPIRED:
            raise PipelineDataError("Topic has expired")
        if topic.status == TopicStatus.DISCOVERED and not await claim_topic(db, topic.id):
            raise PipelineDataError("Topic was claimed by another run")

        options = {}
        if auto_approve is not None:
            options["auto_approve"] = auto_approve
        if publish_mode:
            options["publish_mode"] = publish_mode
        return await enqueue_pipeline_task(
            db, TaskType.GENERATE_BRIEF, {"topic_id": str(topic.id), "options": options},
        )

    async def publish_draft(self, db: AsyncSession, draft: ContentDraft, options: Optional[dict] = None) -> dict:
        """
        Publish now, or hold until a slot: options.publish_at, or the next
        available slot when publish_mode is "schedule".
        """
        options = dict(options or {})
        if draft.status != DraftStatus.APPROVED:
            logger.warning(
                "Draft %s must be approved before publishing (status: %s)", str(draft.id)[:8], draft.status,
                extra={"draft_id": str(draft.id)},
            )
            return {"success": False, "skipped": True, "error": f"Draft is {draft.status}, not approved"}

        now = datetime.now(timezone.utc)
        publish_at = _parse_time(options.pop("publish_at", None))
        if publish_at is None and options.pop("publish_mode", None) == "schedule":
            brand = await db.get(Brand, draft.brand_id)
            publish_at = await get_next_available_slot(db, brand, start_from=now)

        if publish_at and publish_at > now:
            await self.orchestrator.plan_jobs(db, draft, publish_at, options)
            task_id = await enqueue_pipeline_task(
                db, TaskType.PUBLISH_DRAFT,
                {"draft_id": str(draft.id), "options": {**options, "publish_at": publish_at.isoformat()}},
                delay_seconds=int((publish_at - now).total_seconds()),
                horizon_start=publish_at,
            )
            logger.info(
                "Draft %s scheduled for %s", str(draft.id)[:8], publish_at.isoformat(),
                extra={"draft_id": str(draft.id)},
            )
            return {"success": True, "scheduled": True, "publish_at": publish_at.isoformat(), "task_id": task_id}

        options.pop("publish_mode", None)
        return await self.orchestrator.publish(db, draft, options)

    async def bulk_publish(self, db: AsyncSession, draft_ids: list, options: Optional[dict] = None) -> dict:
        stats = {"total": len(draft_ids), "scheduled": 0, "published": 0, "errors": 0}
        for draft_id in draft_ids:
            draft = await db.get(ContentDraft, draft_id)
            if draft is None:
                stats["errors"] += 1
                continue
            try:
                result = await self.publish_draft(db, draft, options)
            except Exception as e:
                logger.error("Bulk publish failed for draft %s: %s", str(draft_id)[:8], str(e))
                stats["errors"] += 1
                continue
            if result.get("scheduled"):
                stats["scheduled"] += 1
            elif result.get("success"):
                stats["published"] += 1
            else:
                stats["errors"] += 1
        return stats

    async def schedule_content(self, db: AsyncSession, brand: Brand, days: int = 7, dry_run: bool = False) -> dict:
        """
        Pre-schedule `days` days of content from tomorrow on. Each topic gets a
        slot; its generation starts two hours before the publish time.
        """
        per_day = brand.posts_per_day
        topics = await self._candidate_topics(db, brand, days * per_day)
        now = datetime.now(timezone.utc)
        first_day = now.astimezone(get_zone(brand.timezone_name)).date() + timedelta(days=1)

        slots = []
        for index, topic in enumerate(topics):
            publish_at = calculate_slot(brand, first_day + timedelta(days=index // per_day), index % per_day)
            generate_at = publish_at - timedelta(hours=GENERATION_LEAD_HOURS)
            slot = {
                "topic_id": str(topic.id),
                "title": topic.title,
                "publish_at": publish_at.isoformat(),
                "generate_at": generate_at.isoformat(),
            }
            if not dry_run:
                if not await claim_topic(db, topic.id):
                    continue
                slot["task_id"] = await enqueue_pipeline_task(
                    db, TaskType.PROCESS_TOPIC,
                    {
                        "topic_id": str(topic.id),
                        "brand_id": str(brand.id),
                        "options": {"publish_at": publish_at.isoformat(), "publish_mode": "schedule"},
                    },
                    delay_seconds=max(int((generate_at - now).total_seconds()), 0),
                )
            slots.append(slot)

        logger.info(
            "%sScheduled %d posts over %d days for brand %s",
            "[dry-run] " if dry_run else "", len(slots), days, brand.slug,
            extra={"brand_id": str(brand.id)},
        )
        return {"scheduled": len(slots), "dry_run": dry_run, "slots": slots}

    async def auto_approve(self, db: AsyncSession, brand: Brand, threshold: Optional[float] = None) -> int:
        """Approve every pending-review draft at or above the confidence threshold."""
        threshold = brand.auto_approve_threshold if threshold is None else threshold
        drafts = (await db.execute(
            select(ContentDraft).where(
                ContentDraft.brand_id == brand.id,
                ContentDraft.status == DraftStatus.PENDING_REVIEW,
                ContentDraft.confidence_score >= threshold,
                ContentDraft.deleted_at.is_(None),
            )
        )).scalars().all()

        approved = sum(1 for draft in drafts if approve_draft(db, draft))
        await db.flush()
        logger.info("Auto-approved %d drafts for brand %s (threshold %.2f)", approved, brand.slug, threshold)
        return approved

    async def get_statistics(self, db: AsyncSession, brand: Brand, days: int = 30) -> dict:
        cutoff = datetime.now(timezone.utc) - timedelta(days=days)

        async def count(query) -> int:
            return int((await db.scalar(query)) or 0)

        drafts = select(func.count()).select_from(ContentDraft).where(ContentDraft.brand_id == brand.id)
        topics = select(func.count()).select_from(Topic).where(Topic.brand_id == brand.id)

        generation_rows = (await db.execute(
            select(ContentDraft.created_at, ContentDraft.generated_at).where(
                ContentDraft.brand_id == brand.id,
                ContentDraft.created_at >= cutoff,
                ContentDraft.generated_at.is_not(None),
            )
        )).all()
        durations = [
            (ensure_utc(generated) - ensure_utc(created)).total_seconds()
            for created, generated in generation_rows
        ]
        avg_confidence = await db.scalar(
            select(func.avg(Topic.confidence_score)).where(Topic.brand_id == brand.id, Topic.created_at >= cutoff)
        )

        return {
            "content_generated": await count(drafts.where(ContentDraft.created_at >= cutoff)),
            "approved": await count(drafts.where(ContentDraft.approved_at >= cutoff)),
            "published": await count(drafts.where(ContentDraft.published_at >= cutoff)),
            "topics_discovered": await count(topics.where(Topic.created_at >= cutoff)),
            "topics_used": await count(topics.where(Topic.used_at >= cutoff)),
            "avg_confidence": round(float(avg_confidence or 0.0), 4),
            "avg_generation_time": round(sum(durations) / len(durations), 1) if durations else 0.0,
        }

    async def cleanup(self, db: AsyncSession, days_old: int = CLEANUP_DAYS) -> dict:
        """Soft-delete old rejected drafts, hard-delete old expired topics."""
        cutoff = datetime.now(timezone.utc) - timedelta(days=days_old)
        drafts = await db.execute(
            update(ContentDraft)
            .where(
                ContentDraft.status == DraftStatus.REJECTED,
                ContentDraft.updated_at < cutoff,
                ContentDraft.deleted_at.is_(None),
            )
            .values(deleted_at=datetime.now(timezone.utc))
            .execution_options(synchronize_session=False)
        )
        topics = await db.execute(
            delete(Topic)
            .where(Topic.status == TopicStatus.EXPIRED, Topic.updated_at < cutoff)
            .execution_options(synchronize_session=False)
        )
        result = {"drafts_deleted": drafts.rowcount or 0, "topics_deleted": topics.rowcount or 0}
        logger.info("Cleanup: %s", result)
        return result


_engine: Optional[PublishingEngine] = None


def get_engine() -> PublishingEngine:
    global _engine
    if _engine is None:
        _engine = PublishingEngine()
    return _engine


async def load_brands(db: AsyncSession, brand_ref: Optional[str] = None) -> list[Brand]:
    """One brand by id or slug, or every active brand when brand_ref is empty."""
    query = select(Brand).where(Brand.deleted_at.is_(None))
    if brand_ref:
        try:
            query = query.where(Brand.id == uuid.UUID(brand_ref))
        except ValueError:
            query = query.where(Brand.slug == brand_ref)
    else:
        query = query.where(Brand.active.is_(True)).order_by(Brand.name)
    return list((await db.execute(query)).scalars().all())
