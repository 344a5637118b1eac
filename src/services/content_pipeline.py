"""
Pipeline stage handlers - one function per task type.

Each handler opens its own session, checks the draft is still at the stage the
task was queued for (a late duplicate becomes a no-op), does the work, advances
the stage and commits. Errors propagate to the task processor, which applies
the stage's retry policy. Moderation outcomes are data, never exceptions.
"""
import logging
import uuid
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import select

from src.config import get_settings
from src.database import async_session_factory
from src.models.brand import Brand
from src.models.content_draft import ContentDraft, DraftStage, DraftStatus
from src.models.content_variant import ContentVariant, VariantStatus
from src.models.topic import Topic, TopicStatus
from src.services import content_generation
from src.services.content_generation import GenerationError
from src.services.moderation import get_moderator
from src.services.pipeline import (
    PipelineDataError,
    TaskType,
    advance,
    approve_draft,
    enqueue_pipeline_task,
    reject_draft,
)
from src.services.topic_discovery import claim_topic, get_next_topic, mark_topic_used
from src.utils.alerting import AlertType, send_alert

logger = logging.getLogger(__name__)


def _uuid(payload: dict, key: str) -> uuid.UUID:
    value = payload.get(key)
    if not value:
        raise PipelineDataError(f"Task payload is missing {key}")
    try:
        return uuid.UUID(str(value))
    except ValueError as e:
        raise PipelineDataError(f"Invalid {key}: {value}") from e


async def _load_draft(db, payload: dict) -> tuple[ContentDraft, Brand]:
    draft = await db.get(ContentDraft, _uuid(payload, "draft_id"))
    if draft is None or draft.deleted_at is not None:
        raise PipelineDataError(f"Draft {payload.get('draft_id')} not found")
    brand = await db.get(Brand, draft.brand_id)
    if brand is None:
        raise PipelineDataError(f"Brand {draft.brand_id} not found")
    return draft, brand


def _skip(draft: ContentDraft, expected: str) -> Optional[dict]:
    if draft.stage != expected:
        logger.info(
            "Draft %s is at stage %s, not %s; skipping", str(draft.id)[:8], draft.stage, expected,
            extra={"draft_id": str(draft.id)},
        )
        return {"status": "skipped", "reason": f"draft at stage {draft.stage}"}
    return None


async def run_process_topic(payload: dict) -> dict:
    """Select (or take the given) topic, claim it and start generation."""
    options = payload.get("options") or {}
    async with async_session_factory() as db:
        if payload.get("topic_id"):
            topic = await db.get(Topic, _uuid(payload, "topic_id"))
            if topic is None:
                raise PipelineDataError(f"Topic {payload['topic_id']} not found")
        else:
            brand = await db.get(Brand, _uuid(payload, "brand_id"))
            if brand is None:
                raise PipelineDataError(f"Brand {payload['brand_id']} not found")
            topic = await get_next_topic(db, brand, category_id=payload.get("category_id"))
            if topic is None:
                return {"status": "skipped", "reason": "no fresh topic"}

        if topic.status not in (TopicStatus.DISCOVERED, TopicStatus.QUEUED):
            return {"status": "skipped", "reason": f"topic is {topic.status}"}
        if topic.status == TopicStatus.DISCOVERED and not await claim_topic(db, topic.id):
            return {"status": "skipped", "reason": "topic claimed elsewhere"}

        task_id = await enqueue_pipeline_task(
            db, TaskType.GENERATE_BRIEF,
            {"topic_id": str(topic.id), "options": options},
        )
        await db.commit()
        return {"status": "queued", "topic_id": str(topic.id), "task_id": task_id}


async def run_brief(payload: dict) -> dict:
    """Queued topic -> draft with a strategy brief; the topic becomes used."""
    options = payload.get("options") or {}
    async with async_session_factory() as db:
        topic = await db.get(Topic, _uuid(payload, "topic_id"))
        if topic is None:
            raise PipelineDataError(f"Topic {payload['topic_id']} not found")
        if topic.status not in (TopicStatus.QUEUED, TopicStatus.DISCOVERED):
            return {"status": "skipped", "reason": f"topic is {topic.status}"}
        brand = await db.get(Brand, topic.brand_id)
        if brand is None:
            raise PipelineDataError(f"Brand {topic.brand_id} not found")
        if topic.status == TopicStatus.DISCOVERED:
            if not await claim_topic(db, topic.id):
                return {"status": "skipped", "reason": "topic claimed elsewhere"}
            await db.commit()

        brief = await content_generation.generate_brief(topic, brand)

        # Conditional update: of two runs racing on one topic only one gets here
        if not await mark_topic_used(db, topic.id):
            await db.rollback()
            logger.warning(
                "Topic %s was used by another run; dropping this brief", str(topic.id)[:8],
                extra={"topic_id": str(topic.id)},
            )
            return {"status": "skipped", "reason": "topic already used"}

        draft = ContentDraft(
            brand_id=brand.id,
            topic_id=topic.id,
            category_id=topic.category_id,
            title=topic.title,
            strategy_brief=brief,
            keywords=list(topic.keywords or []),
            confidence_score=float(topic.confidence_score or 0.0),
            status=DraftStatus.DRAFT,
            stage=DraftStage.OUTLINE,
        )
        db.add(draft)
        await db.flush()
        await advance(db, draft, DraftStage.OUTLINE, options=options)
        await db.commit()

        logger.info(
            "Brief generated for topic %s", str(topic.id)[:8],
            extra={"topic_id": str(topic.id), "draft_id": str(draft.id), "brand_id": str(brand.id)},
        )
        return {"status": "brief_generated", "draft_id": str(draft.id)}


async def run_outline(payload: dict) -> dict:
    async with async_session_factory() as db:
        draft, brand = await _load_draft(db, payload)
        skipped = _skip(draft, DraftStage.OUTLINE)
        if skipped:
            return skipped
        if not (draft.strategy_brief or "").strip():
            raise PipelineDataError(f"Draft {draft.id} has no strategy brief")

        draft.outline = await content_generation.generate_outline(draft.strategy_brief, brand)
        await advance(db, draft, DraftStage.DRAFT, options=payload.get("options") or {})
        await db.commit()
        return {"status": "outline_generated", "sections": len(draft.outline)}


async def run_draft(payload: dict) -> dict:
    async with async_session_factory() as db:
        draft, brand = await _load_draft(db, payload)
        skipped = _skip(draft, DraftStage.DRAFT)
        if skipped:
            return skipped
        if not draft.outline:
            raise PipelineDataError(f"Draft {draft.id} has no outline")

        topic = await db.get(Topic, draft.topic_id) if draft.topic_id else None
        generated = await content_generation.generate_draft(draft.outline, brand, topic)

        draft.title = generated.title or draft.title
        draft.body = generated.body
        draft.seo_metadata = {**(draft.seo_metadata or {}), **generated.seo_metadata}
        if generated.seo_metadata.get("keywords"):
            draft.keywords = list(generated.seo_metadata["keywords"])
        draft.generated_at = datetime.now(timezone.utc)
        await advance(
            db, draft, DraftStage.MODERATION,
            regeneration_attempt=0, options=payload.get("options") or {},
        )
        await db.commit()
        return {"status": "draft_generated", "words": len(draft.body.split())}


def build_improvement_instruction(violations) -> str:
    lines = ["Please improve the content by addressing the following issues:"]
    for violation in violations:
        lines.append(f"- {violation.message}")
        if violation.details:
            lines.append(f"  Details: {violation.details}")
    lines.append("")
    lines.append("Maintain the same overall structure and key points, but rewrite problematic sections.")
    return "\n".join(lines)


async def run_moderation(payload: dict) -> dict:
    """Pass -> variants; severe violation -> reject; otherwise regenerate a bounded number of times."""
    settings = get_settings()
    attempt = int(payload.get("regeneration_attempt") or 0)
    options = payload.get("options") or {}

    async with async_session_factory() as db:
        draft, brand = await _load_draft(db, payload)
        skipped = _skip(draft, DraftStage.MODERATION)
        if skipped:
            return skipped
        if not (draft.body or "").strip():
            raise PipelineDataError(f"Draft {draft.id} has an empty body")

        result = await get_moderator().moderate(f"{draft.title or ''}\n\n{draft.body}", brand)
        violations = [v.model_dump() for v in result.violations]
        draft.seo_metadata = {
            **(draft.seo_metadata or {}),
            "moderation": {
                "checked_at": datetime.now(timezone.utc).isoformat(),
                "score": result.score,
                "passed": result.passed,
                "violations_count": len(violations),
                "regeneration_attempt": attempt,
            },
        }

        if result.passed:
            await advance(db, draft, DraftStage.VARIANTS, options=options)
            outcome = "passed"
        elif result.has_violation_type(settings.severe_violation_types):
            reject_draft(draft, "Severe moderation violation", violations, regeneration_attempts=attempt)
            outcome = "rejected"
        elif attempt < settings.moderation_max_regenerations:
            instruction = build_improvement_instruction(result.violations)
            draft.body = await content_generation.improve_content(draft.body, instruction, brand)
            await advance(
                db, draft, DraftStage.MODERATION,
                regeneration_attempt=attempt + 1, options=options,
            )
            outcome = "regenerating"
        else:
            reject_draft(
                draft, "Moderation failed after maximum regeneration attempts",
                violations, regeneration_attempts=attempt,
            )
            outcome = "rejected"

        await db.commit()
        logger.info(
            "Moderation %s for draft %s (attempt %d, score %.2f)",
            outcome, str(draft.id)[:8], attempt, result.score,
            extra={"draft_id": str(draft.id), "stage": DraftStage.MODERATION},
        )
        return {"status": outcome, "score": result.score, "violations": len(violations)}


async def run_variants(payload: dict) -> dict:
    """Per-platform variants, then the approval gate."""
    settings = get_settings()
    options = payload.get("options") or {}

    async with async_session_factory() as db:
        draft, brand = await _load_draft(db, payload)
        skipped = _skip(draft, DraftStage.VARIANTS)
        if skipped:
            return skipped

        platforms = options.get("platforms") or settings.variant_platforms
        existing = set((await db.execute(
            select(ContentVariant.platform).where(ContentVariant.content_draft_id == draft.id)
        )).scalars().all())

        created, errors = [], []
        for platform in platforms:
            if platform in existing:
                continue
            try:
                generated = await content_generation.generate_variant(
                    draft.body, platform, brand, title=draft.title,
                )
            except GenerationError as e:
                if e.is_critical:
                    # Keep what we have; the retry skips platforms already done
                    await db.commit()
                    logger.error(
                        "Critical error generating %s variant, aborting stage: %s", platform, str(e),
                        extra={"draft_id": str(draft.id), "platform": platform},
                    )
                    await send_alert(
                        AlertType.CRITICAL_GENERATION_ERROR,
                        f"Variant generation aborted for draft {draft.id}: {e}",
                    )
                    raise
                logger.warning(
                    "Variant generation failed for %s: %s", platform, str(e),
                    extra={"draft_id": str(draft.id), "platform": platform},
                )
                errors.append(f"{platform}: {e}")
                continue

            db.add(ContentVariant(
                content_draft_id=draft.id,
                platform=platform,
                title=generated.title or draft.title,
                content=generated.content,
                formatting=generated.formatting,
                meta=generated.metadata,
                status=VariantStatus.PENDING,
            ))
            created.append(platform)

        if not created and not existing:
            raise GenerationError(f"No variants generated: {'; '.join(errors)}", stage="variants")

        auto = options.get("auto_approve")
        if auto is None:
            auto = brand.auto_approve
        approved = False
        if auto and (draft.confidence_score or 0.0) >= brand.auto_approve_threshold:
            approved = approve_draft(db, draft)

        if approved:
            if brand.auto_publish or options.get("publish_mode"):
                publish_options = {
                    k: options[k] for k in ("publish_mode", "publish_at", "platforms") if options.get(k)
                }
                await enqueue_pipeline_task(
                    db, TaskType.PUBLISH_DRAFT,
                    {"draft_id": str(draft.id), "options": publish_options},
                )
        else:
            draft.status = DraftStatus.PENDING_REVIEW
            draft.stage = DraftStage.REVIEW
            draft.stage_task_id = None

        await db.commit()
        logger.info(
            "Variants for draft %s: created=%s errors=%d -> %s",
            str(draft.id)[:8], created, len(errors), draft.status,
            extra={"draft_id": str(draft.id), "brand_id": str(brand.id)},
        )
        return {"status": draft.status, "created": created, "errors": errors}
