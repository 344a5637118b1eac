"""
Tests for src/services/content_pipeline.py - per-stage task handlers.
Handlers open their own sessions; session_db routes them to the test database.
"""
import json
import uuid
import pytest
from unittest.mock import AsyncMock, MagicMock, patch

from sqlalchemy import select, update

from src.models.content_draft import ContentDraft, DraftStage, DraftStatus
from src.models.content_variant import ContentVariant
from src.models.publish_job import PublishJob
from src.models.task_queue import TaskQueue
from src.models.topic import Topic, TopicStatus
from src.schemas.pipeline import ModerationResult, Violation
from src.services.content_generation import GenerationError
from src.services.content_pipeline import (
    build_improvement_instruction,
    run_brief,
    run_draft,
    run_moderation,
    run_outline,
    run_process_topic,
    run_variants,
)
from src.services.pipeline import PipelineDataError, TaskType


def _reply(content):
    return {"content": content, "model": "m", "latency_ms": 1, "cost_usd": 0.0, "error": None}


async def _tasks(db, task_type):
    result = await db.execute(select(TaskQueue).where(TaskQueue.task_type == task_type))
    return result.scalars().all()


def _moderator(*results):
    moderator = MagicMock()
    moderator.moderate = AsyncMock(side_effect=list(results))
    return moderator


def _passed():
    return ModerationResult(passed=True, score=1.0)


def _failed(violation_type, message="bad"):
    return ModerationResult(
        passed=False, score=0.5,
        violations=[Violation(type=violation_type, message=message, details={"email": 1})],
    )


# ---------------------------------------------------------------------------
# Topic stages
# ---------------------------------------------------------------------------

class TestProcessTopic:
    @pytest.mark.asyncio
    async def test_claims_best_topic_and_queues_brief(self, session_db, brand, make_topic, mock_redis):
        topic = await make_topic()

        result = await run_process_topic({"brand_id": str(brand.id), "options": {"auto_approve": True}})

        assert result["status"] == "queued"
        await session_db.refresh(topic)
        assert topic.status == TopicStatus.QUEUED
        [task] = await _tasks(session_db, TaskType.GENERATE_BRIEF)
        assert task.payload == {"topic_id": str(topic.id), "options": {"auto_approve": True}}

    @pytest.mark.asyncio
    async def test_no_fresh_topic_skips(self, session_db, brand):
        result = await run_process_topic({"brand_id": str(brand.id)})
        assert result == {"status": "skipped", "reason": "no fresh topic"}

    @pytest.mark.asyncio
    async def test_used_topic_skips(self, session_db, make_topic):
        topic = await make_topic(status=TopicStatus.USED)
        result = await run_process_topic({"topic_id": str(topic.id)})
        assert result["status"] == "skipped"

    @pytest.mark.asyncio
    async def test_missing_brand_is_data_error(self, session_db):
        with pytest.raises(PipelineDataError):
            await run_process_topic({"brand_id": str(uuid.uuid4())})

    @pytest.mark.asyncio
    async def test_missing_ids_is_data_error(self, session_db):
        with pytest.raises(PipelineDataError):
            await run_process_topic({})


class TestBrief:
    @pytest.mark.asyncio
    async def test_creates_draft_and_uses_topic(self, session_db, brand, make_topic, mock_ai, mock_redis):
        topic = await make_topic(status=TopicStatus.QUEUED)
        mock_ai.return_value = _reply("Audience: platform engineers.")

        result = await run_brief({"topic_id": str(topic.id), "options": {"platforms": ["twitter"]}})

        assert result["status"] == "brief_generated"
        await session_db.refresh(topic)
        assert topic.status == TopicStatus.USED

        [task] = await _tasks(session_db, TaskType.GENERATE_OUTLINE)
        assert task.payload["options"] == {"platforms": ["twitter"]}
        assert task.payload["draft_id"] == result["draft_id"]

    @pytest.mark.asyncio
    async def test_generation_failure_keeps_topic_queued(self, session_db, make_topic, mock_ai):
        topic = await make_topic(status=TopicStatus.QUEUED)
        mock_ai.return_value = {"content": "", "error": "Overloaded"}

        with pytest.raises(GenerationError):
            await run_brief({"topic_id": str(topic.id)})

        await session_db.refresh(topic)
        assert topic.status == TopicStatus.QUEUED

    @pytest.mark.asyncio
    async def test_discovered_topic_is_claimed_before_generating(self, session_db, make_topic, mock_ai, mock_redis):
        topic = await make_topic()
        seen = []

        async def _brief(t, b):
            seen.append(await session_db.scalar(select(Topic.status).where(Topic.id == t.id)))
            return "Audience: platform engineers."

        with patch("src.services.content_generation.generate_brief", side_effect=_brief):
            result = await run_brief({"topic_id": str(topic.id)})

        assert result["status"] == "brief_generated"
        assert seen == [TopicStatus.QUEUED]
        await session_db.refresh(topic)
        assert topic.status == TopicStatus.USED

    @pytest.mark.asyncio
    async def test_competing_run_wins_no_second_draft(self, session_db, make_topic, mock_redis):
        topic = await make_topic(status=TopicStatus.QUEUED)

        async def _brief(t, b):
            # Another worker finishes the same topic while this brief is generating
            await session_db.execute(update(Topic).where(Topic.id == t.id).values(status=TopicStatus.USED))
            await session_db.commit()
            return "Audience: platform engineers."

        with patch("src.services.content_generation.generate_brief", side_effect=_brief):
            result = await run_brief({"topic_id": str(topic.id)})

        assert result == {"status": "skipped", "reason": "topic already used"}
        drafts = (await session_db.execute(select(ContentDraft).where(ContentDraft.topic_id == topic.id))).scalars().all()
        assert drafts == []
        assert await _tasks(session_db, TaskType.GENERATE_OUTLINE) == []

    @pytest.mark.asyncio
    async def test_topic_claimed_elsewhere_skips(self, session_db, make_topic):
        topic = await make_topic()

        with patch("src.services.content_pipeline.claim_topic", new_callable=AsyncMock, return_value=False), \
             patch("src.services.content_generation.generate_brief", new_callable=AsyncMock) as brief:
            result = await run_brief({"topic_id": str(topic.id)})

        assert result == {"status": "skipped", "reason": "topic claimed elsewhere"}
        brief.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_expired_topic_skips(self, session_db, make_topic):
        topic = await make_topic(status=TopicStatus.EXPIRED)
        result = await run_brief({"topic_id": str(topic.id)})
        assert result["status"] == "skipped"


# ---------------------------------------------------------------------------
# Draft stages
# ---------------------------------------------------------------------------

class TestOutlineAndDraft:
    @pytest.mark.asyncio
    async def test_outline_advances_to_draft(self, session_db, make_draft, mock_ai, mock_redis):
        draft = await make_draft(status=DraftStatus.DRAFT, stage=DraftStage.OUTLINE, outline=[])
        mock_ai.return_value = _reply(json.dumps({"sections": [{"heading": "Intro"}, {"heading": "End"}]}))

        result = await run_outline({"draft_id": str(draft.id)})

        assert result == {"status": "outline_generated", "sections": 2}
        await session_db.refresh(draft)
        assert draft.stage == DraftStage.DRAFT
        assert len(await _tasks(session_db, TaskType.GENERATE_DRAFT)) == 1

    @pytest.mark.asyncio
    async def test_stale_task_is_noop(self, session_db, make_draft, mock_ai):
        draft = await make_draft(status=DraftStatus.DRAFT, stage=DraftStage.MODERATION)

        result = await run_outline({"draft_id": str(draft.id)})

        assert result["status"] == "skipped"
        mock_ai.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_outline_without_brief_is_data_error(self, session_db, make_draft):
        draft = await make_draft(status=DraftStatus.DRAFT, stage=DraftStage.OUTLINE, strategy_brief="")
        with pytest.raises(PipelineDataError):
            await run_outline({"draft_id": str(draft.id)})

    @pytest.mark.asyncio
    async def test_missing_draft_is_data_error(self, session_db):
        with pytest.raises(PipelineDataError):
            await run_outline({"draft_id": str(uuid.uuid4())})

    @pytest.mark.asyncio
    async def test_draft_writes_body_and_seo(self, session_db, make_draft, mock_ai, mock_redis):
        draft = await make_draft(status=DraftStatus.DRAFT, stage=DraftStage.DRAFT, body=None)
        mock_ai.return_value = _reply(json.dumps({
            "title": "API Security in Practice",
            "body": "## Intro\nRotate keys.",
            "seo_metadata": {"slug": "api-security", "keywords": ["api", "keys"]},
        }))

        result = await run_draft({"draft_id": str(draft.id)})

        assert result["status"] == "draft_generated"
        await session_db.refresh(draft)
        assert draft.title == "API Security in Practice"
        assert draft.seo_metadata["slug"] == "api-security"
        assert draft.keywords == ["api", "keys"]
        assert draft.stage == DraftStage.MODERATION
        [task] = await _tasks(session_db, TaskType.MODERATE_CONTENT)
        assert task.payload["regeneration_attempt"] == 0


class TestModeration:
    @pytest.mark.asyncio
    async def test_pass_advances_to_variants(self, session_db, make_draft, mock_redis):
        draft = await make_draft(status=DraftStatus.DRAFT, stage=DraftStage.MODERATION)

        with patch("src.services.content_pipeline.get_moderator", return_value=_moderator(_passed())):
            result = await run_moderation({"draft_id": str(draft.id)})

        assert result["status"] == "passed"
        await session_db.refresh(draft)
        assert draft.stage == DraftStage.VARIANTS
        assert draft.seo_metadata["moderation"]["passed"] is True

    @pytest.mark.asyncio
    async def test_severe_violation_rejects(self, session_db, make_draft, mock_ai):
        draft = await make_draft(status=DraftStatus.DRAFT, stage=DraftStage.MODERATION)

        with patch("src.services.content_pipeline.get_moderator", return_value=_moderator(_failed("toxicity"))):
            result = await run_moderation({"draft_id": str(draft.id)})

        assert result["status"] == "rejected"
        await session_db.refresh(draft)
        assert draft.status == DraftStatus.REJECTED
        assert draft.seo_metadata["rejection"]["reason"] == "Severe moderation violation"
        mock_ai.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_severe_violation_rejects_after_regeneration(self, session_db, make_draft, mock_ai):
        """A severe finding rejects even when regeneration attempts remain."""
        draft = await make_draft(status=DraftStatus.DRAFT, stage=DraftStage.MODERATION)

        with patch("src.services.content_pipeline.get_moderator", return_value=_moderator(_failed("toxicity"))):
            result = await run_moderation({"draft_id": str(draft.id), "regeneration_attempt": 1})

        assert result["status"] == "rejected"
        await session_db.refresh(draft)
        assert draft.status == DraftStatus.REJECTED
        assert draft.seo_metadata["rejection"]["regeneration_attempts"] == 1
        assert await _tasks(session_db, TaskType.MODERATE_CONTENT) == []
        mock_ai.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_fixable_violation_regenerates(self, session_db, make_draft, mock_ai, mock_redis):
        draft = await make_draft(status=DraftStatus.DRAFT, stage=DraftStage.MODERATION)
        mock_ai.return_value = _reply("## Intro\nCleaned body.")

        with patch("src.services.content_pipeline.get_moderator", return_value=_moderator(_failed("pii"))):
            result = await run_moderation({"draft_id": str(draft.id), "regeneration_attempt": 0})

        assert result["status"] == "regenerating"
        await session_db.refresh(draft)
        assert draft.body == "## Intro\nCleaned body."
        assert draft.stage == DraftStage.MODERATION
        [task] = await _tasks(session_db, TaskType.MODERATE_CONTENT)
        assert task.payload["regeneration_attempt"] == 1

    @pytest.mark.asyncio
    async def test_regeneration_is_bounded(self, session_db, make_draft, mock_ai):
        draft = await make_draft(status=DraftStatus.DRAFT, stage=DraftStage.MODERATION)

        with patch("src.services.content_pipeline.get_moderator", return_value=_moderator(_failed("pii"))):
            result = await run_moderation({"draft_id": str(draft.id), "regeneration_attempt": 2})

        assert result["status"] == "rejected"
        await session_db.refresh(draft)
        assert draft.seo_metadata["rejection"]["regeneration_attempts"] == 2
        mock_ai.assert_not_awaited()

    def test_improvement_instruction_lists_violations(self):
        text = build_improvement_instruction([Violation(type="pii", message="Has an email", details={"email": 1})])
        assert "- Has an email" in text
        assert "Details: {'email': 1}" in text


# ---------------------------------------------------------------------------
# Variants and approval gate
# ---------------------------------------------------------------------------

class TestVariants:
    @pytest.mark.asyncio
    async def test_high_confidence_auto_approves_and_publishes(self, session_db, brand, make_draft, mock_ai, mock_redis):
        brand.settings = {**brand.settings, "auto_approve": True, "auto_publish": True}
        draft = await make_draft(status=DraftStatus.DRAFT, stage=DraftStage.VARIANTS, confidence_score=0.92)
        mock_ai.return_value = _reply('{"content": "Post body"}')

        result = await run_variants({"draft_id": str(draft.id), "options": {"platforms": ["twitter", "linkedin"]}})

        assert sorted(result["created"]) == ["linkedin", "twitter"]
        await session_db.refresh(draft)
        assert draft.status == DraftStatus.APPROVED
        assert draft.approved_by is None
        assert len(await _tasks(session_db, TaskType.PUBLISH_DRAFT)) == 1

    @pytest.mark.asyncio
    async def test_auto_approve_without_auto_publish_stops_at_approved(
        self, session_db, brand, make_draft, mock_ai, mock_redis,
    ):
        brand.settings = {**brand.settings, "auto_approve": True, "auto_publish": False}
        draft = await make_draft(status=DraftStatus.DRAFT, stage=DraftStage.VARIANTS, confidence_score=0.85)
        mock_ai.return_value = _reply('{"content": "Post body"}')

        await run_variants({"draft_id": str(draft.id), "options": {"platforms": ["twitter"]}})

        await session_db.refresh(draft)
        assert draft.status == DraftStatus.APPROVED
        assert await _tasks(session_db, TaskType.PUBLISH_DRAFT) == []
        assert (await session_db.execute(select(PublishJob))).scalars().all() == []

    @pytest.mark.asyncio
    async def test_low_confidence_goes_to_review(self, session_db, brand, make_draft, mock_ai):
        brand.settings = {**brand.settings, "auto_approve": True}
        draft = await make_draft(status=DraftStatus.DRAFT, stage=DraftStage.VARIANTS, confidence_score=0.79)
        mock_ai.return_value = _reply('{"content": "Post body"}')

        await run_variants({"draft_id": str(draft.id), "options": {"platforms": ["twitter"]}})

        await session_db.refresh(draft)
        assert draft.status == DraftStatus.PENDING_REVIEW
        assert draft.stage == DraftStage.REVIEW
        assert await _tasks(session_db, TaskType.PUBLISH_DRAFT) == []

    @pytest.mark.asyncio
    async def test_partial_failure_keeps_successes(self, session_db, make_draft, mock_ai):
        draft = await make_draft(status=DraftStatus.DRAFT, stage=DraftStage.VARIANTS)
        mock_ai.side_effect = [_reply('{"content": "ok"}'), {"content": "", "error": "Overloaded"}]

        result = await run_variants({"draft_id": str(draft.id), "options": {"platforms": ["twitter", "facebook"]}})

        assert result["created"] == ["twitter"]
        assert len(result["errors"]) == 1

    @pytest.mark.asyncio
    async def test_all_failed_raises(self, session_db, make_draft, mock_ai):
        draft = await make_draft(status=DraftStatus.DRAFT, stage=DraftStage.VARIANTS)
        mock_ai.return_value = {"content": "", "error": "Overloaded"}

        with pytest.raises(GenerationError):
            await run_variants({"draft_id": str(draft.id), "options": {"platforms": ["twitter"]}})

    @pytest.mark.asyncio
    async def test_critical_error_aborts_and_keeps_earlier(self, session_db, make_draft, mock_ai):
        draft = await make_draft(status=DraftStatus.DRAFT, stage=DraftStage.VARIANTS)
        mock_ai.side_effect = [
            _reply('{"content": "ok"}'),
            {"content": "", "error": "Invalid API key"},
            _reply('{"content": "never"}'),
        ]

        with patch("src.services.content_pipeline.send_alert", new_callable=AsyncMock) as alert:
            with pytest.raises(GenerationError):
                await run_variants({
                    "draft_id": str(draft.id),
                    "options": {"platforms": ["twitter", "facebook", "linkedin"]},
                })

        variants = (await session_db.execute(select(ContentVariant))).scalars().all()
        assert [v.platform for v in variants] == ["twitter"]
        assert mock_ai.await_count == 2
        alert.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_retry_skips_existing_platforms(self, session_db, make_draft, make_variant, mock_ai):
        draft = await make_draft(status=DraftStatus.DRAFT, stage=DraftStage.VARIANTS)
        await make_variant(draft, "twitter")
        mock_ai.return_value = _reply('{"content": "fb"}')

        result = await run_variants({"draft_id": str(draft.id), "options": {"platforms": ["twitter", "facebook"]}})

        assert result["created"] == ["facebook"]
        assert mock_ai.await_count == 1
