"""
Tests for src/services/task_dispatch.py - background task enqueuing.
"""
import pytest
import uuid
from datetime import datetime, timezone, timedelta
from unittest.mock import AsyncMock, MagicMock, patch

from src.services.task_dispatch import TASK_NOTIFY_KEY, enqueue_task
from src.utils.logging import correlation_scope


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _mock_async_session_factory():
    """Return a mock async_session_factory and the mock db session it yields."""
    mock_db = AsyncMock()
    mock_db.add = MagicMock()
    mock_db.commit = AsyncMock()

    # The task gets an id after db.commit (simulating ORM behavior)
    fake_task_id = uuid.uuid4()

    def _side_effect_add(task):
        task.id = fake_task_id

    mock_db.add.side_effect = _side_effect_add

    class _FakeCtx:
        async def __aenter__(self):
            return mock_db
        async def __aexit__(self, *args):
            pass

    return _FakeCtx, mock_db, fake_task_id


# ---------------------------------------------------------------------------
# enqueue_task
# ---------------------------------------------------------------------------

class TestEnqueueTask:
    @pytest.mark.asyncio
    async def test_creates_task_with_correct_fields(self, mock_redis):
        """Task is created with correct type, payload, priority, max_retries."""
        factory_cls, mock_db, fake_id = _mock_async_session_factory()

        with patch("src.services.task_dispatch.async_session_factory", return_value=factory_cls()):
            task_id = await enqueue_task(
                task_type="generate_outline",
                payload={"draft_id": "abc-123"},
                priority=10,
                max_retries=5,
            )

        mock_db.add.assert_called_once()
        task_obj = mock_db.add.call_args[0][0]

        assert task_obj.task_type == "generate_outline"
        assert task_obj.payload == {"draft_id": "abc-123"}
        assert task_obj.priority == 10
        assert task_obj.max_retries == 5
        assert task_id == str(fake_id)
        mock_db.commit.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_default_values(self, mock_redis):
        """Default priority=5, max_retries=3, payload={}."""
        factory_cls, mock_db, _ = _mock_async_session_factory()

        with patch("src.services.task_dispatch.async_session_factory", return_value=factory_cls()):
            await enqueue_task(task_type="fetch_metrics")

        task_obj = mock_db.add.call_args[0][0]
        assert task_obj.priority == 5
        assert task_obj.max_retries == 3
        assert task_obj.payload == {}
        assert task_obj.retry_until is None

    @pytest.mark.asyncio
    async def test_delay_pushes_scheduled_at(self, mock_redis):
        """delay_seconds moves scheduled_at into the future."""
        factory_cls, mock_db, _ = _mock_async_session_factory()
        before = datetime.now(timezone.utc)

        with patch("src.services.task_dispatch.async_session_factory", return_value=factory_cls()):
            await enqueue_task(task_type="publish_draft", delay_seconds=600)

        task_obj = mock_db.add.call_args[0][0]
        assert task_obj.scheduled_at >= before + timedelta(seconds=600)

    @pytest.mark.asyncio
    async def test_retry_until_is_stored(self, mock_redis):
        factory_cls, mock_db, _ = _mock_async_session_factory()
        horizon = datetime.now(timezone.utc) + timedelta(hours=24)

        with patch("src.services.task_dispatch.async_session_factory", return_value=factory_cls()):
            await enqueue_task(task_type="publish_job", retry_until=horizon)

        assert mock_db.add.call_args[0][0].retry_until == horizon

    @pytest.mark.asyncio
    async def test_carries_current_correlation_id(self, mock_redis):
        factory_cls, mock_db, _ = _mock_async_session_factory()

        with patch("src.services.task_dispatch.async_session_factory", return_value=factory_cls()):
            with correlation_scope("abc123"):
                await enqueue_task(task_type="generate_draft")

        assert mock_db.add.call_args[0][0].correlation_id == "abc123"


# ---------------------------------------------------------------------------
# Caller-owned session
# ---------------------------------------------------------------------------

class TestEnqueueInCallerSession:
    @pytest.mark.asyncio
    async def test_uses_given_session_without_commit(self, db, mock_redis):
        """With db= the task is flushed into the caller's transaction only."""
        from src.models.task_queue import TaskQueue

        task_id = await enqueue_task("generate_brief", {"topic_id": "t1"}, db=db)

        task = await db.get(TaskQueue, uuid.UUID(task_id))
        assert task is not None
        assert task.task_type == "generate_brief"
        assert task.status == "pending"
        assert db.in_transaction()

    @pytest.mark.asyncio
    async def test_does_not_open_own_session(self, db, mock_redis):
        with patch("src.services.task_dispatch.async_session_factory") as factory:
            await enqueue_task("generate_brief", db=db)
        factory.assert_not_called()


# ---------------------------------------------------------------------------
# Redis wake-up notification
# ---------------------------------------------------------------------------

class TestNotification:
    @pytest.mark.asyncio
    async def test_immediate_task_notifies_processor(self, db, mock_redis):
        task_id = await enqueue_task("generate_outline", db=db)
        mock_redis.lpush.assert_awaited_once_with(TASK_NOTIFY_KEY, task_id)

    @pytest.mark.asyncio
    async def test_delayed_task_does_not_notify(self, db, mock_redis):
        await enqueue_task("publish_draft", db=db, delay_seconds=60)
        mock_redis.lpush.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_redis_failure_does_not_raise(self, db):
        """The row is the source of truth; the notification is best-effort."""
        with patch("src.utils.cache.get_redis", new_callable=AsyncMock, side_effect=ConnectionError("down")):
            task_id = await enqueue_task("generate_outline", db=db)
        assert task_id
