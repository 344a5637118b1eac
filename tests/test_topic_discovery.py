"""
Tests for src/services/topic_discovery.py - discovery run and topic lifecycle.
"""
import pytest
from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock, patch

from src.models.topic import Topic, TopicStatus
from src.schemas.pipeline import TrendCandidate
from src.services.topic_discovery import (
    claim_topic,
    discover_for_brand,
    discover_for_category,
    expire_old_topics,
    get_next_topic,
    mark_topic_used,
    release_topic,
)
from src.services.trend_sources import TrendSource, TrendSourceRegistry


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

class _StaticSource(TrendSource):
    def __init__(self, name, candidates=None, error=None, available=True):
        self.name = name
        self._candidates = candidates or []
        self._error = error
        self._available = available
        self.calls = 0

    def is_available(self) -> bool:
        return self._available

    async def discover(self, category, limit: int = 10):
        self.calls += 1
        if self._error:
            raise self._error
        return self._candidates[:limit]


def _registry(*sources):
    registry = TrendSourceRegistry()
    for source in sources:
        registry.register(source)
    return registry


def _candidate(title, description="", urls=None):
    return TrendCandidate(
        title=title,
        description=description,
        source_urls=urls or [],
        published_at=datetime.now(timezone.utc) - timedelta(hours=1),
    )


# ---------------------------------------------------------------------------
# discover_for_category
# ---------------------------------------------------------------------------

class TestDiscoverForCategory:
    @pytest.mark.asyncio
    async def test_persists_ranked_topics(self, db, brand, category, mock_redis):
        strong = _candidate(
            "How to Secure Your API with OAuth",
            "api security " * 20,
            ["https://techcrunch.com/a"],
        )
        weak = _candidate("Misc news", "", ["https://unknown.example/b"])
        registry = _registry(_StaticSource("static", [weak, strong]))

        topics = await discover_for_category(db, brand, category, limit=10, registry=registry)

        assert [t.title for t in topics] == [strong.title, weak.title]
        assert all(t.status == TopicStatus.DISCOVERED for t in topics)
        assert all(t.trending_at is not None for t in topics)
        assert topics[0].confidence_score > topics[1].confidence_score
        assert topics[0].category_id == category.id

    @pytest.mark.asyncio
    async def test_keeps_top_limit(self, db, brand, category, mock_redis):
        candidates = [_candidate(title) for title in (
            "Rust ownership explained for beginners",
            "Python packaging in 2026",
            "Golang generics deep dive",
            "Kotlin coroutines under the hood",
            "Swift concurrency migration notes",
        )]
        registry = _registry(_StaticSource("static", candidates))

        topics = await discover_for_category(db, brand, category, limit=3, registry=registry)
        assert len(topics) == 3

    @pytest.mark.asyncio
    async def test_merges_sources_and_dedups(self, db, brand, category, mock_redis):
        a = _StaticSource("a", [_candidate("How to Secure Your API")])
        b = _StaticSource("b", [_candidate("How to secure your API"), _candidate("Zero trust for startups")])

        topics = await discover_for_category(db, brand, category, registry=_registry(a, b))
        assert sorted(t.title for t in topics) == ["How to Secure Your API", "Zero trust for startups"]

    @pytest.mark.asyncio
    async def test_failing_source_does_not_stop_others(self, db, brand, category, mock_redis):
        broken = _StaticSource("broken", error=RuntimeError("feed down"))
        healthy = _StaticSource("healthy", [_candidate("Zero trust for startups")])

        with patch("src.services.topic_discovery.send_alert", new_callable=AsyncMock) as alert:
            topics = await discover_for_category(db, brand, category, registry=_registry(broken, healthy))

        assert len(topics) == 1
        alert.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_unavailable_source_is_not_polled(self, db, brand, category):
        offline = _StaticSource("offline", [_candidate("Anything")], available=False)
        topics = await discover_for_category(db, brand, category, registry=_registry(offline))
        assert topics == []
        assert offline.calls == 0


class TestDiscoverForBrand:
    @pytest.mark.asyncio
    async def test_runs_every_active_category(self, db, brand, category, mock_redis):
        from src.models.brand import Category
        inactive = Category(brand_id=brand.id, name="Old", keywords=[], active=False)
        db.add(inactive)
        await db.flush()

        source = _StaticSource("static", [_candidate("Zero trust for startups")])
        stats = await discover_for_brand(db, brand, registry=_registry(source))

        assert stats["categories"] == 1
        assert stats["discovered"] == 1
        assert source.calls == 1


# ---------------------------------------------------------------------------
# Lifecycle
# ---------------------------------------------------------------------------

class TestTopicLifecycle:
    @pytest.mark.asyncio
    async def test_claim_is_exclusive(self, db, make_topic):
        topic = await make_topic()
        assert await claim_topic(db, topic.id) is True
        assert await claim_topic(db, topic.id) is False

        await db.refresh(topic)
        assert topic.status == TopicStatus.QUEUED

    @pytest.mark.asyncio
    async def test_release_returns_to_discovered(self, db, make_topic):
        topic = await make_topic(status=TopicStatus.QUEUED)
        assert await release_topic(db, topic.id) is True
        await db.refresh(topic)
        assert topic.status == TopicStatus.DISCOVERED

    @pytest.mark.asyncio
    async def test_release_ignores_used_topic(self, db, make_topic):
        topic = await make_topic(status=TopicStatus.USED)
        assert await release_topic(db, topic.id) is False

    @pytest.mark.asyncio
    async def test_mark_used_once(self, db, make_topic):
        topic = await make_topic(status=TopicStatus.QUEUED)
        assert await mark_topic_used(db, topic.id) is True
        assert await mark_topic_used(db, topic.id) is False

        await db.refresh(topic)
        assert topic.status == TopicStatus.USED
        assert topic.used_at is not None

    @pytest.mark.asyncio
    async def test_expire_old_discovered_topics(self, db, make_topic):
        old = await make_topic(trending_at=datetime.now(timezone.utc) - timedelta(days=10))
        fresh = await make_topic(title="Fresh one")
        queued_old = await make_topic(
            title="Queued old", status=TopicStatus.QUEUED,
            trending_at=datetime.now(timezone.utc) - timedelta(days=10),
        )

        assert await expire_old_topics(db) == 1
        for topic in (old, fresh, queued_old):
            await db.refresh(topic)
        assert old.status == TopicStatus.EXPIRED
        assert fresh.status == TopicStatus.DISCOVERED
        assert queued_old.status == TopicStatus.QUEUED


class TestGetNextTopic:
    @pytest.mark.asyncio
    async def test_highest_confidence_fresh_topic(self, db, brand, make_topic):
        await make_topic(title="Low", confidence_score=0.61)
        best = await make_topic(title="High", confidence_score=0.95)
        await make_topic(
            title="Stale", confidence_score=0.99,
            trending_at=datetime.now(timezone.utc) - timedelta(days=5),
        )
        await make_topic(title="Taken", confidence_score=0.99, status=TopicStatus.USED)

        topic = await get_next_topic(db, brand)
        assert topic.id == best.id

    @pytest.mark.asyncio
    async def test_none_when_nothing_fresh(self, db, brand):
        assert await get_next_topic(db, brand) is None

    @pytest.mark.asyncio
    async def test_filters_by_category(self, db, brand, category, make_topic):
        await make_topic(title="No category", confidence_score=0.99)
        in_category = await make_topic(title="In category", confidence_score=0.7, category_id=category.id)

        topic = await get_next_topic(db, brand, category_id=category.id)
        assert topic.id == in_category.id
