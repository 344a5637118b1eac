"""
Topic discovery - poll trend sources, score, dedup, persist ranked topics.
Also owns the topic lifecycle helpers: claim (discovered -> queued),
release (queued -> discovered) and time-based expiry.
"""
import logging
from datetime import datetime, timedelta, timezone
from typing import Optional

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from src.models.brand import Brand, Category
from src.models.topic import Topic, TopicStatus
from src.schemas.pipeline import TrendCandidate
from src.services.topic_dedup import deduplicate
from src.services.topic_scorer import score_topic
from src.services.trend_sources import TrendSourceRegistry, default_registry
from src.utils.alerting import AlertType, send_alert

logger = logging.getLogger(__name__)

DEFAULT_DISCOVERY_LIMIT = 10
EXPIRY_DAYS = 7
FRESH_TOPIC_DAYS = 3


async def _collect_candidates(
    registry: TrendSourceRegistry,
    category: Category,
    limit: int,
) -> list[TrendCandidate]:
    candidates: list[TrendCandidate] = []
    for source in registry.available():
        try:
            found = await source.discover(category, limit=limit)
        except Exception as e:
            logger.error("Trend source %s failed for category %s: %s", source.name, category.name, str(e))
            await send_alert(
                AlertType.DISCOVERY_SOURCE_FAILED,
                f"Trend source {source.name} failed: {e}",
                severity="warning",
                cooldown_scope=source.name,
            )
            continue
        logger.debug("Source %s returned %d candidates for %s", source.name, len(found), category.name)
        candidates.extend(found)
    return candidates


async def discover_for_category(
    db: AsyncSession,
    brand: Brand,
    category: Category,
    limit: int = DEFAULT_DISCOVERY_LIMIT,
    registry: Optional[TrendSourceRegistry] = None,
) -> list[Topic]:
    """
    Merge every available source, score, dedup, keep the top `limit`.
    Persisted topics start as discovered with trending_at = now.
    """
    registry = registry or default_registry()
    candidates = await _collect_candidates(registry, category, limit)
    if not candidates:
        logger.info("No candidates for brand %s category %s", brand.slug, category.name)
        return []

    scored = [(score_topic(c, category.keywords or []), c) for c in candidates]
    unique = await deduplicate(db, brand.id, [c for _, c in scored])
    unique_ids = {id(c) for c in unique}
    ranked = sorted(
        ((score, c) for score, c in scored if id(c) in unique_ids),
        key=lambda pair: pair[0],
        reverse=True,
    )[:limit]

    now = datetime.now(timezone.utc)
    topics = []
    for score, candidate in ranked:
        topic = Topic(
            brand_id=brand.id,
            category_id=category.id,
            title=candidate.title[:500],
            description=candidate.description,
            keywords=list(candidate.keywords or []),
            source_urls=list(candidate.source_urls or []),
            source_metadata=candidate.metadata,
            confidence_score=round(score, 4),
            status=TopicStatus.DISCOVERED,
            published_at=candidate.published_at,
            trending_at=now,
        )
        db.add(topic)
        topics.append(topic)

    await db.flush()
    logger.info(
        "Discovered %d topics for brand %s category %s (%d candidates)",
        len(topics), brand.slug, category.name, len(candidates),
        extra={"brand_id": str(brand.id)},
    )
    return topics


async def discover_for_brand(
    db: AsyncSession,
    brand: Brand,
    limit: int = DEFAULT_DISCOVERY_LIMIT,
    registry: Optional[TrendSourceRegistry] = None,
) -> dict:
    """Run discovery over every active category of the brand."""
    registry = registry or default_registry()
    result = await db.execute(
        select(Category).where(Category.brand_id == brand.id, Category.active.is_(True))
    )
    categories = result.scalars().all()

    stats = {"categories": len(categories), "discovered": 0, "errors": []}
    for category in categories:
        try:
            topics = await discover_for_category(db, brand, category, limit=limit, registry=registry)
            stats["discovered"] += len(topics)
        except Exception as e:
            logger.error("Discovery failed for category %s: %s", category.name, str(e))
            stats["errors"].append(f"{category.name}: {e}")
    return stats


async def expire_old_topics(db: AsyncSession, days: int = EXPIRY_DAYS) -> int:
    """Discovered topics that trended more than `days` ago become expired."""
    cutoff = datetime.now(timezone.utc) - timedelta(days=days)
    result = await db.execute(
        update(Topic)
        .where(Topic.status == TopicStatus.DISCOVERED, Topic.trending_at < cutoff)
        .values(status=TopicStatus.EXPIRED, updated_at=datetime.now(timezone.utc))
        .execution_options(synchronize_session=False)
    )
    count = result.rowcount or 0
    if count:
        logger.info("Expired %d topics older than %d days", count, days)
    return count


async def get_next_topic(
    db: AsyncSession,
    brand: Brand,
    category_id=None,
) -> Optional[Topic]:
    """Highest-confidence fresh discovered topic for the brand."""
    cutoff = datetime.now(timezone.utc) - timedelta(days=FRESH_TOPIC_DAYS)
    query = (
        select(Topic)
        .where(
            Topic.brand_id == brand.id,
            Topic.status == TopicStatus.DISCOVERED,
            Topic.trending_at >= cutoff,
        )
        .order_by(Topic.confidence_score.desc(), Topic.trending_at.desc())
        .limit(1)
    )
    if category_id:
        query = query.where(Topic.category_id == category_id)
    result = await db.execute(query)
    return result.scalar_one_or_none()


async def claim_topic(db: AsyncSession, topic_id) -> bool:
    """Atomic discovered -> queued. False if another run got there first."""
    result = await db.execute(
        update(Topic)
        .where(Topic.id == topic_id, Topic.status == TopicStatus.DISCOVERED)
        .values(status=TopicStatus.QUEUED, updated_at=datetime.now(timezone.utc))
        .execution_options(synchronize_session=False)
    )
    return (result.rowcount or 0) == 1


async def release_topic(db: AsyncSession, topic_id) -> bool:
    """queued -> discovered, so a failed run never strands the topic."""
    result = await db.execute(
        update(Topic)
        .where(Topic.id == topic_id, Topic.status == TopicStatus.QUEUED)
        .values(status=TopicStatus.DISCOVERED, updated_at=datetime.now(timezone.utc))
        .execution_options(synchronize_session=False)
    )
    released = (result.rowcount or 0) == 1
    if released:
        logger.info("Topic %s released back to discovered", str(topic_id)[:8])
    return released


async def mark_topic_used(db: AsyncSession, topic_id) -> bool:
    """Terminal transition; only a queued or discovered topic can become used, once."""
    now = datetime.now(timezone.utc)
    result = await db.execute(
        update(Topic)
        .where(
            Topic.id == topic_id,
            Topic.status.in_([TopicStatus.QUEUED, TopicStatus.DISCOVERED]),
        )
        .values(status=TopicStatus.USED, used_at=now, updated_at=now)
        .execution_options(synchronize_session=False)
    )
    return (result.rowcount or 0) == 1
