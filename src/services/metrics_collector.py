"""
Metrics collector - engagement numbers for published jobs, normalized.

Each platform names things its own way (reactions, retweet_count, numLikes...).
Everything is mapped onto the canonical MetricType set; names we do not know
are dropped. The raw name and platform are kept in the row metadata.
"""
import logging
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncSession

from src.integrations.registry import get_publisher
from src.models.connector import SocialConnector
from src.models.metric import Metric, MetricType
from src.models.publish_job import PublishJob, PublishJobStatus

logger = logging.getLogger(__name__)

METRIC_ALIASES = {
    "reactions": MetricType.LIKES,
    "retweets": MetricType.SHARES,
    "replies": MetricType.COMMENTS,
    "favorites": MetricType.LIKES,
    "quote_tweets": MetricType.SHARES,
    "numlikes": MetricType.LIKES,
    "numshares": MetricType.SHARES,
    "numcomments": MetricType.COMMENTS,
    "numviews": MetricType.VIEWS,
    "like_count": MetricType.LIKES,
    "retweet_count": MetricType.SHARES,
    "reply_count": MetricType.COMMENTS,
    "impression_count": MetricType.IMPRESSIONS,
    "quote_count": MetricType.SHARES,
}


class MetricsUnavailableError(Exception):
    """The platform returned nothing; worth another try later."""
    pass


def canonical_metric_name(name: str) -> Optional[str]:
    lowered = (name or "").lower()
    if lowered in MetricType.ALL:
        return lowered
    return METRIC_ALIASES.get(lowered)


def normalize_metrics(raw: dict) -> dict[str, tuple[int, str]]:
    """
    canonical name -> (value, original name).
    Two raw names landing on one canonical name keep the larger value.
    """
    normalized: dict[str, tuple[int, str]] = {}
    for name, value in (raw or {}).items():
        canonical = canonical_metric_name(name)
        if canonical is None:
            continue
        try:
            value = int(value)
        except (TypeError, ValueError):
            continue
        if canonical not in normalized or value > normalized[canonical][0]:
            normalized[canonical] = (value, name)
    return normalized


async def collect_for_job(db: AsyncSession, job: PublishJob, publisher=None) -> dict:
    """Fetch and store one round of metrics for a published social job."""
    if job.status != PublishJobStatus.PUBLISHED or not job.external_id:
        return {"status": "skipped", "reason": "job not published"}
    if not job.social_connector_id:
        return {"status": "skipped", "reason": "no engagement metrics for website posts"}

    connector = await db.get(SocialConnector, job.social_connector_id)
    if connector is None or not connector.active:
        return {"status": "skipped", "reason": "connector inactive"}

    publisher = publisher or get_publisher(job.platform)
    if connector.is_token_expired():
        # A failed refresh propagates; the task retries with backoff
        await publisher.refresh_token(connector)

    raw = await publisher.get_metrics(job.external_id, connector)
    if not raw:
        raise MetricsUnavailableError(f"No metrics returned for {job.platform} post {job.external_id}")

    now = datetime.now(timezone.utc)
    normalized = normalize_metrics(raw)
    for metric_type, (value, original) in normalized.items():
        db.add(Metric(
            publish_job_id=job.id,
            metric_type=metric_type,
            value=value,
            recorded_at=now,
            meta={"original_metric_name": original, "platform": job.platform},
        ))
    await db.flush()

    logger.info(
        "Recorded %d metrics for %s post %s", len(normalized), job.platform, job.external_id,
        extra={"publish_job_id": str(job.id), "platform": job.platform},
    )
    return {"status": "recorded", "recorded": len(normalized), "dropped": len(raw) - len(normalized)}
