"""
Topic deduplication - in-batch and against the brand's recent history.
Titles are normalized (lowercase, no punctuation, single spaces) and compared
with difflib's character-level ratio.
"""
import logging
import re
from datetime import datetime, timedelta, timezone
from difflib import SequenceMatcher
from typing import Iterable

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from src.models.topic import Topic
from src.schemas.pipeline import TrendCandidate

logger = logging.getLogger(__name__)

SIMILARITY_THRESHOLD = 0.85
HISTORY_WINDOW_DAYS = 30

_PUNCT_RE = re.compile(r"[^\w\s]")
_SPACE_RE = re.compile(r"\s+")


def normalize_title(title: str) -> str:
    text = _PUNCT_RE.sub("", (title or "").lower())
    return _SPACE_RE.sub(" ", text).strip()


def is_similar(a: str, b: str, threshold: float = SIMILARITY_THRESHOLD) -> bool:
    """Both arguments must already be normalized."""
    if a == b:
        return True
    if not a or not b:
        return False
    return SequenceMatcher(None, a, b).ratio() >= threshold


def _matches_any(normalized: str, seen: Iterable[str]) -> bool:
    return any(is_similar(normalized, other) for other in seen)


async def recent_titles(db: AsyncSession, brand_id, days: int = HISTORY_WINDOW_DAYS) -> list[str]:
    cutoff = datetime.now(timezone.utc) - timedelta(days=days)
    result = await db.execute(
        select(Topic.title).where(
            Topic.brand_id == brand_id,
            Topic.created_at >= cutoff,
        )
    )
    return [normalize_title(t) for t in result.scalars().all()]


async def deduplicate(
    db: AsyncSession,
    brand_id,
    candidates: list[TrendCandidate],
) -> list[TrendCandidate]:
    """Drop in-batch near duplicates, then anything close to a recent brand topic."""
    history = await recent_titles(db, brand_id)
    seen: list[str] = []
    unique: list[TrendCandidate] = []

    for candidate in candidates:
        normalized = normalize_title(candidate.title)
        if not normalized:
            continue
        if _matches_any(normalized, seen):
            continue
        seen.append(normalized)
        if _matches_any(normalized, history):
            continue
        unique.append(candidate)

    dropped = len(candidates) - len(unique)
    if dropped:
        logger.info("Dedup dropped %d of %d candidates for brand %s", dropped, len(candidates), str(brand_id)[:8])
    return unique


async def get_duplicate_count(db: AsyncSession, brand_id, candidates: list[TrendCandidate]) -> int:
    unique = await deduplicate(db, brand_id, candidates)
    return len(candidates) - len(unique)
