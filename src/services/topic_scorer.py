"""
Topic scoring - confidence in [0, 1] for a candidate topic.
Weighted blend of keyword relevance, title quality, description completeness,
source credibility and recency. Every sub-score is clamped independently.
"""
import re
from datetime import datetime, timezone
from typing import Optional
from urllib.parse import urlparse

from src.schemas.pipeline import TrendCandidate
from src.utils.timezone import ensure_utc

WEIGHTS = {
    "keyword_relevance": 0.4,
    "title_quality": 0.2,
    "description_completeness": 0.15,
    "source_credibility": 0.15,
    "recency": 0.1,
}

CREDIBLE_DOMAINS = frozenset({
    "techcrunch.com", "theverge.com", "arstechnica.com", "wired.com",
    "medium.com", "dev.to", "smashingmagazine.com", "css-tricks.com",
    "github.com", "stackoverflow.com", "reddit.com", "news.ycombinator.com",
    "forbes.com", "bloomberg.com", "reuters.com", "bbc.com", "cnn.com",
    "nytimes.com", "wsj.com", "theguardian.com", "axios.com",
})

HOW_TO_PATTERN = re.compile(r"^(how to|guide to|introduction to)", re.IGNORECASE)
CLICKBAIT_PATTERN = re.compile(r"(shocking|unbelievable|you won't believe)", re.IGNORECASE)


def _clamp(value: float) -> float:
    return max(0.0, min(1.0, value))


def keyword_relevance(candidate: TrendCandidate, category_keywords: list[str]) -> float:
    if not category_keywords:
        return 0.5
    haystack = " ".join([
        candidate.title or "",
        candidate.description or "",
        " ".join(candidate.keywords or []),
    ]).lower()
    hits = sum(1 for kw in category_keywords if kw and kw.lower() in haystack)
    return _clamp(hits / len(category_keywords))


def title_quality(title: str) -> float:
    title = (title or "").strip()
    score = 1.0
    if len(title) < 20:
        score -= 0.3
    if len(title) > 150:
        score -= 0.2
    if title.endswith("?"):
        score += 0.1
    if HOW_TO_PATTERN.search(title):
        score += 0.15
    if CLICKBAIT_PATTERN.search(title):
        score -= 0.3
    return _clamp(score)


def description_completeness(description: str) -> float:
    length = len((description or "").strip())
    if length == 0:
        return 0.3
    if 100 <= length <= 500:
        return 1.0
    if length < 100:
        return _clamp(0.5 + length / 200)
    return 0.8


def _domain(url: str) -> str:
    host = (urlparse(url).netloc or "").lower().split(":")[0]
    return host[4:] if host.startswith("www.") else host


def source_credibility(source_urls: list[str]) -> float:
    if not source_urls:
        return 0.5
    credible = sum(1 for url in source_urls if _domain(url) in CREDIBLE_DOMAINS)
    return _clamp(0.5 + 0.5 * credible / len(source_urls))


def recency(published_at: Optional[datetime], now: Optional[datetime] = None) -> float:
    if not published_at:
        return 0.7
    now = now or datetime.now(timezone.utc)
    age_days = (now - ensure_utc(published_at)).total_seconds() / 86400
    if age_days < 1:
        return 1.0
    if age_days < 3:
        return 0.8
    if age_days < 7:
        return 0.6
    return 0.4


def get_score_breakdown(
    candidate: TrendCandidate,
    category_keywords: Optional[list[str]] = None,
    now: Optional[datetime] = None,
) -> dict:
    """Sub-scores, their weights and the final score. Useful for debugging rankings."""
    parts = {
        "keyword_relevance": keyword_relevance(candidate, category_keywords or []),
        "title_quality": title_quality(candidate.title),
        "description_completeness": description_completeness(candidate.description),
        "source_credibility": source_credibility(candidate.source_urls),
        "recency": recency(candidate.published_at, now=now),
    }
    total = _clamp(sum(parts[name] * weight for name, weight in WEIGHTS.items()))
    return {
        "scores": {k: round(v, 4) for k, v in parts.items()},
        "weights": dict(WEIGHTS),
        "total": round(total, 4),
    }


def score_topic(
    candidate: TrendCandidate,
    category_keywords: Optional[list[str]] = None,
    now: Optional[datetime] = None,
) -> float:
    return get_score_breakdown(candidate, category_keywords, now=now)["total"]
