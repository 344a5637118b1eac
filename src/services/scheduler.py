"""
Content scheduler - next publish slot for a brand.

A slot respects the brand's daily quota, quiet hours and a 30 minute gap to
anything already scheduled. Times are chosen in the brand's timezone and
returned in UTC. The forward scan is bounded; past 30 days it falls back to
one hour after the start time.
"""
import json
import logging
from datetime import date, datetime, time, timedelta, timezone
from typing import Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from src.models.brand import Brand
from src.models.publish_job import PublishJob, PublishJobStatus
from src.utils.timezone import ensure_utc, get_zone, parse_hhmm

logger = logging.getLogger(__name__)

MAX_SCAN_DAYS = 30
MIN_GAP_MINUTES = 30
FALLBACK_HOURS = 8, 22  # Inclusive scan range when no optimal time fits
SPAMMY_POSTS_PER_DAY = 5

DEFAULT_OPTIMAL_TIMES = {
    1: ["10:00"],
    2: ["09:00", "15:00"],
    3: ["09:00", "13:00", "17:00"],
    4: ["08:00", "11:00", "14:00", "17:00"],
}


def default_optimal_times(posts_per_day: int) -> list[str]:
    if posts_per_day in DEFAULT_OPTIMAL_TIMES:
        return list(DEFAULT_OPTIMAL_TIMES[posts_per_day])
    # Spread evenly from 08:00, capped at 22:00
    return [
        "%02d:00" % min(8 + (i * 24) // posts_per_day, 22)
        for i in range(posts_per_day)
    ]


async def get_optimal_posting_times(brand: Brand) -> list[str]:
    """Brand custom times, then learned times cached in Redis, then defaults."""
    custom = brand.setting("optimal_posting_times")
    if custom:
        return list(custom)

    try:
        from src.utils.cache import get_redis, make_key
        redis = await get_redis()
        cached = await redis.get(make_key("optimal_times", brand.id))
        if cached:
            times = json.loads(cached)
            if isinstance(times, list) and times:
                return times
    except Exception as e:
        logger.debug("Optimal times cache unavailable: %s", str(e))

    return default_optimal_times(brand.posts_per_day)


def _hour_of(value) -> int:
    if isinstance(value, int):
        return value
    return parse_hhmm(str(value))[0]


def in_quiet_hours(hour: int, quiet_hours: list[dict]) -> bool:
    """Hour ranges are [start, end). A range with start > end wraps midnight."""
    for window in quiet_hours or []:
        try:
            start = _hour_of(window.get("start"))
            end = _hour_of(window.get("end"))
        except (TypeError, ValueError, AttributeError):
            continue
        if start <= end:
            if start <= hour < end:
                return True
        elif hour >= start or hour < end:
            return True
    return False


async def _scheduled_times(db: AsyncSession, brand_id, start: datetime, end: datetime) -> list[datetime]:
    # One entry per job: every platform leg counts against the daily quota
    result = await db.execute(
        select(PublishJob.scheduled_at)
        .where(
            PublishJob.brand_id == brand_id,
            PublishJob.status.in_(PublishJobStatus.SCHEDULED),
            PublishJob.scheduled_at >= start,
            PublishJob.scheduled_at < end,
        )
    )
    return [ensure_utc(t) for t in result.scalars().all() if t is not None]


def _local_day_bounds(day: date, tz) -> tuple[datetime, datetime]:
    start = datetime.combine(day, time(0, 0), tzinfo=tz)
    end = datetime.combine(day + timedelta(days=1), time(0, 0), tzinfo=tz)
    return start.astimezone(timezone.utc), end.astimezone(timezone.utc)


def _find_slot_in_day(
    day: date,
    tz,
    optimal_times: list[str],
    quiet_hours: list[dict],
    existing: list[datetime],
    not_before: datetime,
) -> Optional[datetime]:
    candidates = []
    for value in optimal_times:
        try:
            candidates.append(parse_hhmm(value))
        except (TypeError, ValueError):
            logger.debug("Ignoring malformed optimal time %r", value)
    candidates.extend((h, 0) for h in range(FALLBACK_HOURS[0], FALLBACK_HOURS[1] + 1))

    gap = timedelta(minutes=MIN_GAP_MINUTES)
    for hour, minute in candidates:
        slot = datetime.combine(day, time(hour, minute), tzinfo=tz).astimezone(timezone.utc)
        if slot <= not_before:
            continue
        if in_quiet_hours(hour, quiet_hours):
            continue
        if any(abs(slot - other) < gap for other in existing):
            continue
        return slot
    return None


async def get_next_available_slot(
    db: AsyncSession,
    brand: Brand,
    start_from: Optional[datetime] = None,
) -> datetime:
    start_from = ensure_utc(start_from) or datetime.now(timezone.utc)
    tz = get_zone(brand.timezone_name)
    optimal_times = await get_optimal_posting_times(brand)
    quota = brand.posts_per_day
    first_day = start_from.astimezone(tz).date()

    for offset in range(MAX_SCAN_DAYS):
        day = first_day + timedelta(days=offset)
        day_start, day_end = _local_day_bounds(day, tz)
        existing = await _scheduled_times(db, brand.id, day_start, day_end)
        if len(existing) >= quota:
            continue

        slot = _find_slot_in_day(day, tz, optimal_times, brand.quiet_hours, existing, start_from)
        if slot:
            return slot

    fallback = start_from + timedelta(hours=1)
    logger.warning(
        "No slot within %d days for brand %s, falling back to %s",
        MAX_SCAN_DAYS, brand.slug, fallback.isoformat(),
        extra={"brand_id": str(brand.id)},
    )
    return fallback


def calculate_slot(brand: Brand, day: date, slot_index: int) -> datetime:
    """
    Pure slot-index -> UTC time mapping for bulk pre-scheduling.
    Uses brand or default optimal times; past the table, spreads 24h / posts_per_day.
    """
    posts_per_day = brand.posts_per_day
    times = brand.setting("optimal_posting_times") or default_optimal_times(posts_per_day)
    if slot_index < len(times):
        hour, minute = parse_hhmm(times[slot_index])
    else:
        hour, minute = min((slot_index * 24) // posts_per_day, 23), 0
    tz = get_zone(brand.timezone_name)
    return datetime.combine(day, time(hour, minute), tzinfo=tz).astimezone(timezone.utc)


async def get_schedule_preview(
    db: AsyncSession,
    brand: Brand,
    days: int = 7,
    start: Optional[datetime] = None,
) -> list[dict]:
    """Per-day occupancy for the next `days` days in the brand's timezone."""
    tz = get_zone(brand.timezone_name)
    start = ensure_utc(start) or datetime.now(timezone.utc)
    optimal_times = await get_optimal_posting_times(brand)
    quota = brand.posts_per_day

    preview = []
    for offset in range(days):
        day = start.astimezone(tz).date() + timedelta(days=offset)
        day_start, day_end = _local_day_bounds(day, tz)
        scheduled = len(await _scheduled_times(db, brand.id, day_start, day_end))
        preview.append({
            "date": day.isoformat(),
            "day_name": day.strftime("%A"),
            "scheduled_posts": scheduled,
            "max_posts": quota,
            "available_slots": max(quota - scheduled, 0),
            "optimal_times": optimal_times,
        })
    return preview


def validate_scheduling_settings(brand: Brand) -> list[dict]:
    """Advisory suggestions about a brand's schedule configuration."""
    suggestions = []
    if brand.posts_per_day > SPAMMY_POSTS_PER_DAY:
        suggestions.append({
            "type": "warning",
            "message": "More than 5 posts per day may appear spammy to your audience.",
        })
    if not brand.quiet_hours:
        suggestions.append({
            "type": "info",
            "message": "Consider setting quiet hours to avoid posting during off-hours.",
        })
    if not brand.setting("timezone"):
        suggestions.append({
            "type": "warning",
            "message": "No timezone set. Using UTC by default.",
        })
    if not brand.setting("optimal_posting_times"):
        suggestions.append({
            "type": "info",
            "message": "Using default optimal posting times. Consider customizing based on your audience analytics.",
        })
    return suggestions
