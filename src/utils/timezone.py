"""
Timezone helpers for brand-local scheduling.
All persisted timestamps are UTC; brand settings carry an IANA zone name.
"""
import logging
from datetime import datetime, timezone
from typing import Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

logger = logging.getLogger(__name__)

DEFAULT_TIMEZONE = "UTC"


def get_zone(tz_name: Optional[str]) -> ZoneInfo:
    """Resolve an IANA zone name, falling back to UTC for unknown values."""
    try:
        return ZoneInfo(tz_name or DEFAULT_TIMEZONE)
    except (ZoneInfoNotFoundError, ValueError):
        logger.warning("Unknown timezone '%s', using UTC", tz_name)
        return ZoneInfo(DEFAULT_TIMEZONE)


def ensure_utc(dt: Optional[datetime]) -> Optional[datetime]:
    """
    Normalize a datetime to aware UTC.
    Naive values are treated as UTC (some drivers drop tzinfo on read).
    """
    if dt is None:
        return None
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def parse_hhmm(value: str) -> tuple[int, int]:
    """'09:30' -> (9, 30). Missing minutes default to 0."""
    parts = str(value).strip().split(":")
    hour = int(parts[0])
    minute = int(parts[1]) if len(parts) > 1 and parts[1] else 0
    if not (0 <= hour <= 23 and 0 <= minute <= 59):
        raise ValueError(f"Invalid time of day: {value}")
    return hour, minute
