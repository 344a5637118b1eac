"""
Redis-based publish rate limiter, one counter store per connector.
Sliding windows of one hour and one day, held as sorted sets of post timestamps.

Check and increment happen in a single Lua script so concurrent workers
publishing through the same connector can never overshoot a limit.
Fails closed: if Redis is unavailable no slot is granted.
"""
import logging
import time
import uuid
from typing import Optional

logger = logging.getLogger(__name__)

HOUR_SECONDS = 3600
DAY_SECONDS = 86400

# KEYS[1]=hour window, KEYS[2]=day window
# ARGV: now, hour_limit, day_limit, member
_ACQUIRE_SCRIPT = """
local now = tonumber(ARGV[1])
local hour_limit = tonumber(ARGV[2])
local day_limit = tonumber(ARGV[3])
redis.call('ZREMRANGEBYSCORE', KEYS[1], 0, now - 3600)
redis.call('ZREMRANGEBYSCORE', KEYS[2], 0, now - 86400)
local hour_count = redis.call('ZCARD', KEYS[1])
local day_count = redis.call('ZCARD', KEYS[2])
if hour_count >= hour_limit or day_count >= day_limit then
    return {0, hour_count, day_count}
end
redis.call('ZADD', KEYS[1], now, ARGV[4])
redis.call('ZADD', KEYS[2], now, ARGV[4])
redis.call('EXPIRE', KEYS[1], 3601)
redis.call('EXPIRE', KEYS[2], 86401)
return {1, hour_count + 1, day_count + 1}
"""


class ConnectorRateLimiter:
    """Keyed counter store: (connector key x window) with atomic check-and-increment."""

    def __init__(self, namespace: str = "ratelimit"):
        self.namespace = namespace

    def _keys(self, connector_key: str) -> tuple[str, str]:
        from src.utils.cache import make_key
        return (
            make_key(self.namespace, connector_key, "hour"),
            make_key(self.namespace, connector_key, "day"),
        )

    async def acquire(
        self,
        connector_key: str,
        posts_per_hour: int,
        posts_per_day: int,
        now: Optional[float] = None,
    ) -> bool:
        """
        Consume one publish slot if both windows have room.
        Returns True when the slot was granted (and counted).
        """
        hour_key, day_key = self._keys(connector_key)
        ts = now if now is not None else time.time()
        try:
            from src.utils.cache import get_redis
            redis = await get_redis()
            granted, hour_count, day_count = await redis.eval(
                _ACQUIRE_SCRIPT, 2, hour_key, day_key,
                ts, posts_per_hour, posts_per_day, f"{ts}:{uuid.uuid4().hex[:8]}",
            )
        except Exception as e:
            logger.warning(
                "Rate limiter Redis error for %s: %s. Refusing publish slot.",
                connector_key, str(e),
            )
            return False

        if not int(granted):
            logger.warning(
                "Publish rate limit reached: connector=%s hour=%s/%d day=%s/%d",
                connector_key, hour_count, posts_per_hour, day_count, posts_per_day,
            )
            return False
        return True

    async def usage(self, connector_key: str, now: Optional[float] = None) -> dict:
        """Current window counts without consuming a slot."""
        hour_key, day_key = self._keys(connector_key)
        ts = now if now is not None else time.time()
        try:
            from src.utils.cache import get_redis
            redis = await get_redis()
            pipe = redis.pipeline()
            pipe.zcount(hour_key, ts - HOUR_SECONDS, "+inf")
            pipe.zcount(day_key, ts - DAY_SECONDS, "+inf")
            hour_count, day_count = await pipe.execute()
            return {"hour": int(hour_count), "day": int(day_count)}
        except Exception as e:
            logger.debug("Rate limiter usage lookup failed for %s: %s", connector_key, str(e))
            return {"hour": 0, "day": 0}


_default_limiter: Optional[ConnectorRateLimiter] = None


def get_rate_limiter() -> ConnectorRateLimiter:
    global _default_limiter
    if _default_limiter is None:
        _default_limiter = ConnectorRateLimiter()
    return _default_limiter
