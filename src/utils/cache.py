"""
Shared Redis client. Lazily created on first use so imports stay cheap and
tests can patch get_redis() without a live server.
"""
import logging

logger = logging.getLogger(__name__)

KEY_PREFIX = "contentflow"

# Redis client (lazily initialized)
_redis_client = None


async def get_redis():
    """Get or create Redis connection."""
    global _redis_client
    if _redis_client is None:
        import redis.asyncio as aioredis
        from src.config import get_settings
        _redis_client = aioredis.from_url(
            get_settings().redis_url,
            decode_responses=True,
        )
    return _redis_client


def make_key(*parts) -> str:
    """Namespace a Redis key: make_key("ratelimit", id) -> contentflow:ratelimit:<id>."""
    return ":".join([KEY_PREFIX, *(str(p) for p in parts)])


async def close_redis() -> None:
    global _redis_client
    if _redis_client is not None:
        try:
            await _redis_client.aclose()
        except Exception as e:
            logger.debug("Redis close failed: %s", str(e))
    _redis_client = None
