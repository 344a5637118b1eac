"""
Redis mutual exclusion for external side effects.

publish_lock() guards one logical publish: two workers racing on the same
(variant, connector, platform) key never both reach the platform API.
The lock expires on its own if the holder dies mid-call.
"""
import asyncio
import logging
import math
import uuid
from contextlib import asynccontextmanager

logger = logging.getLogger(__name__)

PUBLISH_LOCK_TTL = 120  # covers a slow social API call
PUBLISH_LOCK_WAIT = 5
POLL_INTERVAL = 0.1

# Compare-and-delete: a lock that expired and was re-taken is not ours to drop
RELEASE_SCRIPT = """
if redis.call('get', KEYS[1]) == ARGV[1] then
    return redis.call('del', KEYS[1])
end
return 0
"""


class LockTimeoutError(Exception):
    """The lock stayed taken for the whole wait."""


class RedisLock:
    def __init__(self, key: str, ttl: int):
        self.key = key
        self.ttl = ttl
        self.token = uuid.uuid4().hex

    async def acquire(self, wait: float) -> bool:
        from src.utils.cache import get_redis
        redis = await get_redis()

        attempts = 1 + math.ceil(max(wait, 0) / POLL_INTERVAL)
        for attempt in range(attempts):
            if attempt:
                await asyncio.sleep(POLL_INTERVAL)
            if await redis.set(self.key, self.token, nx=True, ex=self.ttl):
                return True
        return False

    async def release(self) -> None:
        try:
            from src.utils.cache import get_redis
            redis = await get_redis()
            await redis.eval(RELEASE_SCRIPT, 1, self.key, self.token)
        except Exception as e:
            # Left to expire via its TTL
            logger.warning("Lock release failed for %s: %s", self.key, str(e))


@asynccontextmanager
async def publish_lock(
    idempotency_key: str,
    ttl: int = PUBLISH_LOCK_TTL,
    wait: float = PUBLISH_LOCK_WAIT,
):
    """
    Hold the publish lock for an idempotency key.

    Usage:
        async with publish_lock(job.idempotency_key):
            # re-check job status, then call the platform
    """
    from src.utils.cache import make_key
    lock = RedisLock(make_key("lock", "publish", idempotency_key), ttl)

    if not await lock.acquire(wait):
        logger.warning("Publish lock busy: %s", idempotency_key[:8])
        raise LockTimeoutError(f"Could not acquire publish lock {idempotency_key[:8]} within {wait}s")
    try:
        yield lock
    finally:
        await lock.release()
