"""
Operational alerting for the content pipeline.

Alert channels:
1. Structured log (always) - ERROR, or CRITICAL for exhausted retries
2. Webhook (configurable) - Discord/Slack URL via ALERT_WEBHOOK_URL env var

Per-type cooldowns in Redis stop a failing connector from flooding the channel.
"""
import logging
import time
from typing import Optional

logger = logging.getLogger(__name__)

ALERT_COOLDOWN_SECONDS = 300  # 5 minutes (default)

ALERT_COOLDOWN_OVERRIDES: dict[str, int] = {
    "connector_token_expired": 3600,
    "rate_limit_deferred": 1800,
}

# In-memory fallback when Redis is down
_local_cooldowns: dict[str, float] = {}  # cooldown key -> expiry timestamp


class AlertType:
    """Alert type constants."""
    STAGE_RETRIES_EXHAUSTED = "stage_retries_exhausted"
    PUBLISH_RETRIES_EXHAUSTED = "publish_retries_exhausted"
    PUBLISH_ALL_LEGS_FAILED = "publish_all_legs_failed"
    CONNECTOR_TOKEN_EXPIRED = "connector_token_expired"
    CONNECTOR_CREDENTIALS_INVALID = "connector_credentials_invalid"
    RATE_LIMIT_DEFERRED = "rate_limit_deferred"
    CRITICAL_GENERATION_ERROR = "critical_generation_error"
    DISCOVERY_SOURCE_FAILED = "discovery_source_failed"


def _get_cooldown_seconds(alert_type: str) -> int:
    return ALERT_COOLDOWN_OVERRIDES.get(alert_type, ALERT_COOLDOWN_SECONDS)


async def send_alert(
    alert_type: str,
    message: str,
    correlation_id: Optional[str] = None,
    severity: str = "error",
    extra: Optional[dict] = None,
    cooldown_scope: Optional[str] = None,
) -> None:
    """
    Send an alert through all configured channels.
    cooldown_scope narrows the cooldown (e.g. per connector) so one noisy
    target does not silence alerts about another.
    """
    cooldown_key = f"{alert_type}:{cooldown_scope}" if cooldown_scope else alert_type
    if not await _acquire_cooldown(alert_type, cooldown_key):
        return

    from src.utils.logging import get_correlation_id
    cid = correlation_id or get_correlation_id()

    log_message = f"ALERT [{alert_type}]: {message}"
    if cid:
        log_message += f" (correlation_id={cid})"

    if severity == "critical":
        logger.critical(log_message)
    else:
        logger.error(log_message)

    await _send_webhook_alert(alert_type, message, severity, cid, extra)


async def _acquire_cooldown(alert_type: str, cooldown_key: str) -> bool:
    """Atomically check-and-set the alert cooldown. True means send."""
    cooldown = _get_cooldown_seconds(alert_type)

    try:
        from src.utils.cache import get_redis, make_key
        redis = await get_redis()
        acquired = await redis.set(make_key("alert_cooldown", cooldown_key), "1", nx=True, ex=cooldown)
        return bool(acquired)
    except Exception as e:
        logger.debug("Alert cooldown Redis check failed, using in-memory fallback: %s", str(e))
        now = time.monotonic()
        if now < _local_cooldowns.get(cooldown_key, 0):
            return False
        _local_cooldowns[cooldown_key] = now + cooldown
        return True


async def _send_webhook_alert(
    alert_type: str,
    message: str,
    severity: str,
    correlation_id: Optional[str],
    extra: Optional[dict],
) -> None:
    """Send alert to configured webhook (Discord/Slack)."""
    try:
        from src.config import get_settings
        webhook_url = get_settings().alert_webhook_url
        if not webhook_url:
            return

        import httpx

        content = f"[{severity.upper()}] **{alert_type}**\n{message}"
        if correlation_id:
            content += f"\n`correlation_id: {correlation_id}`"
        for key, val in (extra or {}).items():
            content += f"\n`{key}: {val}`"

        async with httpx.AsyncClient(timeout=5.0) as client:
            await client.post(webhook_url, json={"content": content, "text": content})
    except Exception as e:
        # Alert delivery failure must never break a pipeline stage
        logger.warning("Failed to send webhook alert: %s", str(e))
