"""
Publisher interface - every publish target implements this.

publish() raises PlatformError when the platform rejects the post.
get_metrics() never raises; an unreachable API yields an empty dict.
can_post() consumes one rate-limit slot for the connector when granted.
"""
import logging
from abc import ABC, abstractmethod
from datetime import datetime, timedelta, timezone
from typing import Optional

import httpx

from src.models.content_variant import Platform
from src.schemas.pipeline import PublishResult
from src.utils.encryption import decrypt_json, encrypt_json
from src.utils.rate_limiter import ConnectorRateLimiter, get_rate_limiter

logger = logging.getLogger(__name__)

TIMEOUT = 20.0

DEFAULT_RATE_LIMITS = {
    Platform.FACEBOOK: {"posts_per_hour": 25, "posts_per_day": 100},
    Platform.TWITTER: {"posts_per_hour": 50, "posts_per_day": 300},
    Platform.LINKEDIN: {"posts_per_hour": 20, "posts_per_day": 100},
    Platform.INSTAGRAM: {"posts_per_hour": 25, "posts_per_day": 25},
    Platform.WEBSITE: {"posts_per_hour": 10, "posts_per_day": 50},
}


class PlatformError(Exception):
    """The platform refused or failed a call."""

    def __init__(
        self,
        message: str,
        platform: str,
        retryable: bool = True,
        status_code: Optional[int] = None,
    ):
        super().__init__(message)
        self.platform = platform
        self.retryable = retryable
        self.status_code = status_code


class Publisher(ABC):
    """Uniform capability set for one platform."""

    platform: Platform

    def __init__(self, rate_limiter: Optional[ConnectorRateLimiter] = None):
        self.rate_limiter = rate_limiter or get_rate_limiter()

    @abstractmethod
    async def publish(self, variant, connector, context: Optional[dict] = None) -> PublishResult:
        """
        Post a variant through a connector.
        context carries draft-level fields (link, slug, excerpt, tags, ...).
        """
        ...

    @abstractmethod
    async def delete(self, post_id: str, connector) -> bool:
        ...

    @abstractmethod
    async def get_metrics(self, post_id: str, connector) -> dict:
        """Raw platform metric names -> integer values."""
        ...

    async def refresh_token(self, connector) -> dict:
        raise PlatformError(
            f"{self.platform.value} does not support token refresh",
            platform=self.platform.value,
            retryable=False,
        )

    def rate_limit_key(self, connector) -> str:
        return f"social:{connector.id}"

    def rate_limits(self, connector) -> dict:
        limits = dict(DEFAULT_RATE_LIMITS[self.platform])
        limits.update({k: int(v) for k, v in (connector.rate_limits or {}).items() if v})
        return limits

    async def can_post(self, connector) -> bool:
        limits = self.rate_limits(connector)
        return await self.rate_limiter.acquire(
            self.rate_limit_key(connector),
            posts_per_hour=limits["posts_per_hour"],
            posts_per_day=limits["posts_per_day"],
        )


class SocialPublisher(Publisher):
    """Shared token and HTTP handling for OAuth-based social platforms."""

    def _tokens(self, connector) -> dict:
        if not connector.encrypted_token:
            raise PlatformError(
                f"{self.platform.value} connector has no token",
                platform=self.platform.value,
                retryable=False,
            )
        return decrypt_json(connector.encrypted_token)

    def _access_token(self, connector) -> str:
        token = self._tokens(connector).get("access_token")
        if not token:
            raise PlatformError(
                f"{self.platform.value} connector token has no access_token",
                platform=self.platform.value,
                retryable=False,
            )
        return token

    def _store_tokens(self, connector, token_data: dict, default_expires_in: Optional[int] = None) -> dict:
        """Re-encrypt the merged token bundle and move the expiry forward."""
        merged = {**self._tokens(connector), **{k: v for k, v in token_data.items() if v is not None}}
        connector.encrypted_token = encrypt_json(merged)
        expires_in = token_data.get("expires_in") or default_expires_in
        if expires_in:
            connector.token_expires_at = datetime.now(timezone.utc) + timedelta(seconds=int(expires_in))
        logger.info(
            "%s token refreshed for connector %s",
            self.platform.value, str(connector.id)[:8],
            extra={"connector_id": str(connector.id), "platform": self.platform.value},
        )
        return merged

    def _check_response(self, response: httpx.Response, action: str) -> dict:
        """Raise PlatformError on a non-2xx reply; otherwise return the JSON body."""
        if response.status_code >= 400:
            detail = response.text[:500]
            raise PlatformError(
                f"{self.platform.value} {action} failed ({response.status_code}): {detail}",
                platform=self.platform.value,
                retryable=response.status_code >= 500 or response.status_code == 429,
                status_code=response.status_code,
            )
        if not response.content:
            return {}
        try:
            return response.json()
        except ValueError:
            return {}

    async def _oauth_refresh(self, url: str, data: dict, auth: Optional[tuple] = None) -> dict:
        async with httpx.AsyncClient(timeout=TIMEOUT) as client:
            response = await client.post(url, data=data, auth=auth)
        return self._check_response(response, "token refresh")
