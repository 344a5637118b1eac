"""
Twitter/X publisher - API v2 tweets with OAuth2 user tokens.
Tweets are capped at 280 characters; longer text is cut with "...".
"""
import logging
from typing import Optional

import httpx

from src.integrations.publisher_base import TIMEOUT, PlatformError, SocialPublisher
from src.models.content_variant import Platform
from src.schemas.pipeline import PublishResult

logger = logging.getLogger(__name__)

API_URL = "https://api.twitter.com/2"
TOKEN_URL = "https://api.twitter.com/2/oauth2/token"
MAX_TWEET_LENGTH = 280


def compose_tweet(content: str, link: Optional[str] = None) -> str:
    text = (content or "").strip()
    if link and link not in text:
        text = f"{text} {link}".strip()
    if len(text) > MAX_TWEET_LENGTH:
        text = text[: MAX_TWEET_LENGTH - 3] + "..."
    return text


class TwitterPublisher(SocialPublisher):
    platform = Platform.TWITTER

    def _headers(self, connector) -> dict:
        return {
            "Authorization": f"Bearer {self._access_token(connector)}",
            "Content-Type": "application/json",
        }

    async def publish(self, variant, connector, context: Optional[dict] = None) -> PublishResult:
        context = context or {}
        text = compose_tweet(variant.content, context.get("link") or (variant.meta or {}).get("link"))

        async with httpx.AsyncClient(timeout=TIMEOUT) as client:
            response = await client.post(
                f"{API_URL}/tweets",
                headers=self._headers(connector),
                json={"text": text},
            )
        data = self._check_response(response, "tweet").get("data") or {}
        tweet_id = data.get("id")
        if not tweet_id:
            raise PlatformError("Twitter response had no tweet id", platform=self.platform.value)

        logger.info("Tweet published: %s", tweet_id, extra={"platform": self.platform.value})
        return PublishResult(
            post_id=str(tweet_id),
            url=f"https://twitter.com/user/status/{tweet_id}",
            platform=self.platform.value,
            raw=data,
        )

    async def delete(self, post_id: str, connector) -> bool:
        try:
            async with httpx.AsyncClient(timeout=TIMEOUT) as client:
                response = await client.delete(
                    f"{API_URL}/tweets/{post_id}", headers=self._headers(connector),
                )
            data = self._check_response(response, "delete").get("data") or {}
            return bool(data.get("deleted"))
        except (PlatformError, httpx.HTTPError) as e:
            logger.error("Twitter delete failed for %s: %s", post_id, str(e))
            return False

    async def get_metrics(self, post_id: str, connector) -> dict:
        try:
            async with httpx.AsyncClient(timeout=TIMEOUT) as client:
                response = await client.get(
                    f"{API_URL}/tweets/{post_id}",
                    headers=self._headers(connector),
                    params={"tweet.fields": "public_metrics"},
                )
            data = self._check_response(response, "metrics").get("data") or {}
        except (PlatformError, httpx.HTTPError) as e:
            logger.warning("Twitter metrics unavailable for %s: %s", post_id, str(e))
            return {}
        return {k: int(v) for k, v in (data.get("public_metrics") or {}).items() if v is not None}

    async def refresh_token(self, connector) -> dict:
        from src.config import get_settings
        settings = get_settings()
        refresh = self._tokens(connector).get("refresh_token")
        if not refresh:
            raise PlatformError("Twitter connector has no refresh token", platform=self.platform.value, retryable=False)

        data = await self._oauth_refresh(
            TOKEN_URL,
            data={
                "grant_type": "refresh_token",
                "refresh_token": refresh,
                "client_id": settings.twitter_client_id,
            },
            auth=(settings.twitter_client_id, settings.twitter_client_secret),
        )
        return self._store_tokens(connector, {
            "access_token": data.get("access_token"),
            "refresh_token": data.get("refresh_token"),
            "expires_in": data.get("expires_in"),
        })
