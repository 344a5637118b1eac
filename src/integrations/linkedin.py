"""
LinkedIn publisher - ugcPosts share API.
platform_settings: {"author_urn": "urn:li:organization:..." or "urn:li:person:..."}
"""
import logging
from typing import Optional
from urllib.parse import quote

import httpx

from src.integrations.publisher_base import TIMEOUT, PlatformError, SocialPublisher
from src.models.content_variant import Platform
from src.schemas.pipeline import PublishResult

logger = logging.getLogger(__name__)

API_URL = "https://api.linkedin.com/v2"
TOKEN_URL = "https://www.linkedin.com/oauth/v2/accessToken"
DEFAULT_TOKEN_LIFETIME = 5184000  # 60 days

# Response path -> raw metric name
METRIC_PATHS = {
    ("likesSummary", "totalLikes"): "numLikes",
    ("commentsSummary", "totalComments"): "numComments",
    ("sharesSummary", "totalShares"): "numShares",
    ("clickCount",): "clicks",
    ("impressionCount",): "impressions",
    ("engagementCount",): "engagement",
}


def build_share_payload(author_urn: str, text: str, link: Optional[str] = None) -> dict:
    share_content = {
        "shareCommentary": {"text": text},
        "shareMediaCategory": "ARTICLE" if link else "NONE",
    }
    if link:
        share_content["media"] = [{"status": "READY", "originalUrl": link}]
    return {
        "author": author_urn,
        "lifecycleState": "PUBLISHED",
        "specificContent": {"com.linkedin.ugc.ShareContent": share_content},
        "visibility": {"com.linkedin.ugc.MemberNetworkVisibility": "PUBLIC"},
    }


class LinkedInPublisher(SocialPublisher):
    platform = Platform.LINKEDIN

    def _headers(self, connector) -> dict:
        return {
            "Authorization": f"Bearer {self._access_token(connector)}",
            "Content-Type": "application/json",
            "X-Restli-Protocol-Version": "2.0.0",
        }

    def _author(self, connector) -> str:
        author = (connector.platform_settings or {}).get("author_urn")
        if not author and connector.account_id:
            author = f"urn:li:person:{connector.account_id}"
        if not author:
            raise PlatformError("LinkedIn connector has no author_urn", platform=self.platform.value, retryable=False)
        return author

    async def publish(self, variant, connector, context: Optional[dict] = None) -> PublishResult:
        context = context or {}
        payload = build_share_payload(
            self._author(connector),
            variant.content,
            context.get("link") or (variant.meta or {}).get("link"),
        )
        async with httpx.AsyncClient(timeout=TIMEOUT) as client:
            response = await client.post(
                f"{API_URL}/ugcPosts", headers=self._headers(connector), json=payload,
            )
        data = self._check_response(response, "share")
        post_id = response.headers.get("x-restli-id") or data.get("id")
        if not post_id:
            raise PlatformError("LinkedIn response had no post id", platform=self.platform.value)

        logger.info("LinkedIn post published: %s", post_id, extra={"platform": self.platform.value})
        return PublishResult(
            post_id=post_id,
            url=f"https://www.linkedin.com/feed/update/{post_id}",
            platform=self.platform.value,
            raw=data,
        )

    async def delete(self, post_id: str, connector) -> bool:
        try:
            async with httpx.AsyncClient(timeout=TIMEOUT) as client:
                response = await client.delete(
                    f"{API_URL}/ugcPosts/{quote(post_id, safe='')}", headers=self._headers(connector),
                )
            self._check_response(response, "delete")
            return True
        except (PlatformError, httpx.HTTPError) as e:
            logger.error("LinkedIn delete failed for %s: %s", post_id, str(e))
            return False

    async def get_metrics(self, post_id: str, connector) -> dict:
        try:
            async with httpx.AsyncClient(timeout=TIMEOUT) as client:
                response = await client.get(
                    f"{API_URL}/socialActions/{quote(post_id, safe='')}",
                    headers=self._headers(connector),
                )
            data = self._check_response(response, "metrics")
        except (PlatformError, httpx.HTTPError) as e:
            logger.warning("LinkedIn metrics unavailable for %s: %s", post_id, str(e))
            return {}

        metrics = {}
        for path, name in METRIC_PATHS.items():
            value = data
            for part in path:
                value = value.get(part) if isinstance(value, dict) else None
            if value is not None:
                metrics[name] = int(value)
        return metrics

    async def refresh_token(self, connector) -> dict:
        from src.config import get_settings
        settings = get_settings()
        refresh = self._tokens(connector).get("refresh_token")
        if not refresh:
            raise PlatformError("LinkedIn connector has no refresh token", platform=self.platform.value, retryable=False)

        data = await self._oauth_refresh(TOKEN_URL, data={
            "grant_type": "refresh_token",
            "refresh_token": refresh,
            "client_id": settings.linkedin_client_id,
            "client_secret": settings.linkedin_client_secret,
        })
        return self._store_tokens(
            connector,
            {
                "access_token": data.get("access_token"),
                "refresh_token": data.get("refresh_token"),
                "expires_in": data.get("expires_in"),
            },
            default_expires_in=DEFAULT_TOKEN_LIFETIME,
        )
