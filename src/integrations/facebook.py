"""
Facebook publisher - Graph API page feed posts.
platform_settings: {"page_id": "..."}; the stored token is a page access token.
"""
import logging
from typing import Optional

import httpx

from src.integrations.publisher_base import TIMEOUT, PlatformError, SocialPublisher
from src.models.content_variant import Platform
from src.schemas.pipeline import PublishResult

logger = logging.getLogger(__name__)

GRAPH_URL = "https://graph.facebook.com/v18.0"
ENGAGEMENT_FIELDS = "likes.summary(true),comments.summary(true),shares,reactions.summary(true)"
INSIGHT_METRICS = {
    "post_impressions": "impressions",
    "post_impressions_unique": "reach",
}


class FacebookPublisher(SocialPublisher):
    platform = Platform.FACEBOOK

    def _page_id(self, connector) -> str:
        page_id = (connector.platform_settings or {}).get("page_id") or connector.account_id
        if not page_id:
            raise PlatformError("Facebook connector has no page_id", platform=self.platform.value, retryable=False)
        return page_id

    async def publish(self, variant, connector, context: Optional[dict] = None) -> PublishResult:
        context = context or {}
        payload = {
            "message": variant.content,
            "access_token": self._access_token(connector),
        }
        link = context.get("link") or (variant.meta or {}).get("link")
        if link:
            payload["link"] = link

        async with httpx.AsyncClient(timeout=TIMEOUT) as client:
            response = await client.post(f"{GRAPH_URL}/{self._page_id(connector)}/feed", data=payload)
        data = self._check_response(response, "post")
        post_id = data.get("id")
        if not post_id:
            raise PlatformError("Facebook response had no post id", platform=self.platform.value)

        logger.info("Facebook post published: %s", post_id, extra={"platform": self.platform.value})
        return PublishResult(
            post_id=str(post_id),
            url=f"https://www.facebook.com/{post_id}",
            platform=self.platform.value,
            raw=data,
        )

    async def delete(self, post_id: str, connector) -> bool:
        try:
            async with httpx.AsyncClient(timeout=TIMEOUT) as client:
                response = await client.delete(
                    f"{GRAPH_URL}/{post_id}",
                    params={"access_token": self._access_token(connector)},
                )
            return bool(self._check_response(response, "delete").get("success"))
        except (PlatformError, httpx.HTTPError) as e:
            logger.error("Facebook delete failed for %s: %s", post_id, str(e))
            return False

    async def get_metrics(self, post_id: str, connector) -> dict:
        metrics: dict[str, int] = {}
        try:
            token = self._access_token(connector)
            async with httpx.AsyncClient(timeout=TIMEOUT) as client:
                response = await client.get(
                    f"{GRAPH_URL}/{post_id}",
                    params={"fields": ENGAGEMENT_FIELDS, "access_token": token},
                )
                data = self._check_response(response, "metrics")

                for name in ("likes", "comments", "reactions"):
                    summary = (data.get(name) or {}).get("summary") or {}
                    if "total_count" in summary:
                        metrics[name] = int(summary["total_count"])
                if "shares" in data:
                    metrics["shares"] = int((data.get("shares") or {}).get("count", 0))

                insights = await client.get(
                    f"{GRAPH_URL}/{post_id}/insights",
                    params={"metric": ",".join(INSIGHT_METRICS), "access_token": token},
                )
                for row in self._check_response(insights, "insights").get("data") or []:
                    name = INSIGHT_METRICS.get(row.get("name"))
                    values = row.get("values") or []
                    if name and values:
                        metrics[name] = int(values[0].get("value") or 0)
        except (PlatformError, httpx.HTTPError) as e:
            logger.warning("Facebook metrics unavailable for %s: %s", post_id, str(e))
        return metrics

    async def refresh_token(self, connector) -> dict:
        """Exchange the current token for a fresh long-lived one."""
        from src.config import get_settings
        settings = get_settings()
        async with httpx.AsyncClient(timeout=TIMEOUT) as client:
            response = await client.get(
                f"{GRAPH_URL}/oauth/access_token",
                params={
                    "grant_type": "fb_exchange_token",
                    "client_id": settings.facebook_app_id,
                    "client_secret": settings.facebook_app_secret,
                    "fb_exchange_token": self._access_token(connector),
                },
            )
        data = self._check_response(response, "token refresh")
        return self._store_tokens(connector, {
            "access_token": data.get("access_token"),
            "expires_in": data.get("expires_in"),
        })
