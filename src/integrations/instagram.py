"""
Instagram publisher - Graph API two-step publish (media container, then publish).
platform_settings: {"ig_user_id": "..."}. Every post needs an image_url.
"""
import logging
from typing import Optional

import httpx

from src.integrations.facebook import GRAPH_URL
from src.integrations.publisher_base import TIMEOUT, PlatformError, SocialPublisher
from src.models.content_variant import Platform
from src.schemas.pipeline import PublishResult

logger = logging.getLogger(__name__)

INSIGHT_METRICS = "impressions,reach,likes,comments,shares"


class InstagramPublisher(SocialPublisher):
    platform = Platform.INSTAGRAM

    def _user_id(self, connector) -> str:
        user_id = (connector.platform_settings or {}).get("ig_user_id") or connector.account_id
        if not user_id:
            raise PlatformError("Instagram connector has no ig_user_id", platform=self.platform.value, retryable=False)
        return user_id

    async def publish(self, variant, connector, context: Optional[dict] = None) -> PublishResult:
        context = context or {}
        image_url = (
            (variant.meta or {}).get("image_url")
            or (variant.formatting or {}).get("image_url")
            or context.get("featured_image_url")
        )
        if not image_url:
            raise PlatformError("Instagram requires an image_url", platform=self.platform.value, retryable=False)

        token = self._access_token(connector)
        user_id = self._user_id(connector)
        async with httpx.AsyncClient(timeout=TIMEOUT) as client:
            container = await client.post(
                f"{GRAPH_URL}/{user_id}/media",
                data={"image_url": image_url, "caption": variant.content, "access_token": token},
            )
            creation_id = self._check_response(container, "media container").get("id")
            if not creation_id:
                raise PlatformError("Instagram returned no media container id", platform=self.platform.value)

            published = await client.post(
                f"{GRAPH_URL}/{user_id}/media_publish",
                data={"creation_id": creation_id, "access_token": token},
            )
            data = self._check_response(published, "publish")
            media_id = data.get("id")
            if not media_id:
                raise PlatformError("Instagram returned no media id", platform=self.platform.value)

            permalink = None
            try:
                info = await client.get(
                    f"{GRAPH_URL}/{media_id}", params={"fields": "permalink", "access_token": token},
                )
                permalink = self._check_response(info, "permalink").get("permalink")
            except (PlatformError, httpx.HTTPError) as e:
                logger.debug("Instagram permalink lookup failed: %s", str(e))

        logger.info("Instagram media published: %s", media_id, extra={"platform": self.platform.value})
        return PublishResult(post_id=str(media_id), url=permalink, platform=self.platform.value, raw=data)

    async def delete(self, post_id: str, connector) -> bool:
        # The Graph API does not allow deleting published feed media
        logger.warning("Instagram media %s cannot be deleted through the API", post_id)
        return False

    async def get_metrics(self, post_id: str, connector) -> dict:
        try:
            async with httpx.AsyncClient(timeout=TIMEOUT) as client:
                response = await client.get(
                    f"{GRAPH_URL}/{post_id}/insights",
                    params={"metric": INSIGHT_METRICS, "access_token": self._access_token(connector)},
                )
            rows = self._check_response(response, "metrics").get("data") or []
        except (PlatformError, httpx.HTTPError) as e:
            logger.warning("Instagram metrics unavailable for %s: %s", post_id, str(e))
            return {}

        metrics = {}
        for row in rows:
            values = row.get("values") or []
            if row.get("name") and values:
                metrics[row["name"]] = int(values[0].get("value") or 0)
        return metrics

    async def refresh_token(self, connector) -> dict:
        async with httpx.AsyncClient(timeout=TIMEOUT) as client:
            response = await client.get(
                "https://graph.instagram.com/refresh_access_token",
                params={"grant_type": "ig_refresh_token", "access_token": self._access_token(connector)},
            )
        data = self._check_response(response, "token refresh")
        return self._store_tokens(connector, {
            "access_token": data.get("access_token"),
            "expires_in": data.get("expires_in"),
        })
