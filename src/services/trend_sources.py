"""
Trend sources - pluggable adapters returning candidate topics for a category.

SerpApiTrendSource: Google News results via SerpAPI.
RssFeedTrendSource: the category's own feeds (trend_sources.rss_feeds).
All calls have a 15-second timeout. A failing source returns an empty list
so one bad feed never stops discovery for the others.
"""
import logging
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from email.utils import parsedate_to_datetime
from typing import Optional

import httpx
from bs4 import BeautifulSoup

from src.schemas.pipeline import TrendCandidate

logger = logging.getLogger(__name__)

SERPAPI_URL = "https://serpapi.com/search.json"
TIMEOUT = 15.0
MAX_KEYWORDS_PER_QUERY = 3


class TrendSource(ABC):
    """One provider of candidate topics."""

    name: str = "base"

    @abstractmethod
    async def discover(self, category, limit: int = 10) -> list[TrendCandidate]:
        """Finite list of candidates for the category, at most limit long."""
        ...

    @abstractmethod
    def is_available(self) -> bool:
        ...


def _parse_date(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    try:
        parsed = parsedate_to_datetime(value)
    except (TypeError, ValueError):
        try:
            parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
        except ValueError:
            return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


class SerpApiTrendSource(TrendSource):
    name = "serpapi"

    def __init__(self, api_key: Optional[str] = None):
        if api_key is None:
            from src.config import get_settings
            api_key = get_settings().serpapi_api_key
        self.api_key = api_key

    def is_available(self) -> bool:
        return bool(self.api_key)

    async def discover(self, category, limit: int = 10) -> list[TrendCandidate]:
        keywords = list(category.keywords or [])[:MAX_KEYWORDS_PER_QUERY]
        query = " OR ".join(keywords) if keywords else category.name
        params = {
            "engine": "google_news",
            "q": query,
            "api_key": self.api_key,
            "num": limit,
        }

        try:
            async with httpx.AsyncClient(timeout=TIMEOUT) as client:
                response = await client.get(SERPAPI_URL, params=params)
                response.raise_for_status()
                data = response.json()
        except Exception as e:
            logger.warning("SerpAPI discovery failed for category %s: %s", category.name, str(e))
            return []

        candidates = []
        for item in (data.get("news_results") or [])[:limit]:
            title = (item.get("title") or "").strip()
            if not title:
                continue
            source = item.get("source") or {}
            candidates.append(TrendCandidate(
                title=title,
                description=(item.get("snippet") or "").strip(),
                keywords=keywords,
                source_urls=[item["link"]] if item.get("link") else [],
                published_at=_parse_date(item.get("date")),
                metadata={
                    "source": self.name,
                    "publisher": source.get("name") if isinstance(source, dict) else source,
                    "position": item.get("position"),
                },
            ))
        return candidates


class RssFeedTrendSource(TrendSource):
    name = "rss"

    def is_available(self) -> bool:
        return True

    async def discover(self, category, limit: int = 10) -> list[TrendCandidate]:
        feeds = (category.trend_sources or {}).get("rss_feeds") or []
        if not feeds:
            return []

        candidates: list[TrendCandidate] = []
        async with httpx.AsyncClient(timeout=TIMEOUT, follow_redirects=True) as client:
            for feed_url in feeds:
                if len(candidates) >= limit:
                    break
                try:
                    response = await client.get(feed_url)
                    response.raise_for_status()
                except Exception as e:
                    logger.warning("RSS fetch failed for %s: %s", feed_url, str(e))
                    continue
                candidates.extend(self.parse_feed(response.text, feed_url, category)[: limit - len(candidates)])
        return candidates

    def parse_feed(self, xml: str, feed_url: str, category) -> list[TrendCandidate]:
        """RSS <item> and Atom <entry> elements."""
        soup = BeautifulSoup(xml, "xml")
        keywords = [kw for kw in (category.keywords or [])]
        items = soup.find_all("item") or soup.find_all("entry")

        candidates = []
        for item in items:
            title_tag = item.find("title")
            title = title_tag.get_text(strip=True) if title_tag else ""
            if not title:
                continue

            link = ""
            link_tag = item.find("link")
            if link_tag is not None:
                link = link_tag.get("href") or link_tag.get_text(strip=True)

            desc_tag = item.find("description") or item.find("summary")
            description = ""
            if desc_tag is not None:
                # Descriptions are often HTML fragments
                description = BeautifulSoup(desc_tag.get_text(), "html.parser").get_text(" ", strip=True)

            date_tag = item.find("pubDate") or item.find("published") or item.find("updated")
            candidates.append(TrendCandidate(
                title=title,
                description=description[:1000],
                keywords=[kw for kw in keywords if kw and kw.lower() in f"{title} {description}".lower()],
                source_urls=[link] if link else [],
                published_at=_parse_date(date_tag.get_text(strip=True) if date_tag else None),
                metadata={"source": self.name, "feed": feed_url},
            ))
        return candidates


class TrendSourceRegistry:
    """Named trend sources. Discovery polls every available one."""

    def __init__(self):
        self._sources: dict[str, TrendSource] = {}

    def register(self, source: TrendSource) -> None:
        self._sources[source.name] = source

    def get(self, name: str) -> Optional[TrendSource]:
        return self._sources.get(name)

    def available(self) -> list[TrendSource]:
        return [s for s in self._sources.values() if s.is_available()]


def default_registry() -> TrendSourceRegistry:
    registry = TrendSourceRegistry()
    registry.register(SerpApiTrendSource())
    registry.register(RssFeedTrendSource())
    return registry
