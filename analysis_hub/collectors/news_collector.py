"""Google News RSS collector — second headline source for the sentiment worker."""

from __future__ import annotations

import asyncio
from typing import Any
from urllib.parse import quote_plus

import feedparser

from analysis_hub.utils.logger import logger

GOOGLE_NEWS_RSS = "https://news.google.com/rss/search?q={query}&hl=en-US&gl=US&ceid=US:en"


class GoogleNewsCollector:
    """Fetches ticker headlines from the Google News RSS search feed."""

    async def fetch_news(self, symbol: str, limit: int = 15) -> list[dict[str, Any]]:
        url = GOOGLE_NEWS_RSS.format(query=quote_plus(f"{symbol} stock"))
        feed = await asyncio.to_thread(feedparser.parse, url)
        if getattr(feed, "bozo", False) and not feed.entries:
            raise RuntimeError(f"Google News feed unreadable: {feed.get('bozo_exception')}")

        articles: list[dict[str, Any]] = []
        for entry in feed.entries[:limit]:
            title = entry.get("title", "").strip()
            if not title:
                continue
            articles.append({
                "title": title,
                "publisher": entry.get("source", {}).get("title", "Google News"),
                "summary": entry.get("summary", ""),
                "source": "google_news",
            })
        logger.info("Google News: %d articles for %s", len(articles), symbol)
        return articles
