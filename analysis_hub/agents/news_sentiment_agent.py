"""News sentiment worker — recent headlines from several providers.

Providers are tried in order; a provider whose rate-limit window is full,
or that fails, is skipped. The request only fails when no provider
returned anything.
"""

from __future__ import annotations

import re
from typing import Any, Awaitable, Callable

from analysis_hub.agents.base_agent import AgentContext
from analysis_hub.collectors.news_collector import GoogleNewsCollector
from analysis_hub.collectors.yfinance_collector import YFinanceCollector
from analysis_hub.config import settings
from analysis_hub.errors import summarize_exception
from analysis_hub.utils.logger import logger

NewsFetcher = Callable[[str], Awaitable[list[dict[str, Any]]]]

_POSITIVE = {
    "beat", "beats", "surge", "surges", "soar", "soars", "rally", "gain",
    "gains", "upgrade", "upgraded", "record", "growth", "strong", "bullish",
    "outperform", "raises", "profit",
}
_NEGATIVE = {
    "miss", "misses", "plunge", "plunges", "drop", "drops", "fall", "falls",
    "downgrade", "downgraded", "lawsuit", "probe", "weak", "bearish",
    "cut", "cuts", "loss", "recall", "layoffs",
}
_WORD_RE = re.compile(r"[a-z]+")


def headline_tone(titles: list[str]) -> dict[str, Any]:
    """Count positive/negative keywords across headlines."""
    pos = neg = 0
    for title in titles:
        words = set(_WORD_RE.findall(title.lower()))
        pos += len(words & _POSITIVE)
        neg += len(words & _NEGATIVE)
    total = pos + neg
    score = round((pos - neg) / total, 3) if total else 0.0
    if score > 0.2:
        label = "POSITIVE"
    elif score < -0.2:
        label = "NEGATIVE"
    else:
        label = "NEUTRAL"
    return {"positive_hits": pos, "negative_hits": neg, "score": score, "label": label}


class NewsSentimentAgent:
    source_id = "NewsSentimentAgent"
    required_fields = ("symbol",)

    def __init__(self, providers: dict[str, NewsFetcher] | None = None) -> None:
        if providers is None:
            providers = {
                "yfinance": YFinanceCollector().fetch_news,
                "google_news": GoogleNewsCollector().fetch_news,
            }
        self.providers = providers
        self.input_topics = [settings.NEWS_TOPIC]

    async def handle(self, payload: dict[str, Any], ctx: AgentContext) -> dict[str, Any]:
        symbol = str(payload["symbol"]).upper()
        cache_key = f"news:{symbol}"
        cached = ctx.get_cached(cache_key)
        if cached is not None:
            return cached

        await ctx.emit_progress(5, "Collecting news headlines...")
        articles: list[dict[str, Any]] = []
        used: list[str] = []
        skipped: dict[str, str] = {}
        for provider_id, fetch in self.providers.items():
            if not ctx.check_rate_limit(provider_id):
                skipped[provider_id] = "rate_limited"
                continue
            try:
                batch = await fetch(symbol)
            except Exception as exc:
                logger.warning(
                    "[%s] %s failed for %s: %s",
                    self.source_id, provider_id, symbol, summarize_exception(exc),
                )
                skipped[provider_id] = "failed"
                continue
            articles.extend(batch)
            used.append(provider_id)

        if not articles:
            raise RuntimeError(
                f"No news available for {symbol} (skipped: {skipped or 'none'})"
            )

        # De-duplicate on title across providers
        seen: set[str] = set()
        unique = []
        for art in articles:
            key = art["title"].lower()
            if key not in seen:
                seen.add(key)
                unique.append(art)

        await ctx.emit_progress(25, "Scoring headline tone...")
        result = {
            "symbol": symbol,
            "article_count": len(unique),
            "headlines": [a["title"] for a in unique[:10]],
            "tone": headline_tone([a["title"] for a in unique]),
            "providers": used,
            "skipped_providers": skipped,
        }
        ctx.set_cached(cache_key, result, settings.NEWS_CACHE_TTL)
        return result
