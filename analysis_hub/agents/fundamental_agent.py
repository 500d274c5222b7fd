"""Fundamentals worker — valuation and profitability snapshot."""

from __future__ import annotations

from typing import Any

from analysis_hub.agents.base_agent import AgentContext
from analysis_hub.collectors.yfinance_collector import YFinanceCollector
from analysis_hub.config import settings


class FundamentalDataAgent:
    source_id = "FundamentalDataAgent"
    required_fields = ("symbol",)

    def __init__(self, collector: YFinanceCollector | None = None) -> None:
        self.collector = collector or YFinanceCollector()
        self.input_topics = [settings.FUNDAMENTAL_TOPIC]

    async def handle(self, payload: dict[str, Any], ctx: AgentContext) -> dict[str, Any]:
        symbol = str(payload["symbol"]).upper()
        cache_key = f"fundamentals:{symbol}"
        cached = ctx.get_cached(cache_key)
        if cached is not None:
            return cached

        if not ctx.check_rate_limit("yfinance"):
            raise RuntimeError(f"Unable to fetch fundamentals for {symbol}: yfinance rate limit reached")

        await ctx.emit_progress(15, "Fetching fundamental data...")
        snapshot = await self.collector.fetch_fundamentals(symbol)
        if all(v is None for k, v in snapshot.items() if k not in ("sector", "industry", "name")):
            raise RuntimeError(f"No fundamental data available for {symbol}")

        result = {"symbol": symbol, **snapshot}
        ctx.set_cached(cache_key, result, settings.FUNDAMENTAL_CACHE_TTL)
        await ctx.emit_progress(40, "Fundamental data collected")
        return result
