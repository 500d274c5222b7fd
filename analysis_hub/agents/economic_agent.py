"""Economic indicator worker — macro backdrop shared by every symbol."""

from __future__ import annotations

from typing import Any

from analysis_hub.agents.base_agent import AgentContext
from analysis_hub.collectors.fred_collector import FredCollector
from analysis_hub.config import settings
from analysis_hub.utils.logger import logger

# Macro data is the same for every ticker, so one cache slot serves all
_CACHE_KEY = "economic_indicators"


def yield_curve_spread(indicators: dict[str, Any]) -> float | None:
    """10y minus 2y Treasury yield, when both are present."""
    ten = indicators.get("treasury_10y", {}).get("current")
    two = indicators.get("treasury_2y", {}).get("current")
    if ten is None or two is None:
        return None
    return round(ten - two, 3)


class EconomicIndicatorAgent:
    source_id = "EconomicIndicatorAgent"
    required_fields = ("symbol",)

    def __init__(self, collector: FredCollector | None = None) -> None:
        self.collector = collector or FredCollector()
        self.input_topics = [settings.ECONOMIC_TOPIC]

    async def handle(self, payload: dict[str, Any], ctx: AgentContext) -> dict[str, Any]:
        symbol = str(payload["symbol"]).upper()
        await ctx.emit_progress(10, "Starting economic data collection...")

        indicators = ctx.get_cached(_CACHE_KEY)
        if indicators is None:
            if not ctx.check_rate_limit("fred"):
                raise RuntimeError("FRED rate limit reached")
            indicators = await self.collector.fetch_indicators()
            ctx.set_cached(_CACHE_KEY, indicators, settings.ECONOMIC_DATA_CACHE_TTL)
        else:
            logger.debug("[%s] Using cached economic data", self.source_id)

        await ctx.emit_progress(70, "Economic data collected")
        return {
            "symbol": symbol,
            "indicators": indicators,
            "yield_curve_spread": yield_curve_spread(indicators),
        }
