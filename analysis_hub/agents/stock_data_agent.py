"""Stock data worker — latest price, recent performance and a few indicators."""

from __future__ import annotations

from typing import Any

import pandas as pd

from analysis_hub.agents.base_agent import AgentContext
from analysis_hub.collectors.yfinance_collector import YFinanceCollector
from analysis_hub.config import settings
from analysis_hub.utils.logger import logger


def _rsi(close: pd.Series, period: int = 14) -> float | None:
    delta = close.diff()
    gain = delta.clip(lower=0).rolling(period).mean()
    loss = (-delta.clip(upper=0)).rolling(period).mean()
    if loss.empty or pd.isna(loss.iloc[-1]) or pd.isna(gain.iloc[-1]):
        return None
    if loss.iloc[-1] == 0:
        return 100.0
    rs = gain.iloc[-1] / loss.iloc[-1]
    return round(float(100 - 100 / (1 + rs)), 2)


def summarize_history(df: pd.DataFrame) -> dict[str, Any]:
    """Reduce an OHLCV frame to the handful of numbers the aggregator needs."""
    close = df["Close"].astype(float)
    last = float(close.iloc[-1])

    def pct_change(bars: int) -> float | None:
        if len(close) <= bars:
            return None
        return round((last / float(close.iloc[-bars - 1]) - 1) * 100, 2)

    def sma(window: int) -> float | None:
        if len(close) < window:
            return None
        return round(float(close.rolling(window).mean().iloc[-1]), 4)

    return {
        "price": round(last, 4),
        "change_1d_pct": pct_change(1),
        "change_1m_pct": pct_change(21),
        "sma_20": sma(20),
        "sma_50": sma(50),
        "rsi_14": _rsi(close),
        "avg_volume_20": (
            int(df["Volume"].tail(20).mean()) if "Volume" in df else None
        ),
        "bars": len(close),
        "as_of": str(df.index[-1].date()) if hasattr(df.index[-1], "date") else None,
    }


class StockDataAgent:
    """Price data + technical snapshot from yfinance."""

    source_id = "StockDataAgent"
    required_fields = ("symbol",)

    def __init__(self, collector: YFinanceCollector | None = None) -> None:
        self.collector = collector or YFinanceCollector()
        self.input_topics = [settings.STOCK_DATA_TOPIC]

    async def handle(self, payload: dict[str, Any], ctx: AgentContext) -> dict[str, Any]:
        symbol = str(payload["symbol"]).upper()
        await ctx.emit_progress(3, "Starting stock data collection...")

        cache_key = f"stock_snapshot:{symbol}"
        cached = ctx.get_cached(cache_key)
        if cached is not None:
            logger.debug("[%s] Using cached snapshot for %s", self.source_id, symbol)
            await ctx.emit_progress(33, "Stock data loaded from cache")
            return cached

        if not ctx.check_rate_limit("yfinance"):
            raise RuntimeError(f"Unable to fetch price data for {symbol}: yfinance rate limit reached")

        await ctx.emit_progress(10, "Fetching historical data...")
        df = await self.collector.fetch_price_history(symbol)
        if df.empty:
            raise RuntimeError(f"No price history available for {symbol}")

        await ctx.emit_progress(20, "Calculating technical indicators...")
        snapshot = {"symbol": symbol, **summarize_history(df)}

        ctx.set_cached(cache_key, snapshot, settings.STOCK_DATA_CACHE_TTL)
        await ctx.emit_progress(33, "Stock data analysis complete")
        return snapshot
