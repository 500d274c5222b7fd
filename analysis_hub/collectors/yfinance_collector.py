"""yFinance collector — quote, price history and fundamentals for one ticker.

  • Ticker-object cache — one yf.Ticker per symbol per process
  • Blocking yfinance calls run in a worker thread
  • Retry-with-backoff decorator — handles Yahoo 429 rate-limits
"""

from __future__ import annotations

import asyncio
from functools import wraps
from typing import Any, Callable, TypeVar

import pandas as pd
import yfinance as yf

from analysis_hub.utils.logger import logger

F = TypeVar("F", bound=Callable[..., Any])


def _retry_on_rate_limit(max_retries: int = 3, base_delay: float = 2.0):
    """Retry an async method when Yahoo Finance returns a rate-limit error."""

    def decorator(func: F) -> F:
        @wraps(func)
        async def wrapper(*args: Any, **kwargs: Any) -> Any:
            for attempt in range(max_retries + 1):
                try:
                    return await func(*args, **kwargs)
                except Exception as exc:
                    err_str = str(exc).lower()
                    is_rate_limit = "429" in err_str or "too many requests" in err_str
                    if not is_rate_limit or attempt >= max_retries:
                        raise
                    delay = base_delay * (2 ** attempt)
                    logger.warning(
                        "Rate-limited on %s (attempt %d/%d), retrying in %.1fs …",
                        func.__name__, attempt + 1, max_retries, delay,
                    )
                    await asyncio.sleep(delay)
            raise RuntimeError(f"{func.__name__}: retries exhausted")

        return wrapper  # type: ignore[return-value]

    return decorator


# Keys copied out of Ticker.info for the fundamentals snapshot
_FUNDAMENTAL_KEYS: dict[str, str] = {
    "market_cap": "marketCap",
    "trailing_pe": "trailingPE",
    "forward_pe": "forwardPE",
    "peg_ratio": "pegRatio",
    "price_to_book": "priceToBook",
    "price_to_sales": "priceToSalesTrailing12Months",
    "profit_margin": "profitMargins",
    "operating_margin": "operatingMargins",
    "return_on_equity": "returnOnEquity",
    "revenue_growth": "revenueGrowth",
    "debt_to_equity": "debtToEquity",
    "free_cash_flow": "freeCashflow",
    "dividend_yield": "dividendYield",
    "beta": "beta",
}


def _safe_float(value: Any) -> float | None:
    if value is None:
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


class YFinanceCollector:
    """Thin async wrapper over yfinance for the worker agents."""

    _ticker_cache: dict[str, yf.Ticker] = {}

    @classmethod
    def _get_ticker(cls, symbol: str) -> yf.Ticker:
        """Return a cached yf.Ticker, creating one on first access."""
        if symbol not in cls._ticker_cache:
            cls._ticker_cache[symbol] = yf.Ticker(symbol)
        return cls._ticker_cache[symbol]

    @classmethod
    def clear_cache(cls, symbol: str | None = None) -> None:
        if symbol:
            cls._ticker_cache.pop(symbol, None)
        else:
            cls._ticker_cache.clear()

    @_retry_on_rate_limit()
    async def fetch_price_history(
        self, symbol: str, period: str = "6mo", interval: str = "1d",
    ) -> pd.DataFrame:
        """Fetch OHLCV candles as a DataFrame (may be empty)."""
        logger.info("Fetching price history for %s (period=%s)", symbol, period)
        t = self._get_ticker(symbol)
        df: pd.DataFrame = await asyncio.to_thread(
            t.history, period=period, interval=interval,
        )
        if df.empty:
            logger.warning("No price data returned for %s", symbol)
        return df

    @_retry_on_rate_limit()
    async def fetch_fundamentals(self, symbol: str) -> dict[str, Any]:
        """Fetch a snapshot of valuation and profitability fields."""
        logger.info("Fetching fundamentals for %s", symbol)
        t = self._get_ticker(symbol)
        info: dict = await asyncio.to_thread(lambda: t.info or {})
        snapshot: dict[str, Any] = {
            name: _safe_float(info.get(key)) for name, key in _FUNDAMENTAL_KEYS.items()
        }
        snapshot["sector"] = info.get("sector", "")
        snapshot["industry"] = info.get("industry", "")
        snapshot["name"] = info.get("longName") or info.get("shortName") or symbol
        return snapshot

    @_retry_on_rate_limit()
    async def fetch_news(self, symbol: str, limit: int = 15) -> list[dict[str, Any]]:
        """Fetch headline dicts from yfinance's ``.news`` property."""
        t = self._get_ticker(symbol)
        items: list = await asyncio.to_thread(lambda: t.news or [])
        articles: list[dict[str, Any]] = []
        for item in items[:limit]:
            # Newer yfinance nests the article under "content"
            content = item.get("content", item) if isinstance(item, dict) else {}
            title = (content.get("title") or "").strip()
            if not title:
                continue
            provider = content.get("provider") or {}
            articles.append({
                "title": title,
                "publisher": content.get("publisher") or provider.get("displayName", ""),
                "summary": content.get("summary", ""),
                "source": "yfinance",
            })
        logger.info("yfinance: %d articles for %s", len(articles), symbol)
        return articles
