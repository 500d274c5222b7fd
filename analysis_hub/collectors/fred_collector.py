"""FRED collector — latest observations for a handful of macro series.

Requires ``FRED_API_KEY``; without it the collector refuses to run and the
economic worker reports an error for its source.
"""

from __future__ import annotations

from typing import Any

import httpx

from analysis_hub.config import settings
from analysis_hub.utils.logger import logger

# FRED series id -> indicator name
INDICATORS: dict[str, str] = {
    "GDP": "gdp",
    "UNRATE": "unemployment_rate",
    "CPIAUCSL": "cpi",
    "FEDFUNDS": "federal_funds_rate",
    "DGS10": "treasury_10y",
    "DGS2": "treasury_2y",
    "VIXCLS": "vix",
}


class FredCollector:
    """Reads series observations from the FRED REST API."""

    def __init__(
        self,
        api_key: str | None = None,
        base_url: str | None = None,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self.api_key = settings.FRED_API_KEY if api_key is None else api_key
        self.base_url = (base_url or settings.FRED_URL).rstrip("/")
        self._client = client

    @property
    def configured(self) -> bool:
        return bool(self.api_key)

    async def fetch_indicators(self, observations: int = 12) -> dict[str, Any]:
        """Return ``{indicator: {current, previous, date}}`` for every series.

        Individual series failures are logged and skipped.
        """
        if not self.configured:
            raise RuntimeError("FRED API key not configured")

        client = self._client or httpx.AsyncClient(timeout=httpx.Timeout(10.0))
        data: dict[str, Any] = {}
        try:
            for series_id, name in INDICATORS.items():
                try:
                    resp = await client.get(
                        f"{self.base_url}/series/observations",
                        params={
                            "series_id": series_id,
                            "api_key": self.api_key,
                            "file_type": "json",
                            "sort_order": "desc",
                            "limit": observations,
                        },
                    )
                    resp.raise_for_status()
                except httpx.HTTPError as exc:
                    logger.warning("FRED %s fetch failed: %s", series_id, exc)
                    continue

                values = [
                    obs for obs in resp.json().get("observations", [])
                    if obs.get("value") not in (None, ".")
                ]
                if not values:
                    continue
                data[name] = {
                    "current": float(values[0]["value"]),
                    "previous": float(values[1]["value"]) if len(values) > 1 else None,
                    "date": values[0].get("date"),
                }
        finally:
            if self._client is None:
                await client.aclose()

        if not data:
            raise RuntimeError("FRED returned no usable observations")
        return data
