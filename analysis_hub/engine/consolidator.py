"""Default consolidation step — pools worker payloads into one result.

The Aggregator calls a ``Consolidator`` exactly once per correlation id with
the payloads of every source that returned data. Domain scoring and
recommendation logic plug in here; the default only pools the reports and
grades data quality by coverage.
"""

from __future__ import annotations

import json
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable

from analysis_hub.utils.logger import logger

Consolidator = Callable[[str, dict[str, dict[str, Any]], float], Awaitable[dict[str, Any]]]


def grade_coverage(coverage: float) -> tuple[str, list[str]]:
    """Map a coverage fraction to a quality grade plus issues."""
    if coverage >= 1.0:
        return "GOOD", []
    if coverage >= 0.5:
        return "FAIR", ["Partial data coverage"]
    return "POOR", ["Insufficient data coverage"]


class PooledAnalysis:
    """Container for all worker reports for one symbol."""

    def __init__(
        self,
        symbol: str,
        reports: dict[str, dict[str, Any]],
        coverage: float,
    ) -> None:
        self.symbol = symbol
        self.reports = reports
        self.coverage = coverage

    def data_quality(self) -> dict[str, Any]:
        overall, issues = grade_coverage(self.coverage)
        return {
            "overall": overall,
            "coverage_pct": round(self.coverage * 100),
            "issues": issues,
        }

    def to_summary(self) -> dict[str, Any]:
        """Return a compact summary dict for logging."""
        return {
            "symbol": self.symbol,
            "sources": sorted(self.reports),
            "quality": self.data_quality()["overall"],
        }

    def to_result(self) -> dict[str, Any]:
        return {
            "symbol": self.symbol,
            "reports": self.reports,
            "data_quality": self.data_quality(),
            "generated_at": datetime.now(timezone.utc).isoformat(),
        }


async def pool_reports(
    symbol: str, reports: dict[str, dict[str, Any]], coverage: float,
) -> dict[str, Any]:
    """Default ``Consolidator``: pool reports, no scoring."""
    pooled = PooledAnalysis(symbol=symbol, reports=reports, coverage=coverage)
    logger.info("Pooled analysis for %s: %s", symbol, json.dumps(pooled.to_summary()))
    return pooled.to_result()
