"""Application configuration — environment variables and defaults.

Topic names, timings and rate limits live HERE. Change them once, affects
every agent. Persistent overrides are stored in user_config/orchestrator.json.
"""

import json
import os
from pathlib import Path
from typing import Any


def _env_float(name: str, default: str) -> float:
    return float(os.getenv(name, default))


class Settings:
    """Central configuration pulled from environment with safe defaults."""

    # Paths
    BASE_DIR: Path = Path(__file__).resolve().parent.parent
    LOGS_DIR: Path = BASE_DIR / "logs"
    USER_CONFIG_DIR: Path = Path(__file__).resolve().parent / "user_config"
    USER_CONFIG_PATH: Path = USER_CONFIG_DIR / "orchestrator.json"

    # ── Message bus ─────────────────────────────────────────────────
    # Which transport to use: "memory" (single process) | "redis"
    BUS_BACKEND: str = os.getenv("BUS_BACKEND", "memory")
    REDIS_URL: str = os.getenv("REDIS_URL", "redis://localhost:6379/0")

    # Topic names
    STOCK_DATA_TOPIC: str = os.getenv("STOCK_DATA_TOPIC", "stock_data_queue")
    NEWS_TOPIC: str = os.getenv("NEWS_TOPIC", "news_queue")
    FUNDAMENTAL_TOPIC: str = os.getenv("FUNDAMENTAL_TOPIC", "fundamental_queue")
    ECONOMIC_TOPIC: str = os.getenv("ECONOMIC_TOPIC", "economic_queue")
    ANALYSIS_TOPIC: str = os.getenv("ANALYSIS_TOPIC", "analysis_queue")
    UI_TOPIC: str = os.getenv("UI_TOPIC", "ui_queue")

    # ── Aggregation ─────────────────────────────────────────────────
    AGGREGATION_TIMEOUT_MS: int = int(os.getenv("AGGREGATION_TIMEOUT_MS", "30000"))
    # How long a finished request id is remembered so stragglers are recognised
    TOMBSTONE_GRACE_SECS: float = _env_float("TOMBSTONE_GRACE_SECS", "600")
    # Pending requests older than this are abandoned by the sweeper
    MAX_PENDING_AGE_SECS: float = _env_float("MAX_PENDING_AGE_SECS", "900")
    SWEEP_INTERVAL_SECS: int = int(os.getenv("SWEEP_INTERVAL_SECS", "60"))

    # ── Relay bookkeeping ───────────────────────────────────────────
    SUCCESS_GRACE_SECS: float = _env_float("SUCCESS_GRACE_SECS", "300")
    ERROR_GRACE_SECS: float = _env_float("ERROR_GRACE_SECS", "60")

    # ── Cache TTLs (seconds) ────────────────────────────────────────
    RESULT_CACHE_TTL_SECS: int = int(os.getenv("RESULT_CACHE_TTL_SECS", "3600"))
    DEFAULT_CACHE_TTL_SECS: int = int(os.getenv("CACHE_TTL_SECONDS", "300"))
    STOCK_DATA_CACHE_TTL: int = int(os.getenv("STOCK_DATA_CACHE_TTL", "60"))
    NEWS_CACHE_TTL: int = int(os.getenv("NEWS_CACHE_TTL", "1800"))
    FUNDAMENTAL_CACHE_TTL: int = int(os.getenv("FUNDAMENTAL_CACHE_TTL", "3600"))
    ECONOMIC_DATA_CACHE_TTL: int = int(os.getenv("ECONOMIC_DATA_CACHE_TTL", "3600"))

    # ── Per-provider rate limits: provider -> (limit, window_ms) ────
    RATE_LIMITS: dict[str, tuple[int, int]] = {
        "yfinance": (
            int(os.getenv("YFINANCE_RATE_LIMIT", "120")),
            int(os.getenv("YFINANCE_RATE_WINDOW_MS", "60000")),
        ),
        "fred": (
            int(os.getenv("FRED_RATE_LIMIT", "120")),
            int(os.getenv("FRED_RATE_WINDOW_MS", "60000")),
        ),
    }

    # ── Upstream providers ──────────────────────────────────────────
    FRED_API_KEY: str = os.getenv("FRED_API_KEY", "")
    FRED_URL: str = os.getenv("FRED_URL", "https://api.stlouisfed.org/fred")

    # Server
    HOST: str = os.getenv("HOST", "0.0.0.0")
    PORT: int = int(os.getenv("PORT", "8000"))
    CORS_ORIGINS: list[str] = os.getenv("CORS_ORIGIN", "*").split(",")

    # 'all' | 'agents-only' | 'api-only'
    START_MODE: str = os.getenv("START_MODE", "all")

    def __init__(self) -> None:
        """Ensure runtime directories exist and load persisted overrides."""
        self.LOGS_DIR.mkdir(parents=True, exist_ok=True)
        self.RATE_LIMITS = dict(self.RATE_LIMITS)
        self.load_user_config()

    @property
    def WORKER_TOPICS(self) -> dict[str, str]:
        """Computed: source id -> input topic for every known worker."""
        return {
            "StockDataAgent": self.STOCK_DATA_TOPIC,
            "NewsSentimentAgent": self.NEWS_TOPIC,
            "FundamentalDataAgent": self.FUNDAMENTAL_TOPIC,
            "EconomicIndicatorAgent": self.ECONOMIC_TOPIC,
        }

    @property
    def AGGREGATION_TIMEOUT_SECS(self) -> float:
        return self.AGGREGATION_TIMEOUT_MS / 1000.0

    # ── Persistent overrides ──────────────────────────────────────

    def load_user_config(self) -> None:
        """Load overrides from orchestrator.json, on top of env-var defaults."""
        if not self.USER_CONFIG_PATH.exists():
            return
        try:
            data = json.loads(self.USER_CONFIG_PATH.read_text(encoding="utf-8"))
            self._apply_user_config(data)
        except (json.JSONDecodeError, OSError, TypeError, ValueError):
            pass  # Corrupted file, keep env defaults

    def _apply_user_config(self, data: dict[str, Any]) -> None:
        """Apply a config dict to the running settings instance."""
        if "aggregation_timeout_ms" in data:
            self.AGGREGATION_TIMEOUT_MS = int(data["aggregation_timeout_ms"])
        if "result_cache_ttl_secs" in data:
            self.RESULT_CACHE_TTL_SECS = int(data["result_cache_ttl_secs"])
        if "success_grace_secs" in data:
            self.SUCCESS_GRACE_SECS = float(data["success_grace_secs"])
        if "error_grace_secs" in data:
            self.ERROR_GRACE_SECS = float(data["error_grace_secs"])
        for provider, pair in data.get("rate_limits", {}).items():
            limit, window_ms = pair
            self.RATE_LIMITS[str(provider)] = (int(limit), int(window_ms))

    def update_config(self, data: dict[str, Any]) -> dict[str, Any]:
        """Write new overrides to disk and hot-patch the running singleton.

        Returns the saved config dict.
        """
        existing: dict[str, Any] = {}
        if self.USER_CONFIG_PATH.exists():
            try:
                existing = json.loads(
                    self.USER_CONFIG_PATH.read_text(encoding="utf-8")
                )
            except (json.JSONDecodeError, OSError):
                pass

        merged = {**existing, **data}
        self.USER_CONFIG_DIR.mkdir(parents=True, exist_ok=True)
        self.USER_CONFIG_PATH.write_text(
            json.dumps(merged, indent=4) + "\n", encoding="utf-8"
        )

        self._apply_user_config(merged)
        return merged

    def get_config(self) -> dict[str, Any]:
        """Return the tunable part of the configuration as a dict."""
        return {
            "bus_backend": self.BUS_BACKEND,
            "aggregation_timeout_ms": self.AGGREGATION_TIMEOUT_MS,
            "result_cache_ttl_secs": self.RESULT_CACHE_TTL_SECS,
            "success_grace_secs": self.SUCCESS_GRACE_SECS,
            "error_grace_secs": self.ERROR_GRACE_SECS,
            "rate_limits": {k: list(v) for k, v in self.RATE_LIMITS.items()},
            "topics": {
                **self.WORKER_TOPICS,
                "analysis": self.ANALYSIS_TOPIC,
                "ui": self.UI_TOPIC,
            },
        }


settings = Settings()
