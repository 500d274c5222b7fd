"""Application wiring — builds the bus, agents, relay and gateway from settings.

One ``Application`` per process. ``START_MODE`` decides which half runs:

    all          workers + aggregator + relay + gateway (single process)
    agents-only  workers + aggregator, no HTTP-facing pieces
    api-only     relay + gateway, agents run elsewhere (needs the redis bus)
"""

from __future__ import annotations

from typing import Any

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from analysis_hub.agents.base_agent import MessageProcessor, WorkerAgent
from analysis_hub.agents.economic_agent import EconomicIndicatorAgent
from analysis_hub.agents.fundamental_agent import FundamentalDataAgent
from analysis_hub.agents.news_sentiment_agent import NewsSentimentAgent
from analysis_hub.agents.stock_data_agent import StockDataAgent
from analysis_hub.bus.base import MessageBus
from analysis_hub.bus.memory import InMemoryBus
from analysis_hub.bus.redis_bus import RedisBus
from analysis_hub.config import Settings, settings as default_settings
from analysis_hub.engine.aggregator import Aggregator
from analysis_hub.engine.consolidator import Consolidator, pool_reports
from analysis_hub.engine.request_store import RequestStore
from analysis_hub.services.gateway import Gateway
from analysis_hub.services.registry import AgentRegistry
from analysis_hub.services.relay import ProgressRelay
from analysis_hub.utils.cache import RateLimiter, TTLCache
from analysis_hub.utils.logger import logger

START_MODES = ("all", "agents-only", "api-only")


def create_bus(config: Settings) -> MessageBus:
    backend = config.BUS_BACKEND.lower()
    if backend == "memory":
        return InMemoryBus()
    if backend == "redis":
        return RedisBus(config.REDIS_URL)
    raise ValueError(f"Unknown BUS_BACKEND {config.BUS_BACKEND!r} (expected memory|redis)")


def default_processors() -> list[MessageProcessor]:
    return [
        StockDataAgent(),
        NewsSentimentAgent(),
        FundamentalDataAgent(),
        EconomicIndicatorAgent(),
    ]


class Application:
    """Owns every long-lived component of one process."""

    def __init__(
        self,
        config: Settings | None = None,
        *,
        bus: MessageBus | None = None,
        processors: list[MessageProcessor] | None = None,
        consolidate: Consolidator = pool_reports,
        start_mode: str | None = None,
    ) -> None:
        self.config = config or default_settings
        self.start_mode = (start_mode or self.config.START_MODE).lower()
        if self.start_mode not in START_MODES:
            raise ValueError(
                f"Unknown START_MODE {self.start_mode!r} (expected one of {', '.join(START_MODES)})"
            )

        self.bus = bus or create_bus(self.config)
        self.cache = TTLCache(default_ttl=self.config.DEFAULT_CACHE_TTL_SECS)
        self.limiter = RateLimiter()
        self.registry = AgentRegistry()
        self.aggregator: Aggregator | None = None
        self.relay: ProgressRelay | None = None
        self.gateway: Gateway | None = None
        self._scheduler: AsyncIOScheduler | None = None
        self.is_running = False

        if self.runs_agents:
            self.aggregator = Aggregator(
                self.bus,
                consolidate=consolidate,
                timeout_secs=self.config.AGGREGATION_TIMEOUT_SECS,
                store=RequestStore(
                    tombstone_ttl=self.config.TOMBSTONE_GRACE_SECS,
                    max_pending_age=self.config.MAX_PENDING_AGE_SECS,
                ),
            )
            self.registry.register(self.aggregator)
            for processor in processors if processors is not None else default_processors():
                self.registry.register(WorkerAgent(
                    processor, self.bus, cache=self.cache, limiter=self.limiter,
                ))

        if self.runs_api:
            self.relay = ProgressRelay(
                self.bus, self.cache,
                success_grace_secs=self.config.SUCCESS_GRACE_SECS,
                error_grace_secs=self.config.ERROR_GRACE_SECS,
                result_ttl_secs=self.config.RESULT_CACHE_TTL_SECS,
                max_pending_age_secs=self.config.MAX_PENDING_AGE_SECS,
            )
            worker_topics = self.config.WORKER_TOPICS
            if processors is not None:
                worker_topics = {p.source_id: p.input_topics[0] for p in processors}
            self.gateway = Gateway(self.bus, self.relay, worker_topics=worker_topics)

    @property
    def runs_agents(self) -> bool:
        return self.start_mode in ("all", "agents-only")

    @property
    def runs_api(self) -> bool:
        return self.start_mode in ("all", "api-only")

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> None:
        if self.is_running:
            return
        await self.bus.connect()
        if self.relay is not None:
            await self.relay.start()
        failed = await self.registry.start_all()
        if failed:
            logger.warning("[App] Some agents did not start: %s", ", ".join(failed))

        self._scheduler = AsyncIOScheduler()
        self._scheduler.add_job(
            self.maintenance,
            IntervalTrigger(seconds=self.config.SWEEP_INTERVAL_SECS),
            id="maintenance",
            name="Request store and cache sweep",
            replace_existing=True,
        )
        self._scheduler.start()
        self.is_running = True
        logger.info(
            "[App] Started in %s mode on %s bus (%d agent(s))",
            self.start_mode, self.config.BUS_BACKEND, len(self.registry),
        )

    async def stop(self) -> None:
        if not self.is_running:
            return
        self.is_running = False
        if self._scheduler is not None:
            self._scheduler.shutdown(wait=False)
            self._scheduler = None
        await self.registry.stop_all()
        if self.relay is not None:
            await self.relay.stop()
        await self.bus.close()
        logger.info("[App] Stopped")

    async def maintenance(self) -> dict[str, int]:
        """Periodic sweep: abandon stale requests, expire unanswered ones, purge the cache."""
        abandoned = await self.aggregator.sweep() if self.aggregator is not None else 0
        expired = await self.relay.sweep() if self.relay is not None else 0
        purged = self.cache.purge_expired()
        if abandoned or expired or purged:
            logger.info(
                "[App] Maintenance: %d stale request(s), %d expired request(s), "
                "%d expired cache entr(ies)",
                abandoned, expired, purged,
            )
        return {"abandoned": abandoned, "expired": expired, "purged": purged}

    async def health(self) -> dict[str, Any]:
        return {
            "status": "ok" if self.is_running and self.bus.is_connected else "degraded",
            "mode": self.start_mode,
            "bus": {
                "backend": self.config.BUS_BACKEND,
                "connected": self.bus.is_connected,
            },
            "agents": self.registry.names(),
            "cache_entries": len(self.cache),
        }
