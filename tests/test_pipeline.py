"""End-to-end: gateway → workers → aggregator → relay on the in-memory bus."""

from __future__ import annotations

import asyncio

import pytest
import pytest_asyncio

from analysis_hub.bus.memory import InMemoryBus
from analysis_hub.config import Settings, settings
from analysis_hub.errors import InvalidSubjectError
from analysis_hub.services.application import Application, create_bus
from analysis_hub.services.relay import QueueObserver

TIMEOUT_MS = 100


@pytest.fixture
def config() -> Settings:
    cfg = Settings()
    cfg.AGGREGATION_TIMEOUT_MS = TIMEOUT_MS
    cfg.SUCCESS_GRACE_SECS = 0.2
    cfg.ERROR_GRACE_SECS = 0.1
    return cfg


def _processors(make_processor, **overrides):
    procs = {
        "StockDataAgent": make_processor("StockDataAgent", settings.STOCK_DATA_TOPIC),
        "NewsSentimentAgent": make_processor("NewsSentimentAgent", settings.NEWS_TOPIC),
        "FundamentalDataAgent": make_processor("FundamentalDataAgent", settings.FUNDAMENTAL_TOPIC),
    }
    for source_id, attrs in overrides.items():
        for key, value in attrs.items():
            setattr(procs[source_id], key, value)
    return list(procs.values())


@pytest_asyncio.fixture
async def hub_factory(config):
    started: list[Application] = []

    async def build(processors) -> Application:
        app = Application(config, bus=InMemoryBus(), processors=processors, start_mode="all")
        await app.start()
        started.append(app)
        return app

    yield build
    for app in started:
        await app.stop()


async def _collect(observer: QueueObserver, timeout: float = 2.0) -> list[dict]:
    events = []
    while True:
        event = await asyncio.wait_for(observer.queue.get(), timeout)
        if event is None:
            return events
        events.append(event)


class TestPipeline:

    @pytest.mark.asyncio
    async def test_full_coverage(self, hub_factory, make_processor) -> None:
        hub = await hub_factory(_processors(make_processor))
        observer = QueueObserver()
        ack = await hub.gateway.submit("aapl")
        await hub.relay.subscribe(ack["correlationId"], observer)

        events = await _collect(observer)
        final = events[-1]
        assert final["type"] == "completed"
        assert final["subjectKey"] == "AAPL"
        assert final["coverage"] == 1.0
        assert set(final["result"]["reports"]) == {
            "StockDataAgent", "NewsSentimentAgent", "FundamentalDataAgent",
        }
        assert final["result"]["data_quality"]["overall"] == "GOOD"

        percents = [e["percent"] for e in events if e["type"] == "progress"]
        assert percents == sorted(percents)
        assert hub.relay.status(ack["correlationId"])["percent"] == 100.0
        assert hub.relay.cached_result("AAPL")["coverage"] == 1.0

    @pytest.mark.asyncio
    async def test_slow_worker_yields_partial_result(self, hub_factory, make_processor) -> None:
        hub = await hub_factory(_processors(
            make_processor, FundamentalDataAgent={"delay": TIMEOUT_MS / 1000 * 3},
        ))
        observer = QueueObserver()
        ack = await hub.gateway.submit("MSFT")
        await hub.relay.subscribe(ack["correlationId"], observer)

        events = await _collect(observer)
        final = events[-1]
        assert final["type"] == "completed"
        assert final["coverage"] == pytest.approx(2 / 3, abs=1e-3)
        assert final["missingSources"] == ["FundamentalDataAgent"]
        assert final["result"]["data_quality"]["overall"] == "FAIR"

        # Let the straggler arrive; it is counted and discarded
        await asyncio.sleep(TIMEOUT_MS / 1000 * 3)
        await hub.bus.drain()
        assert hub.aggregator.stats["late_messages"] == 1
        assert hub.aggregator.stats["completed"] == 1

    @pytest.mark.asyncio
    async def test_concurrent_requests_share_slow_workers(self, hub_factory, make_processor) -> None:
        # Each worker takes over half the deadline, so the requests only both
        # make it if the workers handle them side by side
        delay = TIMEOUT_MS / 1000 * 0.6
        hub = await hub_factory(_processors(
            make_processor,
            StockDataAgent={"delay": delay},
            NewsSentimentAgent={"delay": delay},
            FundamentalDataAgent={"delay": delay},
        ))
        observers = {}
        for symbol in ("AAPL", "MSFT"):
            ack = await hub.gateway.submit(symbol)
            observers[symbol] = QueueObserver()
            await hub.relay.subscribe(ack["correlationId"], observers[symbol])

        for symbol, observer in observers.items():
            final = (await _collect(observer))[-1]
            assert final["type"] == "completed", symbol
            assert final["coverage"] == 1.0
        assert hub.aggregator.stats["completed"] == 2
        assert hub.aggregator.stats["partial"] == 0

    @pytest.mark.asyncio
    async def test_every_worker_failing(self, hub_factory, make_processor) -> None:
        boom = RuntimeError("upstream down")
        hub = await hub_factory(_processors(
            make_processor,
            StockDataAgent={"error": boom},
            NewsSentimentAgent={"error": boom},
            FundamentalDataAgent={"error": boom},
        ))
        observer = QueueObserver()
        ack = await hub.gateway.submit("TSLA")
        await hub.relay.subscribe(ack["correlationId"], observer)

        events = await _collect(observer)
        assert [e["type"] for e in events if e["type"] != "progress"] == ["error"]
        assert events[-1]["reason"] == "zero_coverage"
        assert hub.relay.cached_result("TSLA") is None

    @pytest.mark.asyncio
    async def test_status_released_after_grace(self, hub_factory, make_processor, config) -> None:
        hub = await hub_factory(_processors(make_processor))
        ack = await hub.gateway.submit("AAPL")
        cid = ack["correlationId"]
        assert hub.relay.status(cid)["state"] == "pending"

        await hub.bus.drain()
        assert hub.relay.status(cid)["state"] == "completed"
        await asyncio.sleep(config.SUCCESS_GRACE_SECS + 0.1)
        assert hub.relay.status(cid) is None

    @pytest.mark.asyncio
    async def test_invalid_subject(self, hub_factory, make_processor) -> None:
        hub = await hub_factory(_processors(make_processor))
        with pytest.raises(InvalidSubjectError):
            await hub.gateway.submit("12345")

    @pytest.mark.asyncio
    async def test_maintenance_sweeps(self, hub_factory, make_processor) -> None:
        hub = await hub_factory(_processors(make_processor))
        hub.cache.set("stale", 1, ttl=0)
        result = await hub.maintenance()
        assert result == {"abandoned": 0, "expired": 0, "purged": 1}


class TestApplicationWiring:

    def test_start_modes(self, config, make_processor) -> None:
        procs = _processors(make_processor)
        api_only = Application(config, bus=InMemoryBus(), processors=procs, start_mode="api-only")
        assert api_only.aggregator is None
        assert api_only.gateway is not None
        assert len(api_only.registry) == 0

        agents_only = Application(config, bus=InMemoryBus(), processors=procs, start_mode="agents-only")
        assert agents_only.relay is None
        assert agents_only.gateway is None
        assert agents_only.registry.names()[0] == "Aggregator"
        assert len(agents_only.registry) == 4

    def test_unknown_start_mode(self, config) -> None:
        with pytest.raises(ValueError, match="START_MODE"):
            Application(config, bus=InMemoryBus(), processors=[], start_mode="sideways")

    def test_bus_factory(self, config) -> None:
        config.BUS_BACKEND = "memory"
        assert isinstance(create_bus(config), InMemoryBus)
        config.BUS_BACKEND = "kafka"
        with pytest.raises(ValueError, match="BUS_BACKEND"):
            create_bus(config)
