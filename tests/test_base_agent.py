"""Tests for the WorkerAgent runtime around a MessageProcessor."""

from __future__ import annotations

from unittest.mock import MagicMock

import pytest
import pytest_asyncio

from analysis_hub.agents.base_agent import AgentContext, WorkerAgent
from analysis_hub.models.messages import AgentMessage
from analysis_hub.utils.cache import RateLimiter, TTLCache

IN, OUT, UI = "work", "analysis", "ui"


@pytest_asyncio.fixture
async def harness(bus, make_processor, make_recorder):
    """A started worker plus recorders on its output and progress topics."""
    processor = make_processor("Worker", IN)
    agent = WorkerAgent(
        processor, bus, cache=TTLCache(), limiter=RateLimiter(),
        output_topic=OUT, progress_topic=UI,
    )
    out, ui = make_recorder(), make_recorder()
    await bus.subscribe(OUT, out)
    await bus.subscribe(UI, ui)
    await agent.start()
    yield agent, processor, out, ui
    await agent.stop()


async def _request(bus, cid: str, payload: dict) -> None:
    await bus.publish(IN, AgentMessage.request(cid, "Gateway", payload))
    await bus.drain()


class TestWorkerAgent:

    @pytest.mark.asyncio
    async def test_success_published_once(self, bus, harness) -> None:
        agent, processor, out, ui = harness
        await _request(bus, "c1", {"symbol": "AAPL"})

        assert len(out.messages) == 1
        reply = out.messages[0]
        assert reply.kind == "success"
        assert reply.source_id == "Worker"
        assert reply.correlation_id == "c1"
        assert reply.payload["symbol"] == "AAPL"
        assert [m.payload["percent"] for m in ui.messages] == [20]
        assert agent.stats["succeeded"] == 1

    @pytest.mark.asyncio
    async def test_handler_exception_becomes_error_message(self, bus, harness) -> None:
        agent, processor, out, _ = harness
        processor.error = ConnectionError("upstream down")
        await _request(bus, "c1", {"symbol": "AAPL"})

        assert len(out.messages) == 1
        reply = out.messages[0]
        assert reply.kind == "error"
        assert reply.payload["error"] == "ConnectionError: upstream down"
        assert agent.stats["failed"] == 1

    @pytest.mark.asyncio
    async def test_invalid_request_is_discarded(self, bus, harness) -> None:
        agent, processor, out, _ = harness
        await _request(bus, "c1", {"ticker": "AAPL"})
        await _request(bus, "c2", {"symbol": ""})
        assert out.messages == []
        assert processor.calls == 0
        assert agent.stats["rejected"] == 2

    @pytest.mark.asyncio
    async def test_redelivered_request_handled_once(self, bus, harness) -> None:
        agent, processor, out, _ = harness
        await _request(bus, "c1", {"symbol": "AAPL"})
        await _request(bus, "c1", {"symbol": "AAPL"})
        assert processor.calls == 1
        assert len(out.messages) == 1
        assert agent.stats["duplicates"] == 1

    @pytest.mark.asyncio
    async def test_non_request_messages_ignored(self, bus, harness) -> None:
        _, processor, out, _ = harness
        await bus.publish(IN, AgentMessage.success("c1", "Other", {}))
        await bus.drain()
        assert processor.calls == 0
        assert out.messages == []

    @pytest.mark.asyncio
    async def test_progress_is_clamped(self, bus, harness) -> None:
        agent, _, _, ui = harness
        await agent.emit_progress("c1", 150, "over")
        await agent.emit_progress("c1", -5, "under")
        await bus.drain()
        assert [m.payload["percent"] for m in ui.messages] == [100.0, 0.0]

    @pytest.mark.asyncio
    async def test_stop_unsubscribes(self, bus, harness) -> None:
        agent, processor, _, _ = harness
        await agent.stop()
        await _request(bus, "c1", {"symbol": "AAPL"})
        assert processor.calls == 0

    @pytest.mark.asyncio
    async def test_health_check(self, harness) -> None:
        agent, *_ = harness
        health = await agent.health_check()
        assert health["agent"] == "Worker"
        assert health["status"] == "running"
        assert health["bus_connected"] is True
        assert health["input_topics"] == [IN]


class TestAgentContext:

    def _ctx(self, make_processor, clock) -> AgentContext:
        agent = WorkerAgent(
            make_processor("Worker", IN), MagicMock(),
            cache=TTLCache(clock=clock), limiter=RateLimiter(clock=clock),
        )
        return AgentContext(agent, "c1")

    def test_cache_helpers(self, make_processor, clock) -> None:
        ctx = self._ctx(make_processor, clock)
        ctx.set_cached("k", {"v": 1}, ttl=5)
        assert ctx.get_cached("k") == {"v": 1}
        clock.advance(5)
        assert ctx.get_cached("k") is None

    def test_rate_limit_uses_configured_limits(self, make_processor, clock, monkeypatch) -> None:
        from analysis_hub.config import settings

        monkeypatch.setitem(settings.RATE_LIMITS, "yfinance", (2, 60_000))
        ctx = self._ctx(make_processor, clock)
        assert [ctx.check_rate_limit("yfinance") for _ in range(3)] == [True, True, False]

    def test_rate_limit_explicit_arguments(self, make_processor, clock) -> None:
        ctx = self._ctx(make_processor, clock)
        assert ctx.check_rate_limit("custom", limit=1, window_ms=1000)
        assert not ctx.check_rate_limit("custom", limit=1, window_ms=1000)
