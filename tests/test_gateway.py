"""Tests for subject validation and request fan-out in the Gateway."""

from __future__ import annotations

from unittest.mock import AsyncMock, MagicMock

import pytest

from analysis_hub.errors import InvalidSubjectError, TransportError
from analysis_hub.services.gateway import Gateway, normalize_subject
from analysis_hub.services.relay import ProgressRelay
from analysis_hub.utils.cache import TTLCache

TOPICS = {"A": "a_queue", "B": "b_queue"}


class TestNormalizeSubject:

    @pytest.mark.parametrize("raw, expected", [
        ("AAPL", "AAPL"),
        (" msft ", "MSFT"),
        ("f", "F"),
        ("GOOGL", "GOOGL"),
    ])
    def test_valid(self, raw, expected) -> None:
        assert normalize_subject(raw) == expected

    @pytest.mark.parametrize("raw", ["", "   ", "TOOLONG", "BRK.B", "123", "AB1", "A-B"])
    def test_invalid(self, raw) -> None:
        with pytest.raises(InvalidSubjectError):
            normalize_subject(raw)


class TestSubmit:

    @pytest.mark.asyncio
    async def test_publishes_to_aggregator_then_workers(self, bus, recorder) -> None:
        seen: list[str] = []

        def _on(topic):
            async def handler(message):
                seen.append(topic)
                await recorder(message)
            return handler

        for topic in ("analysis", *TOPICS.values()):
            await bus.subscribe(topic, _on(topic))

        gateway = Gateway(bus, worker_topics=TOPICS, aggregation_topic="analysis")
        ack = await gateway.submit(" aapl")
        await bus.drain()

        assert ack["subjectKey"] == "AAPL"
        assert len(ack["correlationId"]) == 36
        assert sorted(seen) == ["a_queue", "analysis", "b_queue"]
        for message in recorder.messages:
            assert message.kind == "request"
            assert message.correlation_id == ack["correlationId"]
            assert message.payload == {"symbol": "AAPL", "expectedSources": ["A", "B"]}

    @pytest.mark.asyncio
    async def test_aggregation_topic_published_first(self) -> None:
        bus = MagicMock()
        bus.publish = AsyncMock()
        gateway = Gateway(bus, worker_topics=TOPICS, aggregation_topic="analysis")
        await gateway.submit("AAPL")
        topics = [call.args[0] for call in bus.publish.await_args_list]
        assert topics[0] == "analysis"
        assert sorted(topics[1:]) == ["a_queue", "b_queue"]

    @pytest.mark.asyncio
    async def test_each_submit_gets_new_id(self, bus) -> None:
        gateway = Gateway(bus, worker_topics=TOPICS)
        first = await gateway.submit("AAPL")
        second = await gateway.submit("AAPL")
        assert first["correlationId"] != second["correlationId"]
        assert gateway.submitted == 2

    @pytest.mark.asyncio
    async def test_invalid_subject_publishes_nothing(self) -> None:
        bus = MagicMock()
        bus.publish = AsyncMock()
        gateway = Gateway(bus, worker_topics=TOPICS)
        with pytest.raises(InvalidSubjectError):
            await gateway.submit("NOT A TICKER")
        bus.publish.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_registers_with_relay(self, bus) -> None:
        relay = ProgressRelay(bus, TTLCache())
        gateway = Gateway(bus, relay, worker_topics=TOPICS)
        ack = await gateway.submit("AAPL")
        status = relay.status(ack["correlationId"])
        assert status["state"] == "pending"
        assert status["subjectKey"] == "AAPL"

    @pytest.mark.asyncio
    async def test_transport_failure_raises_and_fails_tracking(self, bus) -> None:
        relay = ProgressRelay(bus, TTLCache(), error_grace_secs=60)
        await bus.close()
        gateway = Gateway(bus, relay, worker_topics=TOPICS)
        with pytest.raises(TransportError):
            await gateway.submit("AAPL")
        assert gateway.submitted == 0
        assert relay.stats["failed"] == 1
