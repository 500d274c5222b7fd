"""Shared fixtures: a connected in-memory bus, fake workers, a manual clock."""

from __future__ import annotations

import asyncio
from typing import Any

import pytest
import pytest_asyncio

from analysis_hub.bus.memory import InMemoryBus
from analysis_hub.models.messages import AgentMessage


class FakeClock:
    """Manually advanced monotonic clock."""

    def __init__(self, start: float = 1000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class Recorder:
    """Bus handler that keeps every message it sees."""

    def __init__(self) -> None:
        self.messages: list[AgentMessage] = []

    async def __call__(self, message: AgentMessage) -> None:
        self.messages.append(message)

    @property
    def terminal(self) -> list[AgentMessage]:
        return [m for m in self.messages if m.is_terminal]

    @property
    def progress(self) -> list[AgentMessage]:
        return [m for m in self.messages if m.kind == "progress"]


class FakeProcessor:
    """Worker stand-in with a configurable result, failure or delay."""

    required_fields = ("symbol",)

    def __init__(
        self,
        source_id: str,
        topic: str,
        result: dict[str, Any] | None = None,
        error: Exception | None = None,
        delay: float = 0.0,
    ) -> None:
        self.source_id = source_id
        self.input_topics = [topic]
        self.result = result
        self.error = error
        self.delay = delay
        self.calls = 0

    async def handle(self, payload: dict[str, Any], ctx: Any) -> dict[str, Any]:
        self.calls += 1
        await ctx.emit_progress(20, f"{self.source_id} fetching {payload['symbol']}")
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error is not None:
            raise self.error
        return {"symbol": payload["symbol"], **(self.result or {"source": self.source_id})}


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest_asyncio.fixture
async def bus():
    b = InMemoryBus()
    await b.connect()
    yield b
    await b.close()


@pytest.fixture
def recorder() -> Recorder:
    return Recorder()


@pytest.fixture
def make_processor():
    return FakeProcessor


@pytest.fixture
def make_recorder():
    return Recorder
