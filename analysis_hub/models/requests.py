"""Request bookkeeping models — aggregation state and relay status.

``CorrelationRequest`` belongs to the Aggregator and carries the
pending → completing → completed / pending → dropped state machine.
``TrackedRequest`` is the Relay's view used by ``GET /status``.
"""

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass, field
from typing import Any, Literal

from pydantic import BaseModel, Field

RequestState = Literal["pending", "completing", "completed", "dropped"]
TrackedState = Literal["pending", "completed", "failed"]


@dataclass
class SourceResult:
    """One worker reply merged into a request (last write wins per source)."""

    source_id: str
    ok: bool
    payload: dict[str, Any]
    received_at: float = field(default_factory=time.monotonic)


class CorrelationRequest:
    """Fan-in state for one correlation id."""

    def __init__(
        self,
        correlation_id: str,
        subject_key: str,
        expected_sources: set[str] | frozenset[str],
        created_at: float | None = None,
    ) -> None:
        self.id = correlation_id
        self.subject_key = subject_key
        self.expected_sources: frozenset[str] = frozenset(expected_sources)
        self.created_at = time.monotonic() if created_at is None else created_at
        self.received: dict[str, SourceResult] = {}
        self.state: RequestState = "pending"
        self.timer: asyncio.TimerHandle | None = None
        self.completed_by: str | None = None

    # ------------------------------------------------------------------
    # Merge + guard
    # ------------------------------------------------------------------

    @property
    def is_open(self) -> bool:
        return self.state == "pending"

    def accept(self, result: SourceResult) -> bool:
        """Merge a worker reply. Returns False if the request is no longer open."""
        if not self.is_open:
            return False
        self.received[result.source_id] = result
        return True

    @property
    def threshold_reached(self) -> bool:
        return len(self.received) >= len(self.expected_sources)

    def begin_completion(self, trigger: str) -> bool:
        """Check-and-set pending → completing.

        Only the first caller wins; everyone after gets False. There is no
        await between the check and the set, so on a single event loop this
        is atomic.
        """
        if self.state != "pending":
            return False
        self.state = "completing"
        self.completed_by = trigger
        self.cancel_timer()
        return True

    def cancel_timer(self) -> None:
        if self.timer is not None:
            self.timer.cancel()
            self.timer = None

    def finish(self) -> None:
        self.state = "completed"

    def drop(self) -> None:
        self.state = "dropped"
        self.cancel_timer()

    # ------------------------------------------------------------------
    # Coverage
    # ------------------------------------------------------------------

    @property
    def successful(self) -> dict[str, dict[str, Any]]:
        """Payloads of sources that actually returned data."""
        return {sid: r.payload for sid, r in self.received.items() if r.ok}

    @property
    def coverage(self) -> float:
        if not self.expected_sources:
            return 0.0
        return len(self.successful) / len(self.expected_sources)

    @property
    def missing_sources(self) -> list[str]:
        return sorted(self.expected_sources - set(self.successful))

    def source_statuses(self) -> dict[str, str]:
        statuses: dict[str, str] = {}
        for sid in sorted(self.expected_sources):
            result = self.received.get(sid)
            if result is None:
                statuses[sid] = "missing"
            else:
                statuses[sid] = "success" if result.ok else "error"
        return statuses

    def __repr__(self) -> str:
        return (
            f"CorrelationRequest(id={self.id!r}, subject={self.subject_key!r}, "
            f"state={self.state!r}, received={sorted(self.received)})"
        )


class TrackedRequest(BaseModel):
    """Relay-side status record for one correlation id."""

    correlation_id: str
    subject_key: str
    state: TrackedState = "pending"
    started_at: float = Field(default_factory=time.monotonic)
    finished_at: float | None = None
    last_percent: float = 0.0
    last_message: str = ""
    result: dict[str, Any] | None = None
    error: str | None = None

    @property
    def is_terminal(self) -> bool:
        return self.state != "pending"

    def elapsed_ms(self, now: float | None = None) -> int:
        end = self.finished_at
        if end is None:
            end = time.monotonic() if now is None else now
        return int((end - self.started_at) * 1000)
