"""Request store — the Aggregator's table of in-flight correlation requests.

Explicit lifecycle instead of an ad hoc dict:

    insert  → a new pending request
    get     → look up a live request
    remove  → take it out and leave a tombstone (final state + time)
    sweep   → purge expired tombstones, abandon pending requests that
              outlived ``max_pending_age``

Tombstones let the Aggregator tell a late straggler for a finished
request apart from a message for an id it has never seen.
"""

from __future__ import annotations

import time
from typing import Callable, Iterator

from analysis_hub.models.requests import CorrelationRequest
from analysis_hub.utils.logger import logger


class RequestStore:
    def __init__(
        self,
        tombstone_ttl: float,
        max_pending_age: float,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._live: dict[str, CorrelationRequest] = {}
        self._tombstones: dict[str, tuple[str, float]] = {}
        self._tombstone_ttl = tombstone_ttl
        self._max_pending_age = max_pending_age
        self._clock = clock

    def insert(self, request: CorrelationRequest) -> bool:
        """Add *request*. Returns False if the id is live or already finished."""
        if request.id in self._live or request.id in self._tombstones:
            return False
        self._live[request.id] = request
        return True

    def get(self, correlation_id: str) -> CorrelationRequest | None:
        return self._live.get(correlation_id)

    def remove(self, correlation_id: str) -> CorrelationRequest | None:
        request = self._live.pop(correlation_id, None)
        if request is not None:
            request.cancel_timer()
            self._tombstones[correlation_id] = (request.state, self._clock())
        return request

    def finished_state(self, correlation_id: str) -> str | None:
        """Final state of a removed request, or None if unknown/expired."""
        entry = self._tombstones.get(correlation_id)
        return entry[0] if entry else None

    def sweep(self) -> list[CorrelationRequest]:
        """Purge old tombstones and abandon stale pending requests.

        Returns the abandoned requests so the caller can log them.
        """
        now = self._clock()
        expired = [
            cid for cid, (_, at) in self._tombstones.items()
            if now - at > self._tombstone_ttl
        ]
        for cid in expired:
            del self._tombstones[cid]

        stale = [
            req for req in self._live.values()
            if req.state == "pending" and now - req.created_at > self._max_pending_age
        ]
        for req in stale:
            req.drop()
            self.remove(req.id)
        if expired or stale:
            logger.debug(
                "[RequestStore] Sweep: %d tombstones purged, %d stale requests abandoned",
                len(expired), len(stale),
            )
        return stale

    def __contains__(self, correlation_id: str) -> bool:
        return correlation_id in self._live

    def __len__(self) -> int:
        return len(self._live)

    def __iter__(self) -> Iterator[CorrelationRequest]:
        return iter(list(self._live.values()))

    @property
    def tombstone_count(self) -> int:
        return len(self._tombstones)
