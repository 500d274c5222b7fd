"""Progress/Result Relay — streams progress and the final result to observers.

Listens on the UI topic, keeps a ``TrackedRequest`` per correlation id and
multicasts events to whoever subscribed to that id (WebSocket clients,
SSE streams). Each id sees at most one terminal event. Bookkeeping is kept
for a grace period after the terminal event so ``GET /status`` and late
subscribers still see the outcome.
"""

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass
from typing import Any, Callable, Protocol

from analysis_hub.bus.base import MessageBus
from analysis_hub.config import settings
from analysis_hub.models.messages import AgentMessage
from analysis_hub.models.requests import TrackedRequest
from analysis_hub.utils.cache import TTLCache
from analysis_hub.utils.logger import bind_correlation_id, logger


class Observer(Protocol):
    """Anything that can receive relay events for a correlation id."""

    async def send(self, event: dict[str, Any]) -> None: ...


class QueueObserver:
    """Pushes events onto an asyncio.Queue; ``None`` follows the terminal event."""

    def __init__(self, queue: asyncio.Queue | None = None) -> None:
        self.queue: asyncio.Queue = queue or asyncio.Queue()

    async def send(self, event: dict[str, Any]) -> None:
        await self.queue.put(event)
        if event.get("type") in ("completed", "error"):
            await self.queue.put(None)


class WebSocketObserver:
    """Forwards events to a connected WebSocket as JSON."""

    def __init__(self, websocket: Any) -> None:
        self.websocket = websocket

    async def send(self, event: dict[str, Any]) -> None:
        await self.websocket.send_json(event)


@dataclass(frozen=True)
class SubscriptionHandle:
    correlation_id: str
    observer: Observer


def result_cache_key(subject_key: str) -> str:
    return f"result:{subject_key.upper()}"


class ProgressRelay:
    """Fans UI-topic messages out to per-correlation-id observers."""

    def __init__(
        self,
        bus: MessageBus,
        cache: TTLCache,
        *,
        topic: str | None = None,
        success_grace_secs: float | None = None,
        error_grace_secs: float | None = None,
        result_ttl_secs: float | None = None,
        max_pending_age_secs: float | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.bus = bus
        self.cache = cache
        self.topic = topic or settings.UI_TOPIC
        self.success_grace_secs = (
            settings.SUCCESS_GRACE_SECS if success_grace_secs is None else success_grace_secs
        )
        self.error_grace_secs = (
            settings.ERROR_GRACE_SECS if error_grace_secs is None else error_grace_secs
        )
        self.result_ttl_secs = (
            settings.RESULT_CACHE_TTL_SECS if result_ttl_secs is None else result_ttl_secs
        )
        self.max_pending_age_secs = (
            settings.MAX_PENDING_AGE_SECS if max_pending_age_secs is None else max_pending_age_secs
        )
        self._clock = clock
        self._tracked: dict[str, TrackedRequest] = {}
        self._observers: dict[str, list[Observer]] = {}
        self._terminal: dict[str, dict[str, Any]] = {}
        self._cleanup: dict[str, asyncio.TimerHandle] = {}
        self.is_running = False
        self.stats = {"progress": 0, "completed": 0, "failed": 0, "dropped": 0}

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> None:
        if self.is_running:
            return
        await self.bus.subscribe(self.topic, self.handle_message)
        self.is_running = True
        logger.info("[Relay] Listening on %s", self.topic)

    async def stop(self) -> None:
        if not self.is_running:
            return
        self.is_running = False
        await self.bus.unsubscribe(self.topic, self.handle_message)
        for handle in self._cleanup.values():
            handle.cancel()
        self._cleanup.clear()
        logger.info("[Relay] Stopped (%d tracked)", len(self._tracked))

    # ------------------------------------------------------------------
    # Tracking and subscriptions
    # ------------------------------------------------------------------

    def track(self, correlation_id: str, subject_key: str) -> TrackedRequest:
        tracked = TrackedRequest(
            correlation_id=correlation_id,
            subject_key=subject_key,
            started_at=self._clock(),
        )
        self._tracked[correlation_id] = tracked
        return tracked

    def is_tracked(self, correlation_id: str) -> bool:
        return correlation_id in self._tracked

    async def subscribe(
        self, correlation_id: str, observer: Observer,
    ) -> SubscriptionHandle | None:
        """Attach *observer*. Returns None for unknown or expired ids.

        If the request already finished, the terminal event is replayed to
        *observer* straight away and nothing is kept.
        """
        if correlation_id not in self._tracked:
            logger.debug("[Relay] Subscribe to unknown id %s refused", correlation_id)
            return None
        handle = SubscriptionHandle(correlation_id, observer)
        terminal = self._terminal.get(correlation_id)
        if terminal is not None:
            await self._deliver(correlation_id, [observer], terminal)
            return handle
        subscribers = self._observers.setdefault(correlation_id, [])
        if observer not in subscribers:
            subscribers.append(observer)
        return handle

    def unsubscribe(self, correlation_id: str, observer: Observer) -> None:
        subscribers = self._observers.get(correlation_id)
        if subscribers and observer in subscribers:
            subscribers.remove(observer)
            if not subscribers:
                del self._observers[correlation_id]

    def drop_observer(self, observer: Observer) -> None:
        """Forget *observer* everywhere (its connection went away)."""
        for correlation_id in list(self._observers):
            self.unsubscribe(correlation_id, observer)

    def observer_count(self, correlation_id: str) -> int:
        return len(self._observers.get(correlation_id, []))

    def status(self, correlation_id: str) -> dict[str, Any] | None:
        tracked = self._tracked.get(correlation_id)
        if tracked is None:
            return None
        return {
            "correlationId": tracked.correlation_id,
            "subjectKey": tracked.subject_key,
            "state": tracked.state,
            "elapsedMs": tracked.elapsed_ms(self._clock()),
            "percent": tracked.last_percent,
            "message": tracked.last_message,
        }

    def cached_result(self, subject_key: str) -> dict[str, Any] | None:
        return self.cache.get(result_cache_key(subject_key))

    # ------------------------------------------------------------------
    # Inbound
    # ------------------------------------------------------------------

    async def handle_message(self, message: AgentMessage) -> None:
        cid = message.correlation_id
        bind_correlation_id(cid)
        tracked = self._tracked.get(cid)
        if tracked is None:
            self.stats["dropped"] += 1
            logger.debug(
                "[Relay] %s for unknown or expired id %s dropped", message.kind, cid,
            )
            return
        if tracked.is_terminal:
            self.stats["dropped"] += 1
            logger.debug(
                "[Relay] %s after terminal event for %s dropped", message.kind, cid,
            )
            return

        if message.kind == "progress":
            await self._on_progress(tracked, message)
        elif message.kind == "success":
            await self._on_success(tracked, message)
        elif message.kind == "error":
            await self.fail(
                cid,
                str(message.payload.get("error") or "Analysis failed"),
                reason=message.payload.get("reason"),
            )

    async def _on_progress(self, tracked: TrackedRequest, message: AgentMessage) -> None:
        try:
            percent = float(message.payload.get("percent", 0))
        except (TypeError, ValueError):
            percent = 0.0
        tracked.last_percent = max(tracked.last_percent, min(100.0, percent))
        tracked.last_message = str(message.payload.get("message", ""))
        self.stats["progress"] += 1
        await self._broadcast(tracked.correlation_id, {
            "type": "progress",
            "correlationId": tracked.correlation_id,
            "percent": tracked.last_percent,
            "message": tracked.last_message,
            "source": message.source_id,
        })

    async def _on_success(self, tracked: TrackedRequest, message: AgentMessage) -> None:
        payload = dict(message.payload)
        subject_key = str(payload.get("symbol") or tracked.subject_key)
        self.cache.set(result_cache_key(subject_key), payload, ttl=self.result_ttl_secs)

        tracked.state = "completed"
        tracked.finished_at = self._clock()
        tracked.last_percent = 100.0
        tracked.result = payload
        self.stats["completed"] += 1

        event = {
            "type": "completed",
            "correlationId": tracked.correlation_id,
            "subjectKey": subject_key,
            "result": payload.get("result"),
            "coverage": payload.get("coverage"),
            "missingSources": payload.get("missingSources", []),
            "durationMs": tracked.elapsed_ms(),
        }
        logger.info(
            "[Relay] %s completed for %s in %dms",
            tracked.correlation_id, subject_key, event["durationMs"],
        )
        await self._finish(tracked.correlation_id, event, self.success_grace_secs)

    async def fail(self, correlation_id: str, error: str, reason: str | None = None) -> None:
        """Mark a tracked request failed and emit its terminal error event."""
        tracked = self._tracked.get(correlation_id)
        if tracked is None or tracked.is_terminal:
            return
        tracked.state = "failed"
        tracked.finished_at = self._clock()
        tracked.error = error
        self.stats["failed"] += 1

        event: dict[str, Any] = {
            "type": "error",
            "correlationId": correlation_id,
            "error": error,
        }
        if reason:
            event["reason"] = reason
        logger.warning("[Relay] %s failed: %s", correlation_id, error)
        await self._finish(correlation_id, event, self.error_grace_secs)

    async def _finish(self, correlation_id: str, event: dict[str, Any], grace: float) -> None:
        self._terminal[correlation_id] = event
        observers = self._observers.pop(correlation_id, [])
        await self._deliver(correlation_id, observers, event)
        loop = asyncio.get_running_loop()
        self._cleanup[correlation_id] = loop.call_later(grace, self._forget, correlation_id)

    async def sweep(self) -> int:
        """Fail tracked requests that never saw a terminal event in time."""
        now = self._clock()
        stale = [
            tracked.correlation_id for tracked in self._tracked.values()
            if not tracked.is_terminal
            and now - tracked.started_at > self.max_pending_age_secs
        ]
        for correlation_id in stale:
            await self.fail(
                correlation_id, "No result before the request expired", reason="expired",
            )
        return len(stale)

    def _forget(self, correlation_id: str) -> None:
        self._cleanup.pop(correlation_id, None)
        self._tracked.pop(correlation_id, None)
        self._terminal.pop(correlation_id, None)
        self._observers.pop(correlation_id, None)
        logger.debug("[Relay] Released bookkeeping for %s", correlation_id)

    # ------------------------------------------------------------------
    # Outbound
    # ------------------------------------------------------------------

    async def _broadcast(self, correlation_id: str, event: dict[str, Any]) -> None:
        observers = list(self._observers.get(correlation_id, []))
        await self._deliver(correlation_id, observers, event)

    async def _deliver(
        self, correlation_id: str, observers: list[Observer], event: dict[str, Any],
    ) -> None:
        if not observers:
            return
        results = await asyncio.gather(
            *(observer.send(event) for observer in observers), return_exceptions=True,
        )
        for observer, outcome in zip(observers, results):
            if isinstance(outcome, Exception):
                logger.warning(
                    "[Relay] Observer for %s failed (%s), dropping it", correlation_id, outcome,
                )
                self.drop_observer(observer)
