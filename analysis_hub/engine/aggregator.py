"""Aggregator — fan-in of worker replies, keyed by correlation id.

Per request:

    pending ──(all expected sources replied)──┐
       │                                      ├─> completing ─> completed
       └──(deadline timer fired)──────────────┘
    pending ──(nothing usable by completion)──> dropped

Both triggers go through ``CorrelationRequest.begin_completion()``, a
synchronous check-and-set, so only one of them ever consolidates and
publishes. The winner cancels the timer. Replies for a request that is
completing, completed or dropped are counted as late and discarded.
"""

from __future__ import annotations

import asyncio
import time
from typing import Any, Callable

from analysis_hub.bus.base import MessageBus
from analysis_hub.config import settings
from analysis_hub.engine.consolidator import Consolidator, pool_reports
from analysis_hub.engine.request_store import RequestStore
from analysis_hub.errors import TransportError, summarize_exception
from analysis_hub.models.messages import AgentMessage
from analysis_hub.models.requests import CorrelationRequest, SourceResult
from analysis_hub.utils.logger import bind_correlation_id, logger

# Progress band owned by the aggregator while data trickles in
_PROGRESS_FLOOR = 66.0
_PROGRESS_CEILING = 90.0


class Aggregator:
    """Collects worker results and emits one terminal message per request."""

    source_id = "AnalysisAgent"

    def __init__(
        self,
        bus: MessageBus,
        *,
        consolidate: Consolidator = pool_reports,
        timeout_secs: float | None = None,
        store: RequestStore | None = None,
        input_topic: str | None = None,
        output_topic: str | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.bus = bus
        self._consolidate = consolidate
        self.timeout_secs = (
            settings.AGGREGATION_TIMEOUT_SECS if timeout_secs is None else timeout_secs
        )
        self._clock = clock
        if store is None:
            store = RequestStore(
                tombstone_ttl=settings.TOMBSTONE_GRACE_SECS,
                max_pending_age=settings.MAX_PENDING_AGE_SECS,
                clock=clock,
            )
        self.store = store
        self.input_topic = input_topic or settings.ANALYSIS_TOPIC
        self.output_topic = output_topic or settings.UI_TOPIC
        self.is_running = False
        self._tasks: set[asyncio.Task] = set()
        self.stats = {
            "opened": 0,
            "completed": 0,
            "partial": 0,
            "dropped": 0,
            "failed": 0,
            "late_messages": 0,
        }

    @property
    def name(self) -> str:
        return "Aggregator"

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> None:
        if self.is_running:
            return
        await self.bus.subscribe(self.input_topic, self.handle_message)
        self.is_running = True
        logger.info(
            "[Aggregator] Listening on %s (timeout %.1fs)", self.input_topic, self.timeout_secs,
        )

    async def stop(self) -> None:
        if not self.is_running:
            return
        self.is_running = False
        await self.bus.unsubscribe(self.input_topic, self.handle_message)
        for request in self.store:
            request.cancel_timer()
        for task in list(self._tasks):
            task.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        logger.info("[Aggregator] Stopped with %d request(s) in flight", len(self.store))

    # ------------------------------------------------------------------
    # Inbound
    # ------------------------------------------------------------------

    async def handle_message(self, message: AgentMessage) -> None:
        bind_correlation_id(message.correlation_id)
        if message.kind == "request":
            await self.open(message)
        elif message.is_terminal:
            await self.accept(message)
        else:
            logger.debug(
                "[Aggregator] Ignoring %s from %s", message.kind, message.source_id,
            )

    async def open(self, message: AgentMessage) -> CorrelationRequest | None:
        """Start tracking a request announced by the gateway."""
        cid = message.correlation_id
        symbol = str(message.payload.get("symbol") or "").upper()
        expected = message.payload.get("expectedSources") or list(settings.WORKER_TOPICS)
        if not symbol:
            logger.warning("[Aggregator] Request %s has no symbol, ignoring", cid)
            return None

        request = CorrelationRequest(
            cid, symbol, set(expected), created_at=self._clock(),
        )
        if not self.store.insert(request):
            logger.debug("[Aggregator] Request %s already known, ignoring duplicate", cid)
            return None

        loop = asyncio.get_running_loop()
        request.timer = loop.call_later(self.timeout_secs, self._on_timeout, cid)
        self.stats["opened"] += 1
        logger.info(
            "[Aggregator] Tracking %s for %s, expecting %s",
            cid, symbol, sorted(request.expected_sources),
        )
        return request

    async def accept(self, message: AgentMessage) -> None:
        """Merge one worker success/error into its request."""
        cid = message.correlation_id
        source = message.source_id
        request = self.store.get(cid)

        if request is None:
            final_state = self.store.finished_state(cid)
            if final_state is not None:
                self._discard_late(message, final_state)
            else:
                logger.debug(
                    "[Aggregator] %s from %s for unknown request %s dropped",
                    message.kind, source, cid,
                )
            return

        if source not in request.expected_sources:
            logger.warning(
                "[Aggregator] Unexpected source %s for request %s, ignoring", source, cid,
            )
            return

        overwrite = source in request.received
        if not request.accept(SourceResult(
            source_id=source, ok=message.kind == "success",
            payload=dict(message.payload), received_at=self._clock(),
        )):
            self._discard_late(message, request.state)
            return

        if overwrite:
            logger.info("[Aggregator] Duplicate reply from %s for %s replaced earlier one", source, cid)
        if message.kind == "error":
            logger.warning(
                "[Aggregator] %s failed for %s: %s", source, cid, message.payload.get("error"),
            )
        else:
            logger.info("[Aggregator] Received data from %s for %s", source, cid)

        received, expected = len(request.received), len(request.expected_sources)
        percent = min(
            _PROGRESS_CEILING,
            _PROGRESS_FLOOR + received / expected * (_PROGRESS_CEILING - _PROGRESS_FLOOR),
        )
        await self._progress(cid, percent, f"Received data from {source}...")

        if request.threshold_reached:
            await self.complete(request, "threshold")

    def _discard_late(self, message: AgentMessage, state: str) -> None:
        self.stats["late_messages"] += 1
        logger.info(
            "[Aggregator] Late %s from %s for %s request %s discarded",
            message.kind, message.source_id, state, message.correlation_id,
        )

    # ------------------------------------------------------------------
    # Completion
    # ------------------------------------------------------------------

    def _on_timeout(self, correlation_id: str) -> None:
        request = self.store.get(correlation_id)
        if request is None:
            return
        request.timer = None
        logger.info("[Aggregator] Deadline reached for %s", correlation_id)
        task = asyncio.create_task(self.complete(request, "timeout"))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def complete(self, request: CorrelationRequest, trigger: str) -> bool:
        """Try to complete *request*. Returns False if another trigger won."""
        if not request.begin_completion(trigger):
            logger.debug(
                "[Aggregator] %s trigger for %s lost the race (state=%s)",
                trigger, request.id, request.state,
            )
            return False

        cid = request.id
        successes = request.successful
        duration_ms = int((self._clock() - request.created_at) * 1000)

        if not successes:
            request.drop()
            self.store.remove(cid)
            self.stats["dropped"] += 1
            logger.warning(
                "[Aggregator] No usable data for %s (%s) by %s, dropping",
                cid, request.subject_key, trigger,
            )
            await self._publish_terminal(AgentMessage.error(
                cid, self.source_id,
                "No agent returned data before the deadline",
                reason="zero_coverage",
                symbol=request.subject_key,
                sources=request.source_statuses(),
            ))
            return True

        if trigger == "timeout":
            logger.warning(
                "[Aggregator] %s timing out with %d of %d sources",
                cid, len(successes), len(request.expected_sources),
            )

        await self._progress(cid, 95, "Generating investment analysis...")
        try:
            result = await self._consolidate(request.subject_key, successes, request.coverage)
        except Exception as exc:
            request.finish()
            self.store.remove(cid)
            self.stats["failed"] += 1
            summary = summarize_exception(exc)
            logger.error("[Aggregator] Consolidation failed for %s: %s", cid, summary)
            await self._publish_terminal(AgentMessage.error(
                cid, self.source_id, summary,
                reason="consolidation_failed", symbol=request.subject_key,
            ))
            return True

        request.finish()
        self.store.remove(cid)
        self.stats["completed"] += 1
        if request.coverage < 1.0:
            self.stats["partial"] += 1

        await self._progress(cid, 100, "Analysis complete")
        await self._publish_terminal(AgentMessage.success(cid, self.source_id, {
            "symbol": request.subject_key,
            "result": result,
            "coverage": round(request.coverage, 4),
            "sources": request.source_statuses(),
            "missingSources": request.missing_sources,
            "trigger": trigger,
            "durationMs": duration_ms,
        }))
        logger.info(
            "[Aggregator] Completed %s for %s (coverage %.0f%%, by %s)",
            cid, request.subject_key, request.coverage * 100, trigger,
        )
        return True

    # ------------------------------------------------------------------
    # Outbound
    # ------------------------------------------------------------------

    async def _progress(self, correlation_id: str, percent: float, message: str) -> None:
        try:
            await self.bus.publish(
                self.output_topic,
                AgentMessage.progress(correlation_id, self.source_id, percent, message),
            )
        except TransportError as exc:
            logger.warning("[Aggregator] Progress for %s not delivered: %s", correlation_id, exc)

    async def _publish_terminal(self, message: AgentMessage) -> None:
        try:
            await self.bus.publish(self.output_topic, message)
        except TransportError as exc:
            logger.error(
                "[Aggregator] Terminal %s for %s not delivered: %s",
                message.kind, message.correlation_id, exc,
            )

    async def sweep(self) -> int:
        """Abandon stale pending requests, each with a terminal ``abandoned`` error."""
        abandoned = self.store.sweep()
        for request in abandoned:
            self.stats["dropped"] += 1
            logger.warning("[Aggregator] Abandoned stale request %s", request.id)
            await self._publish_terminal(AgentMessage.error(
                request.id, self.source_id,
                "Request abandoned before completion",
                reason="abandoned",
                symbol=request.subject_key,
                sources=request.source_statuses(),
            ))
        return len(abandoned)

    async def health_check(self) -> dict[str, Any]:
        return {
            "agent": self.name,
            "status": "running" if self.is_running else "stopped",
            "pending_requests": len(self.store),
            "timeout_secs": self.timeout_secs,
            "stats": dict(self.stats),
        }
