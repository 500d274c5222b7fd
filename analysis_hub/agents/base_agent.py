"""Worker agent runtime — the subscribe → validate → handle → publish loop.

Concrete workers do not inherit from anything. They implement the small
``MessageProcessor`` interface and are wrapped in a ``WorkerAgent``, which
owns the bus plumbing:

    1. Subscribe to the processor's input topics
    2. Validate each ``request`` envelope (discard + log if invalid)
    3. Call ``processor.handle(payload, ctx)``
    4. Publish exactly one ``success`` or ``error`` for the correlation id

``AgentContext`` is what a handler sees: progress emission, the shared
TTL cache and the per-provider rate limiter.
"""

from __future__ import annotations

import time
from collections import OrderedDict
from typing import Any, Protocol

from analysis_hub.bus.base import MessageBus
from analysis_hub.config import settings
from analysis_hub.errors import InvalidMessageError, TransportError, summarize_exception
from analysis_hub.models.messages import AgentMessage
from analysis_hub.utils.cache import RateLimiter, TTLCache
from analysis_hub.utils.logger import bind_correlation_id, logger

# Remember this many handled correlation ids to skip redelivered requests
_MAX_PROCESSED = 1000


class MessageProcessor(Protocol):
    """Capability every concrete worker implements."""

    source_id: str
    input_topics: list[str]
    required_fields: tuple[str, ...]

    async def handle(self, payload: dict[str, Any], ctx: AgentContext) -> dict[str, Any]:
        ...


class AgentContext:
    """Per-request facilities handed to a processor's ``handle``."""

    def __init__(self, agent: WorkerAgent, correlation_id: str) -> None:
        self._agent = agent
        self.correlation_id = correlation_id

    @property
    def source_id(self) -> str:
        return self._agent.source_id

    async def emit_progress(self, percent: float, message: str) -> None:
        """Publish a progress event. Percent is clamped to [0, 100]."""
        await self._agent.emit_progress(self.correlation_id, percent, message)

    def check_rate_limit(
        self,
        provider_id: str,
        limit: int | None = None,
        window_ms: int | None = None,
    ) -> bool:
        """Consume one call from *provider_id*'s window.

        Limits default to ``settings.RATE_LIMITS``. A False return means
        skip this provider, not fail the request.
        """
        if limit is None or window_ms is None:
            default_limit, default_window = settings.RATE_LIMITS.get(
                provider_id, (60, 60_000),
            )
            limit = default_limit if limit is None else limit
            window_ms = default_window if window_ms is None else window_ms
        return self._agent.limiter.check(provider_id, limit, window_ms)

    def get_cached(self, key: str) -> Any:
        return self._agent.cache.get(key)

    def set_cached(self, key: str, value: Any, ttl: float | None = None) -> None:
        self._agent.cache.set(key, value, ttl)


class WorkerAgent:
    """Runs one MessageProcessor against the bus."""

    def __init__(
        self,
        processor: MessageProcessor,
        bus: MessageBus,
        *,
        cache: TTLCache,
        limiter: RateLimiter,
        output_topic: str | None = None,
        progress_topic: str | None = None,
    ) -> None:
        self.processor = processor
        self.bus = bus
        self.cache = cache
        self.limiter = limiter
        self.output_topic = output_topic or settings.ANALYSIS_TOPIC
        self.progress_topic = progress_topic or settings.UI_TOPIC
        self.is_running = False
        self._processed: OrderedDict[str, float] = OrderedDict()
        self.stats = {"succeeded": 0, "failed": 0, "rejected": 0, "duplicates": 0}

    @property
    def source_id(self) -> str:
        return self.processor.source_id

    @property
    def name(self) -> str:
        return self.processor.source_id

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> None:
        if self.is_running:
            logger.warning("[%s] Already running", self.name)
            return
        for topic in self.processor.input_topics:
            await self.bus.subscribe(topic, self.process_message)
            logger.info("[%s] Subscribed to %s", self.name, topic)
        self.is_running = True
        logger.info("[%s] Started", self.name)

    async def stop(self) -> None:
        if not self.is_running:
            return
        self.is_running = False
        for topic in self.processor.input_topics:
            await self.bus.unsubscribe(topic, self.process_message)
        logger.info("[%s] Stopped", self.name)

    # ------------------------------------------------------------------
    # Message loop
    # ------------------------------------------------------------------

    def validate(self, message: AgentMessage) -> None:
        """Raise InvalidMessageError if a request lacks required payload fields."""
        missing = [
            f for f in self.processor.required_fields
            if message.payload.get(f) in (None, "")
        ]
        if missing:
            raise InvalidMessageError(
                f"request {message.correlation_id} missing field(s): {', '.join(missing)}"
            )

    async def process_message(self, message: AgentMessage) -> None:
        if message.kind != "request":
            logger.debug(
                "[%s] Ignoring %s message for %s",
                self.name, message.kind, message.correlation_id,
            )
            return

        cid = message.correlation_id
        bind_correlation_id(cid)
        try:
            self.validate(message)
        except InvalidMessageError as exc:
            self.stats["rejected"] += 1
            logger.warning("[%s] Discarding invalid request: %s", self.name, exc)
            return

        if cid in self._processed:
            self.stats["duplicates"] += 1
            logger.debug("[%s] Already processed request %s", self.name, cid)
            return
        self._remember(cid)

        logger.info("[%s] Processing request %s", self.name, cid)
        ctx = AgentContext(self, cid)
        try:
            result = await self.processor.handle(dict(message.payload), ctx)
        except Exception as exc:
            # A worker failure only reduces coverage; never let it escape.
            self.stats["failed"] += 1
            summary = summarize_exception(exc)
            logger.error("[%s] Request %s failed: %s", self.name, cid, summary)
            await self._publish(AgentMessage.error(cid, self.source_id, summary))
            return

        self.stats["succeeded"] += 1
        await self._publish(AgentMessage.success(cid, self.source_id, result or {}))
        logger.info("[%s] Completed request %s", self.name, cid)

    async def emit_progress(self, correlation_id: str, percent: float, message: str) -> None:
        percent = max(0.0, min(100.0, float(percent)))
        try:
            await self.bus.publish(
                self.progress_topic,
                AgentMessage.progress(correlation_id, self.source_id, percent, message),
            )
        except TransportError as exc:
            logger.warning(
                "[%s] Progress for %s not delivered: %s", self.name, correlation_id, exc,
            )

    async def _publish(self, message: AgentMessage) -> None:
        try:
            await self.bus.publish(self.output_topic, message)
        except TransportError as exc:
            logger.error(
                "[%s] Could not publish %s for %s: %s",
                self.name, message.kind, message.correlation_id, exc,
            )

    def _remember(self, correlation_id: str) -> None:
        self._processed[correlation_id] = time.monotonic()
        while len(self._processed) > _MAX_PROCESSED:
            self._processed.popitem(last=False)

    async def health_check(self) -> dict[str, Any]:
        return {
            "agent": self.name,
            "status": "running" if self.is_running else "stopped",
            "bus_connected": self.bus.is_connected,
            "processed_requests": len(self._processed),
            "input_topics": list(self.processor.input_topics),
            "output_topic": self.output_topic,
            "stats": dict(self.stats),
        }
