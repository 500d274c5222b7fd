"""In-process asyncio message bus.

Every subscription gets its own queue and consumer task. The consumer hands
each message to its own handler task, so handlers start in publish order but
a slow one never holds up the messages behind it. Messages are copied through
their wire form on publish so subscribers never share mutable payloads with
the sender.
"""

from __future__ import annotations

import asyncio
import functools
from dataclasses import dataclass, field

from analysis_hub.bus.base import MessageHandler
from analysis_hub.errors import InvalidMessageError, TransportError
from analysis_hub.models.messages import AgentMessage
from analysis_hub.utils.logger import logger


@dataclass
class _Subscription:
    topic: str
    handler: MessageHandler
    queue: asyncio.Queue = field(default_factory=asyncio.Queue)
    task: asyncio.Task | None = None
    handlers: set[asyncio.Task] = field(default_factory=set)


class InMemoryBus:
    """Single-process bus backed by asyncio queues."""

    def __init__(self) -> None:
        self._subs: dict[str, list[_Subscription]] = {}
        self._connected = False
        self._in_flight = 0
        self._idle = asyncio.Event()
        self.published_count = 0

    @property
    def is_connected(self) -> bool:
        return self._connected

    async def connect(self) -> None:
        self._connected = True
        logger.info("[InMemoryBus] Connected")

    async def close(self) -> None:
        self._connected = False
        subs = [sub for topic_subs in self._subs.values() for sub in topic_subs]
        self._subs.clear()
        await asyncio.gather(*(self._retire(sub) for sub in subs))
        logger.info("[InMemoryBus] Closed")

    async def publish(self, topic: str, message: AgentMessage) -> None:
        if not self._connected:
            raise TransportError(topic, RuntimeError("bus is not connected"))
        for sub in self._subs.get(topic, []):
            sub.queue.put_nowait(message.to_wire())
            self._in_flight += 1
        self.published_count += 1
        logger.debug(
            "[InMemoryBus] %s → %s (%s, %s)",
            message.source_id, topic, message.kind, message.correlation_id,
        )

    async def subscribe(self, topic: str, handler: MessageHandler) -> None:
        if not self._connected:
            raise TransportError(topic, RuntimeError("bus is not connected"))
        sub = _Subscription(topic=topic, handler=handler)
        sub.task = asyncio.create_task(
            self._consume(sub), name=f"bus-consumer:{topic}",
        )
        self._subs.setdefault(topic, []).append(sub)
        logger.info("[InMemoryBus] Subscribed to %s", topic)

    async def unsubscribe(self, topic: str, handler: MessageHandler | None = None) -> None:
        keep: list[_Subscription] = []
        retired: list[_Subscription] = []
        for sub in self._subs.get(topic, []):
            if handler is None or sub.handler == handler:
                retired.append(sub)
            else:
                keep.append(sub)
        if keep:
            self._subs[topic] = keep
        else:
            self._subs.pop(topic, None)
        await asyncio.gather(*(self._retire(sub) for sub in retired))
        logger.info("[InMemoryBus] Unsubscribed from %s", topic)

    async def drain(self) -> None:
        """Wait until every queued message has been handled.

        Handlers may publish follow-up messages, so this only returns once
        nothing is queued or being handled anywhere on the bus.
        """
        while self._in_flight:
            self._idle.clear()
            await self._idle.wait()

    # ------------------------------------------------------------------

    def _settle(self, count: int = 1) -> None:
        self._in_flight -= count
        if self._in_flight <= 0:
            self._in_flight = 0
            self._idle.set()

    async def _retire(self, sub: _Subscription) -> None:
        """Stop a consumer, cancel its running handlers and forget the backlog."""
        if sub.task and not sub.task.done():
            sub.task.cancel()
            await asyncio.gather(sub.task, return_exceptions=True)
        handlers = list(sub.handlers)
        for task in handlers:
            task.cancel()
        await asyncio.gather(*handlers, return_exceptions=True)
        self._settle(sub.queue.qsize())

    async def _consume(self, sub: _Subscription) -> None:
        while True:
            wire = await sub.queue.get()
            sub.queue.task_done()
            task = asyncio.create_task(
                self._deliver(sub, wire), name=f"bus-handler:{sub.topic}",
            )
            sub.handlers.add(task)
            task.add_done_callback(functools.partial(self._handler_done, sub))

    def _handler_done(self, sub: _Subscription, task: asyncio.Task) -> None:
        sub.handlers.discard(task)
        self._settle()

    async def _deliver(self, sub: _Subscription, wire: dict) -> None:
        try:
            message = AgentMessage.from_wire(wire)
            await sub.handler(message)
        except InvalidMessageError as exc:
            logger.warning(
                "[InMemoryBus] Dropping malformed message on %s: %s", sub.topic, exc,
            )
        except Exception as exc:
            logger.error(
                "[InMemoryBus] Handler failed on %s: %s", sub.topic, exc, exc_info=True,
            )
