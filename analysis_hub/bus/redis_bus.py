"""Redis pub/sub transport for multi-process deployments.

One connection publishes, one ``PubSub`` connection listens for every
subscribed channel. Each received message is dispatched to the local
handlers in its own task, so a slow handler on one channel never stalls the
reader. Envelopes travel as JSON strings.
"""

from __future__ import annotations

import asyncio
import json

import redis.asyncio as aioredis
from redis.exceptions import RedisError

from analysis_hub.bus.base import MessageHandler
from analysis_hub.errors import InvalidMessageError, TransportError
from analysis_hub.models.messages import AgentMessage
from analysis_hub.utils.logger import logger


class RedisBus:
    """Message bus backed by Redis PUBLISH/SUBSCRIBE."""

    def __init__(self, url: str, poll_timeout: float = 1.0) -> None:
        self.url = url
        self._poll_timeout = poll_timeout
        self._client: aioredis.Redis | None = None
        self._pubsub: aioredis.client.PubSub | None = None
        self._handlers: dict[str, list[MessageHandler]] = {}
        self._reader: asyncio.Task | None = None
        self._tasks: set[asyncio.Task] = set()
        self._connected = False

    @property
    def is_connected(self) -> bool:
        return self._connected

    async def connect(self) -> None:
        try:
            self._client = aioredis.from_url(self.url, decode_responses=True)
            await self._client.ping()
            self._pubsub = self._client.pubsub(ignore_subscribe_messages=True)
        except (RedisError, OSError) as exc:
            logger.error("[RedisBus] Failed to connect to %s: %s", self.url, exc)
            raise TransportError(self.url, exc) from exc
        self._connected = True
        logger.info("[RedisBus] Connected to %s", self.url)

    async def close(self) -> None:
        self._connected = False
        if self._reader and not self._reader.done():
            self._reader.cancel()
            await asyncio.gather(self._reader, return_exceptions=True)
        self._reader = None
        pending = list(self._tasks)
        for task in pending:
            task.cancel()
        await asyncio.gather(*pending, return_exceptions=True)
        try:
            if self._pubsub is not None:
                await self._pubsub.aclose()
            if self._client is not None:
                await self._client.aclose()
        except (RedisError, OSError) as exc:
            logger.warning("[RedisBus] Error while closing: %s", exc)
        self._handlers.clear()
        logger.info("[RedisBus] Closed")

    async def ping(self) -> bool:
        if self._client is None:
            return False
        try:
            return bool(await self._client.ping())
        except (RedisError, OSError):
            return False

    async def publish(self, topic: str, message: AgentMessage) -> None:
        if not self._connected or self._client is None:
            raise TransportError(topic, RuntimeError("bus is not connected"))
        try:
            await self._client.publish(topic, json.dumps(message.to_wire()))
        except (RedisError, OSError) as exc:
            logger.error("[RedisBus] Publish to %s failed: %s", topic, exc)
            raise TransportError(topic, exc) from exc
        logger.debug(
            "[RedisBus] %s → %s (%s, %s)",
            message.source_id, topic, message.kind, message.correlation_id,
        )

    async def subscribe(self, topic: str, handler: MessageHandler) -> None:
        if not self._connected or self._pubsub is None:
            raise TransportError(topic, RuntimeError("bus is not connected"))
        if topic not in self._handlers:
            try:
                await self._pubsub.subscribe(topic)
            except (RedisError, OSError) as exc:
                raise TransportError(topic, exc) from exc
        self._handlers.setdefault(topic, []).append(handler)
        if self._reader is None or self._reader.done():
            self._reader = asyncio.create_task(self._listen(), name="redis-bus-reader")
        logger.info("[RedisBus] Subscribed to %s", topic)

    async def unsubscribe(self, topic: str, handler: MessageHandler | None = None) -> None:
        handlers = self._handlers.get(topic, [])
        if handler is not None:
            handlers = [h for h in handlers if h != handler]
        else:
            handlers = []
        if handlers:
            self._handlers[topic] = handlers
            return
        self._handlers.pop(topic, None)
        if self._pubsub is not None:
            try:
                await self._pubsub.unsubscribe(topic)
            except (RedisError, OSError) as exc:
                logger.warning("[RedisBus] Unsubscribe from %s failed: %s", topic, exc)
        logger.info("[RedisBus] Unsubscribed from %s", topic)

    async def _listen(self) -> None:
        assert self._pubsub is not None
        while self._connected:
            try:
                raw = await self._pubsub.get_message(
                    ignore_subscribe_messages=True, timeout=self._poll_timeout,
                )
            except (RedisError, OSError) as exc:
                logger.error("[RedisBus] Listener error: %s", exc)
                await asyncio.sleep(self._poll_timeout)
                continue
            if raw is None:
                continue
            task = asyncio.create_task(
                self._dispatch(raw["channel"], raw["data"]),
                name=f"redis-bus-handler:{raw['channel']}",
            )
            self._tasks.add(task)
            task.add_done_callback(self._tasks.discard)

    async def _dispatch(self, topic: str, data: str) -> None:
        try:
            message = AgentMessage.from_wire(json.loads(data))
        except (json.JSONDecodeError, InvalidMessageError) as exc:
            logger.warning("[RedisBus] Dropping malformed message on %s: %s", topic, exc)
            return
        handlers = list(self._handlers.get(topic, []))
        results = await asyncio.gather(
            *(handler(message) for handler in handlers), return_exceptions=True,
        )
        for outcome in results:
            if isinstance(outcome, Exception):
                logger.error(
                    "[RedisBus] Handler failed on %s: %s", topic, outcome, exc_info=outcome,
                )
