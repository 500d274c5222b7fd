"""Message bus interface shared by every transport."""

from __future__ import annotations

from typing import Awaitable, Callable, Protocol

from analysis_hub.models.messages import AgentMessage

MessageHandler = Callable[[AgentMessage], Awaitable[None]]


class MessageBus(Protocol):
    """Topic-addressed publish/subscribe transport.

    At-least-once delivery within a connected session, ordered per topic,
    no ordering guarantee across topics.  ``publish`` raises
    ``TransportError`` when the message could not be handed to the transport.
    """

    @property
    def is_connected(self) -> bool: ...

    async def connect(self) -> None: ...

    async def close(self) -> None: ...

    async def publish(self, topic: str, message: AgentMessage) -> None: ...

    async def subscribe(self, topic: str, handler: MessageHandler) -> None: ...

    async def unsubscribe(self, topic: str, handler: MessageHandler | None = None) -> None: ...
