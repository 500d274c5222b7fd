"""Bus message envelope shared by every agent.

On the wire a message is a JSON object::

    {"correlationId": "...", "sourceId": "...", "kind": "success",
     "payload": {...}, "timestamp": "2026-01-01T00:00:00+00:00"}
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from analysis_hub.errors import InvalidMessageError

MessageKind = Literal["request", "progress", "success", "error"]

TERMINAL_KINDS: frozenset[str] = frozenset({"success", "error"})


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class AgentMessage(BaseModel):
    """Immutable envelope published on the bus."""

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    correlation_id: str = Field(alias="correlationId", min_length=1)
    source_id: str = Field(alias="sourceId", min_length=1)
    kind: MessageKind
    payload: dict[str, Any] = Field(default_factory=dict)
    timestamp: datetime = Field(default_factory=utcnow)

    @property
    def is_terminal(self) -> bool:
        return self.kind in TERMINAL_KINDS

    def to_wire(self) -> dict[str, Any]:
        """Serialize to the camelCase JSON-safe dict sent over the bus."""
        return self.model_dump(mode="json", by_alias=True)

    @classmethod
    def from_wire(cls, data: Any) -> AgentMessage:
        """Parse a bus payload, raising InvalidMessageError when malformed."""
        if isinstance(data, AgentMessage):
            return data
        if not isinstance(data, dict):
            raise InvalidMessageError(
                f"Expected a JSON object, got {type(data).__name__}"
            )
        try:
            return cls.model_validate(data)
        except ValidationError as exc:
            raise InvalidMessageError(str(exc)) from exc

    # ── Convenience constructors ──────────────────────────────────

    @classmethod
    def request(
        cls, correlation_id: str, source_id: str, payload: dict[str, Any],
    ) -> AgentMessage:
        return cls(
            correlation_id=correlation_id, source_id=source_id,
            kind="request", payload=payload,
        )

    @classmethod
    def progress(
        cls, correlation_id: str, source_id: str, percent: float, message: str,
    ) -> AgentMessage:
        return cls(
            correlation_id=correlation_id, source_id=source_id,
            kind="progress",
            payload={"percent": percent, "message": message},
        )

    @classmethod
    def success(
        cls, correlation_id: str, source_id: str, payload: dict[str, Any],
    ) -> AgentMessage:
        return cls(
            correlation_id=correlation_id, source_id=source_id,
            kind="success", payload=payload,
        )

    @classmethod
    def error(
        cls,
        correlation_id: str,
        source_id: str,
        error: str,
        **extra: Any,
    ) -> AgentMessage:
        return cls(
            correlation_id=correlation_id, source_id=source_id,
            kind="error", payload={"error": error, **extra},
        )
