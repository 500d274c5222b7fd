"""Gateway — validates a subject key and fans the request out to workers."""

from __future__ import annotations

import asyncio
import re
import uuid
from typing import Any

from analysis_hub.bus.base import MessageBus
from analysis_hub.config import settings
from analysis_hub.errors import InvalidSubjectError, TransportError
from analysis_hub.models.messages import AgentMessage
from analysis_hub.services.relay import ProgressRelay
from analysis_hub.utils.logger import bind_correlation_id, logger

_SUBJECT_RE = re.compile(r"^[A-Z]{1,5}$")


def normalize_subject(subject_key: str) -> str:
    """Upper-case and validate a ticker-style subject key."""
    normalized = (subject_key or "").strip().upper()
    if not _SUBJECT_RE.match(normalized):
        raise InvalidSubjectError(subject_key)
    return normalized


class Gateway:
    """Entry point for new analysis requests.

    Publishes the request to the aggregation topic first so the aggregator
    is tracking the id before any worker can answer, then to every worker
    topic concurrently. Returns as soon as the publishes are done.
    """

    source_id = "Gateway"

    def __init__(
        self,
        bus: MessageBus,
        relay: ProgressRelay | None = None,
        *,
        worker_topics: dict[str, str] | None = None,
        aggregation_topic: str | None = None,
    ) -> None:
        self.bus = bus
        self.relay = relay
        self.worker_topics = dict(worker_topics or settings.WORKER_TOPICS)
        self.aggregation_topic = aggregation_topic or settings.ANALYSIS_TOPIC
        self.submitted = 0

    async def submit(self, subject_key: str) -> dict[str, Any]:
        symbol = normalize_subject(subject_key)
        correlation_id = str(uuid.uuid4())
        bind_correlation_id(correlation_id)
        if self.relay is not None:
            self.relay.track(correlation_id, symbol)

        request = AgentMessage.request(correlation_id, self.source_id, {
            "symbol": symbol,
            "expectedSources": sorted(self.worker_topics),
        })
        try:
            await self.bus.publish(self.aggregation_topic, request)
            await asyncio.gather(*(
                self.bus.publish(topic, request) for topic in self.worker_topics.values()
            ))
        except TransportError as exc:
            logger.error("[Gateway] Dispatch of %s for %s failed: %s", correlation_id, symbol, exc)
            if self.relay is not None:
                await self.relay.fail(correlation_id, str(exc), reason="transport")
            raise

        self.submitted += 1
        logger.info(
            "[Gateway] Dispatched %s for %s to %d worker(s)",
            correlation_id, symbol, len(self.worker_topics),
        )
        return {"correlationId": correlation_id, "subjectKey": symbol}
