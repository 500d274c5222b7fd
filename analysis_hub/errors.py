"""Exception types raised across the analysis hub.

Only two of these ever reach an external caller: ``InvalidSubjectError``
(rejected synchronously by the gateway) and ``TransportError`` (nothing
could be dispatched).  Worker failures travel as ``error`` messages and
only reduce coverage.
"""

from __future__ import annotations


class AnalysisHubError(Exception):
    """Base class for all analysis hub errors."""


class InvalidSubjectError(AnalysisHubError):
    """The subject key (ticker symbol) failed the format check."""

    def __init__(self, subject_key: str) -> None:
        super().__init__(f"Invalid symbol format: {subject_key!r}")
        self.subject_key = subject_key


class InvalidMessageError(AnalysisHubError):
    """A bus envelope is missing required fields or is malformed."""


class TransportError(AnalysisHubError):
    """Publishing to or subscribing on the message bus failed."""

    def __init__(self, topic: str, cause: BaseException | None = None) -> None:
        detail = f": {type(cause).__name__}: {cause}" if cause else ""
        super().__init__(f"Bus transport failed on {topic!r}{detail}")
        self.topic = topic
        self.cause = cause


def summarize_exception(exc: BaseException, limit: int = 300) -> str:
    """Return a short one-line ``Type: message`` summary of *exc*."""
    text = f"{type(exc).__name__}: {exc}".replace("\n", " ")
    if len(text) > limit:
        text = text[: limit - 1] + "…"
    return text
