"""In-process TTL cache and fixed-window rate limiter.

Pure data structures: no network, no background tasks. Expired cache
entries are evicted lazily when read (or in bulk via ``purge_expired``).
Both take an injectable monotonic clock so tests can drive time.
"""

from __future__ import annotations

import time
from dataclasses import dataclass
from typing import Any, Callable

from analysis_hub.utils.logger import logger

Clock = Callable[[], float]


@dataclass
class CacheEntry:
    key: str
    value: Any
    expires_at: float | None  # None = never expires

    def is_expired(self, now: float) -> bool:
        return self.expires_at is not None and now >= self.expires_at


@dataclass
class RateWindow:
    provider_id: str
    window_start: float
    count: int
    limit: int


class TTLCache:
    """Per-key TTL cache with evict-on-read."""

    def __init__(
        self, default_ttl: float | None = None, clock: Clock = time.monotonic,
    ) -> None:
        self._entries: dict[str, CacheEntry] = {}
        self._default_ttl = default_ttl
        self._clock = clock

    def get(self, key: str, default: Any = None) -> Any:
        """Return the cached value, or *default* on miss/expiry."""
        entry = self._entries.get(key)
        if entry is None:
            return default
        if entry.is_expired(self._clock()):
            del self._entries[key]
            logger.debug("[Cache] Evicted expired key %s", key)
            return default
        return entry.value

    def set(self, key: str, value: Any, ttl: float | None = None) -> None:
        """Create or overwrite *key*. ``ttl`` in seconds; falls back to the default."""
        ttl = self._default_ttl if ttl is None else ttl
        expires_at = None if ttl is None else self._clock() + ttl
        self._entries[key] = CacheEntry(key=key, value=value, expires_at=expires_at)

    def delete(self, key: str) -> bool:
        return self._entries.pop(key, None) is not None

    def __contains__(self, key: str) -> bool:
        return self.get(key, _MISSING) is not _MISSING

    def __len__(self) -> int:
        return len(self._entries)

    def purge_expired(self) -> int:
        """Drop every expired entry. Returns how many were removed."""
        now = self._clock()
        expired = [k for k, e in self._entries.items() if e.is_expired(now)]
        for key in expired:
            del self._entries[key]
        return len(expired)

    def clear(self) -> None:
        self._entries.clear()


_MISSING = object()


class RateLimiter:
    """Fixed-window request counter, one window per provider id."""

    def __init__(self, clock: Clock = time.monotonic) -> None:
        self._windows: dict[str, RateWindow] = {}
        self._clock = clock

    def check(self, provider_id: str, limit: int, window_ms: int) -> bool:
        """Increment the provider's counter, or reject when the window is full.

        The window resets once ``now - window_start`` exceeds ``window_ms``.
        """
        now = self._clock()
        window = self._windows.get(provider_id)
        if window is None or (now - window.window_start) * 1000 > window_ms:
            window = RateWindow(
                provider_id=provider_id, window_start=now, count=0, limit=limit,
            )
            self._windows[provider_id] = window
        window.limit = limit

        if window.count >= limit:
            logger.warning(
                "[RateLimiter] %s exhausted (%d/%d in %d ms window)",
                provider_id, window.count, limit, window_ms,
            )
            return False
        window.count += 1
        return True

    def remaining(self, provider_id: str) -> int | None:
        window = self._windows.get(provider_id)
        if window is None:
            return None
        return max(0, window.limit - window.count)

    def reset(self, provider_id: str | None = None) -> None:
        if provider_id:
            self._windows.pop(provider_id, None)
        else:
            self._windows.clear()
