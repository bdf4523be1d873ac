"""TTL cache for expensive AI results (rewrites, embeddings)."""

from __future__ import annotations

import hashlib
import json
import threading
import time
from dataclasses import dataclass
from typing import Any, Callable, Mapping, Protocol

import structlog

logger = structlog.get_logger(__name__)

REWRITE_TTL_SECONDS = 300
EMBEDDING_TTL_SECONDS = 3600


class Cache(Protocol):
    """Async key/value store with per-entry expiry."""

    async def get(self, key: str) -> Any | None: ...

    async def set(self, key: str, value: Any, ttl_seconds: float) -> None: ...

    async def delete(self, key: str) -> None: ...

    async def clear(self) -> None: ...


def _digest(payload: str) -> str:
    return hashlib.sha256(payload.encode("utf-8")).hexdigest()


def make_rewrite_key(query: str, filters: Mapping[str, Any] | None = None) -> str:
    """Return a deterministic cache key for a rewrite of *query* under *filters*.

    Args:
        query:   Redacted, truncated query string.
        filters: Caller filters; key order does not matter.

    Returns:
        ``"rewrite:"`` followed by a 64-character hex digest.
    """
    canonical = json.dumps(
        {"query": query, "filters": dict(filters or {})},
        sort_keys=True,
        default=str,
    )
    return f"rewrite:{_digest(canonical)}"


def make_embedding_key(text: str) -> str:
    """Return a deterministic cache key for the embedding of *text*."""
    return f"embedding:{_digest(text)}"


@dataclass
class _Entry:
    value: Any
    inserted_at: float
    ttl: float

    def expired(self, now: float) -> bool:
        return now - self.inserted_at >= self.ttl


class InMemoryTTLCache:
    """Process-local TTL cache.

    A read past an entry's TTL removes it and reports a miss. Writes also
    sweep every expired entry, at most once per ``sweep_interval_s``, so keys
    that are never read again (ingestion embeddings) do not pile up.

    Args:
        default_ttl_seconds: TTL used when :meth:`set` is given ``ttl_seconds <= 0``.
        sweep_interval_s:    Minimum time between sweeps triggered by :meth:`set`.
        clock:               Monotonic time source (seconds); injectable for tests.
    """

    def __init__(
        self,
        default_ttl_seconds: float = 300.0,
        sweep_interval_s: float = 60.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._default_ttl = default_ttl_seconds
        self._sweep_interval = sweep_interval_s
        self._clock = clock
        self._last_sweep = clock()
        self._entries: dict[str, _Entry] = {}
        self._lock = threading.Lock()
        self.hits = 0
        self.misses = 0

    async def get(self, key: str) -> Any | None:
        now = self._clock()
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                self.misses += 1
                return None
            if entry.expired(now):
                del self._entries[key]
                self.misses += 1
                return None
            self.hits += 1
            return entry.value

    async def set(self, key: str, value: Any, ttl_seconds: float = 0) -> None:
        ttl = ttl_seconds if ttl_seconds > 0 else self._default_ttl
        now = self._clock()
        removed = 0
        with self._lock:
            self._entries[key] = _Entry(value=value, inserted_at=now, ttl=ttl)
            if now - self._last_sweep >= self._sweep_interval:
                removed = self._sweep(now)
        if removed:
            logger.debug("cache.purged", removed=removed)

    async def delete(self, key: str) -> None:
        with self._lock:
            self._entries.pop(key, None)

    async def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def purge_expired(self) -> int:
        """Drop every expired entry and return how many were removed."""
        now = self._clock()
        with self._lock:
            removed = self._sweep(now)
        if removed:
            logger.debug("cache.purged", removed=removed)
        return removed

    def _sweep(self, now: float) -> int:
        # Caller holds self._lock.
        stale = [k for k, e in self._entries.items() if e.expired(now)]
        for key in stale:
            del self._entries[key]
        self._last_sweep = now
        return len(stale)

    def stats(self) -> dict[str, int]:
        with self._lock:
            return {"keys": len(self._entries), "hits": self.hits, "misses": self.misses}

    async def ping(self) -> bool:
        return True
