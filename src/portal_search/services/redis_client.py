"""Redis-backed implementation of the :class:`Cache` protocol."""

from __future__ import annotations

import json
import math
from typing import Any

import structlog
from redis.asyncio import Redis

logger = structlog.get_logger(__name__)


class RedisCache:
    """Shared TTL cache for deployments that run several API workers.

    Values must be JSON-serialisable. Redis errors are logged and treated as
    a miss (on read) or a no-op (on write) so the cache never fails a request.

    Args:
        url:    Redis connection URL, e.g. ``"redis://localhost:6379/0"``.
        prefix: Namespace prepended to every key.
    """

    def __init__(self, url: str, prefix: str = "portal-search:") -> None:
        self._url = url
        self._prefix = prefix
        self._redis: Redis | None = None

    async def connect(self) -> None:
        """Open the connection pool."""
        self._redis = Redis.from_url(self._url, decode_responses=True)
        logger.info("redis.connected", url=self._url)

    async def disconnect(self) -> None:
        """Close the connection pool gracefully."""
        if self._redis:
            await self._redis.aclose()
            logger.info("redis.disconnected")

    @property
    def _r(self) -> Redis:
        if self._redis is None:
            raise RuntimeError("RedisCache not connected; call connect() first.")
        return self._redis

    async def ping(self) -> bool:
        """Return True if Redis responds to PING."""
        return await self._r.ping()

    async def get(self, key: str) -> Any | None:
        try:
            raw = await self._r.get(self._prefix + key)
            if raw is None:
                return None
            return json.loads(raw)
        except Exception as exc:  # noqa: BLE001
            logger.warning("redis.cache_get_error", key=key[:24], error=str(exc))
            return None

    async def set(self, key: str, value: Any, ttl_seconds: float) -> None:
        # SETEX takes whole seconds; round up so short TTLs never become 0.
        ttl = max(1, math.ceil(ttl_seconds))
        try:
            await self._r.setex(self._prefix + key, ttl, json.dumps(value))
        except Exception as exc:  # noqa: BLE001
            logger.warning("redis.cache_set_error", key=key[:24], error=str(exc))

    async def delete(self, key: str) -> None:
        try:
            await self._r.delete(self._prefix + key)
        except Exception as exc:  # noqa: BLE001
            logger.warning("redis.cache_delete_error", key=key[:24], error=str(exc))

    async def clear(self) -> None:
        async for key in self._r.scan_iter(f"{self._prefix}*"):
            await self._r.delete(key)
