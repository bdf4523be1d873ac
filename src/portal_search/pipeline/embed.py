"""Embedding stage: cached, guarded query embeddings for the k-NN branch."""

from __future__ import annotations

import time

import structlog

from portal_search.services.cache import EMBEDDING_TTL_SECONDS, Cache, make_embedding_key
from portal_search.services.circuit_breaker import CircuitBreaker
from portal_search.services.embeddings import EmbeddingProvider
from portal_search.services.observability import Observability, outcome_of
from portal_search.services.retry import PROVIDER_RETRY, RetryPolicy, with_retry
from portal_search.utils.deadline import run_with_deadline

logger = structlog.get_logger(__name__)

_MAX_INPUT_CHARS = 8000


class EmbeddingStage:
    """Embed text, returning ``None`` instead of raising on any failure.

    Embeddings are cached for an hour since they are stable for unchanged
    text.
    """

    def __init__(
        self,
        provider: EmbeddingProvider,
        cache: Cache | None = None,
        breaker: CircuitBreaker | None = None,
        timeout_s: float | None = 0.25,
        retry_policy: RetryPolicy = PROVIDER_RETRY,
        observability: Observability | None = None,
    ) -> None:
        self._provider = provider
        self._cache = cache
        self._breaker = breaker or CircuitBreaker(failure_threshold=3, reset_timeout=30.0, name="embedding")
        self._timeout_s = timeout_s
        self._retry_policy = retry_policy
        self._observability = observability

    @property
    def breaker(self) -> CircuitBreaker:
        return self._breaker

    def dim(self) -> int:
        return self._provider.dim()

    async def embed(self, text: str) -> list[float] | None:
        text = text[:_MAX_INPUT_CHARS]
        started = time.perf_counter()
        key = make_embedding_key(text)

        if self._cache is not None:
            cached = await self._cache.get(key)
            if isinstance(cached, list) and cached:
                self._record("cache_hit", started)
                return [float(v) for v in cached]

        try:
            vector = await run_with_deadline(self._call_provider(text, key), self._timeout_s, "embed")
        except Exception as exc:  # noqa: BLE001
            outcome = outcome_of(exc)
            logger.warning("embed.failed", reason=outcome, error=str(exc))
            self._record(outcome, started)
            return None

        self._record("success", started)
        return vector

    async def _call_provider(self, text: str, key: str) -> list[float]:
        vector = await self._breaker.execute(
            lambda: with_retry(lambda: self._provider.embed(text), self._retry_policy, name="embed")
        )
        if not vector:
            raise ValueError("embedding provider returned an empty vector")
        if self._cache is not None:
            await self._cache.set(key, list(vector), EMBEDDING_TTL_SECONDS)
        return vector

    def _record(self, outcome: str, started: float) -> None:
        if self._observability is not None:
            ms = (time.perf_counter() - started) * 1000
            self._observability.record_ai_usage("embed", outcome, ms)
