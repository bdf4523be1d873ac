"""Query rewrite stage: redact, cache, and call the AI provider under guard."""

from __future__ import annotations

import time
from typing import Any, Mapping

import structlog
from pydantic import ValidationError

from portal_search.models import RewriteOutput
from portal_search.services.cache import REWRITE_TTL_SECONDS, Cache, make_rewrite_key
from portal_search.services.circuit_breaker import CircuitBreaker
from portal_search.services.claude import RewriteProvider
from portal_search.services.observability import Observability, outcome_of
from portal_search.services.pii import PIIRedactor
from portal_search.services.retry import PROVIDER_RETRY, RetryPolicy, with_retry
from portal_search.utils.deadline import run_with_deadline

logger = structlog.get_logger(__name__)


class QueryRewriteStage:
    """Turn a raw user query into an effective query plus search hints.

    The stage never raises: on timeout, an open circuit, or any provider
    error it returns the redacted query with no hints.

    Args:
        provider:      AI rewrite capability; ``None`` disables the stage.
        cache:         Shared TTL cache; ``None`` disables caching.
        breaker:       Circuit breaker dedicated to this provider.
        redactor:      PII scrubber applied before the query leaves the process.
        enabled:       Feature toggle.
        timeout_s:     Budget for the provider call; ``None`` waits indefinitely.
        max_query_len: Input is truncated to this many characters.
        retry_policy:  Retry budget for transient provider errors.
        observability: Event sink for AI usage outcomes.
    """

    def __init__(
        self,
        provider: RewriteProvider | None,
        cache: Cache | None = None,
        breaker: CircuitBreaker | None = None,
        redactor: PIIRedactor | None = None,
        enabled: bool = True,
        timeout_s: float | None = 0.12,
        max_query_len: int = 512,
        retry_policy: RetryPolicy = PROVIDER_RETRY,
        observability: Observability | None = None,
    ) -> None:
        self._provider = provider
        self._cache = cache
        self._breaker = breaker or CircuitBreaker(failure_threshold=5, reset_timeout=60.0, name="rewrite")
        self._redactor = redactor or PIIRedactor()
        self._enabled = enabled
        self._timeout_s = timeout_s
        self._max_query_len = max_query_len
        self._retry_policy = retry_policy
        self._observability = observability

    @property
    def enabled(self) -> bool:
        return self._enabled and self._provider is not None

    @property
    def breaker(self) -> CircuitBreaker:
        return self._breaker

    def truncate(self, query: str) -> str:
        return query[: self._max_query_len]

    async def rewrite(
        self, query: str, filters: Mapping[str, Any] | None = None
    ) -> RewriteOutput:
        """Rewrite *query*; see the class docstring for the fallback contract."""
        truncated = self.truncate(query)
        if not self.enabled:
            return RewriteOutput(query=truncated)

        redaction = self._redactor.redact(truncated)
        if redaction.found:
            logger.warning("rewrite.pii_redacted", kinds=redaction.kinds, count=len(redaction.found))
        redacted = redaction.text
        started = time.perf_counter()

        key = make_rewrite_key(redacted, filters)
        cached = await self._cached(key)
        if cached is not None:
            self._record("cache_hit", started)
            return cached.model_copy(update={"pii_found": redaction.found})

        try:
            result = await run_with_deadline(
                self._call_provider(redacted, filters, key), self._timeout_s, "rewrite"
            )
        except Exception as exc:  # noqa: BLE001
            outcome = outcome_of(exc)
            logger.warning("rewrite.fallback", reason=outcome, error=str(exc))
            self._record(outcome, started)
            return RewriteOutput(query=redacted, pii_found=redaction.found)

        self._record("success", started)
        return result.model_copy(update={"pii_found": redaction.found})

    async def _cached(self, key: str) -> RewriteOutput | None:
        if self._cache is None:
            return None
        raw = await self._cache.get(key)
        if raw is None:
            return None
        try:
            return RewriteOutput.model_validate(raw)
        except ValidationError as exc:
            logger.warning("rewrite.cache_corrupt", error=str(exc))
            await self._cache.delete(key)
            return None

    async def _call_provider(
        self, query: str, filters: Mapping[str, Any] | None, key: str
    ) -> RewriteOutput:
        provider = self._provider
        if provider is None:
            raise RuntimeError("rewrite provider not configured")
        result = await self._breaker.execute(
            lambda: with_retry(
                lambda: provider.rewrite(query, filters),
                self._retry_policy,
                name="rewrite",
            )
        )
        if not result.query:
            result = result.model_copy(update={"query": query})
        # Runs even if the caller already timed out, so late answers still warm the cache.
        if self._cache is not None:
            payload = result.model_dump(mode="json", exclude={"pii_found"})
            await self._cache.set(key, payload, REWRITE_TTL_SECONDS)
        return result

    def _record(self, outcome: str, started: float) -> None:
        if self._observability is not None:
            ms = (time.perf_counter() - started) * 1000
            self._observability.record_ai_usage("rewrite", outcome, ms)
