"""Prometheus metrics and structured log events for queries and ingestion."""

from __future__ import annotations

import random
from typing import Any, Callable, Mapping

import structlog
from prometheus_client import CONTENT_TYPE_LATEST, CollectorRegistry, Counter, Histogram, generate_latest

from portal_search.errors import CircuitOpenError, StageTimeoutError

logger = structlog.get_logger(__name__)

_LATENCY_BUCKETS = (10, 25, 50, 100, 200, 400, 800, 1600, 3200)


def outcome_of(exc: BaseException) -> str:
    """Map a stage failure to the ``outcome`` label used for AI usage."""
    if isinstance(exc, StageTimeoutError):
        return "timeout"
    if isinstance(exc, CircuitOpenError):
        return "circuit_open"
    return "failure"


class Observability:
    """Records the pipeline's observable events.

    Every instance owns its own :class:`CollectorRegistry`, so several
    pipelines (or tests) can coexist in one process.

    Args:
        sample_rate: Fraction of queries that emit a diagnostic log line.
        registry:    Registry to register metrics on; a fresh one by default.
        rng:         Random source in ``[0, 1)``; injectable for tests.
    """

    def __init__(
        self,
        sample_rate: float = 0.0,
        registry: CollectorRegistry | None = None,
        rng: Callable[[], float] = random.random,
    ) -> None:
        self.registry = registry or CollectorRegistry()
        self.sample_rate = sample_rate
        self._rng = rng

        self.query_latency = Histogram(
            "portal_search_query_latency_ms",
            "Latency per stage in milliseconds",
            ["stage"],
            buckets=_LATENCY_BUCKETS,
            registry=self.registry,
        )
        self.queries = Counter(
            "portal_search_query_total",
            "Total queries processed",
            ["outcome"],
            registry=self.registry,
        )
        self.ai_usage = Counter(
            "portal_search_ai_usage_total",
            "AI stage usage and outcomes",
            ["stage", "outcome"],
            registry=self.registry,
        )
        self.errors = Counter(
            "portal_search_errors_total",
            "Errors by stage",
            ["stage"],
            registry=self.registry,
        )
        self.indexed = Counter(
            "portal_search_indexed_total",
            "Indexed documents by source",
            ["source"],
            registry=self.registry,
        )

    def record_query(self, query: str, effective_query: str, timings: Mapping[str, float]) -> None:
        for key, ms in timings.items():
            self.query_latency.labels(key.removesuffix("_ms")).observe(ms)
        self.queries.labels("success").inc()
        logger.info(
            "query.observed",
            query_len=len(query),
            effective_len=len(effective_query),
            **{k: round(v, 1) for k, v in timings.items()},
        )

    def record_error(self, stage: str, error: BaseException) -> None:
        self.errors.labels(stage).inc()
        self.queries.labels("failure").inc()
        logger.error("stage.error", stage=stage, error=str(error), error_type=type(error).__name__)

    def record_ai_usage(self, stage: str, outcome: str, ms: float | None = None) -> None:
        """Count one AI stage invocation.

        Args:
            stage:   ``"rewrite"``, ``"embed"`` or ``"rerank"``.
            outcome: ``"success"``, ``"cache_hit"``, ``"timeout"``,
                     ``"circuit_open"`` or ``"failure"``.
            ms:      Wall time of the stage, if measured. Latency histograms
                     are fed by :meth:`record_query`, so this is only logged.
        """
        self.ai_usage.labels(stage, outcome).inc()
        logger.debug("ai.usage", stage=stage, outcome=outcome, ms=round(ms, 1) if ms is not None else None)

    def record_indexing(self, source: str, pages: int, items: int) -> None:
        self.indexed.labels(source).inc(items)
        logger.info("indexing.observed", source=source, pages=pages, items=items)

    def should_sample(self) -> bool:
        return self.sample_rate > 0 and self._rng() < self.sample_rate

    def record_diagnostic(self, event: Mapping[str, Any]) -> None:
        logger.info("query.diagnostic", **dict(event))

    def render(self) -> tuple[bytes, str]:
        """Return the text exposition of all metrics and its content type."""
        return generate_latest(self.registry), CONTENT_TYPE_LATEST
