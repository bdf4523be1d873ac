"""Pipeline orchestrator: wires rewrite, embed, search and re-rank together."""

from __future__ import annotations

import time
from typing import Any, Mapping, Protocol

import structlog

from portal_search.models import QueryResponse, RewriteOutput, SearchHints, SearchOptions, SearchPage
from portal_search.pipeline.embed import EmbeddingStage
from portal_search.pipeline.rerank import ReRankContext, ReRankStage
from portal_search.pipeline.rewrite import QueryRewriteStage
from portal_search.services.observability import Observability

logger = structlog.get_logger(__name__)


class SearchBackend(Protocol):
    async def search(self, query: str, options: SearchOptions | None = None) -> SearchPage: ...


def _ms(since: float) -> float:
    return round((time.perf_counter() - since) * 1000, 3)


class QueryPipeline:
    """Run one query through every enabled stage.

    Stages:
        1. Rewrite (AI provider, guarded; falls back to the redacted query).
        2. Embed the effective query when semantic search is enabled.
        3. Search the backend with the rewrite hints and optional vector.
        4. Re-rank the head of the result list.

    Args:
        rewrite:       Query rewrite stage.
        search:        Search backend client.
        rerank:        Re-rank stage.
        observability: Metrics and event sink.
        embedding:     Embedding stage; ``None`` disables the vector branch.
    """

    def __init__(
        self,
        rewrite: QueryRewriteStage,
        search: SearchBackend,
        rerank: ReRankStage,
        observability: Observability,
        embedding: EmbeddingStage | None = None,
    ) -> None:
        self._rewrite = rewrite
        self._search = search
        self._rerank = rerank
        self._observability = observability
        self._embedding = embedding

    async def run(
        self,
        query: str,
        filters: Mapping[str, Any] | None = None,
        page: int = 0,
        page_size: int = 20,
    ) -> QueryResponse:
        """Execute the pipeline for *query*.

        Stage failures are absorbed by the stages themselves; anything that
        still escapes is recorded under the ``query`` stage and re-raised.
        """
        t_start = time.perf_counter()
        filters = dict(filters or {})
        timings: dict[str, float] = {}

        log = logger.bind(query_len=len(query), page=page, page_size=page_size)
        log.debug("pipeline.start")

        try:
            if self._rewrite.enabled:
                t0 = time.perf_counter()
                rewritten = await self._rewrite.rewrite(query, filters)
                timings["rewrite_ms"] = _ms(t0)
            else:
                rewritten = RewriteOutput(query=self._rewrite.truncate(query))
            effective = rewritten.query

            hints = SearchHints(
                expanded_terms=rewritten.expanded,
                boost_sources=rewritten.boosts.sources,
                boost_tags=rewritten.boosts.tags,
                filter_terms=rewritten.filters,
            )

            if self._embedding is not None:
                t0 = time.perf_counter()
                vector = await self._embedding.embed(effective)
                timings["embed_ms"] = _ms(t0)
                if vector:
                    hints.query_vector = vector

            t0 = time.perf_counter()
            options = SearchOptions(filters=filters, page=page, page_size=page_size, hints=hints)
            result = await self._search.search(effective, options)
            timings["search_ms"] = _ms(t0)

            items = result.items
            if self._rerank.enabled:
                t0 = time.perf_counter()
                ctx = ReRankContext(intent=rewritten.intent, boosts=rewritten.boosts)
                items = await self._rerank.rerank(effective, items, ctx)
                timings["rerank_ms"] = _ms(t0)
        except Exception as exc:
            self._observability.record_error("query", exc)
            raise

        timings["total_ms"] = _ms(t_start)
        self._observability.record_query(query, effective, timings)

        diagnostic: dict[str, Any] | None = None
        if self._observability.should_sample():
            diagnostic = {
                "effective_query": effective,
                "intent": rewritten.intent,
                "expanded": rewritten.expanded,
                "boosts": rewritten.boosts.model_dump(),
                "pii_found": len(rewritten.pii_found),
                "vector": hints.query_vector is not None,
                "degraded": result.degraded,
                "timings": timings,
            }
            self._observability.record_diagnostic(diagnostic)

        log.info(
            "pipeline.complete",
            results=len(items),
            total=result.total,
            degraded=result.degraded,
            latency_ms=timings["total_ms"],
        )
        return QueryResponse(
            results=items,
            total=result.total,
            timings=timings,
            degraded=result.degraded,
            diagnostic=diagnostic,
        )
