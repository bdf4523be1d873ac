"""Build the service graph from :class:`Settings`."""

from __future__ import annotations

from contextlib import AsyncExitStack
from dataclasses import dataclass, field
from typing import Any, Mapping

import structlog

from portal_search.config import Settings
from portal_search.ingestion.indexers import INDEXERS
from portal_search.ingestion.orchestrator import IngestionRunner
from portal_search.models import RankingWeights
from portal_search.pipeline.embed import EmbeddingStage
from portal_search.pipeline.heuristics import HeuristicRewriter, load_synonyms
from portal_search.pipeline.orchestrator import QueryPipeline
from portal_search.pipeline.rerank import CrossEncoderReRankProvider, HeuristicReRankProvider, ReRankProvider, ReRankStage
from portal_search.pipeline.rewrite import QueryRewriteStage
from portal_search.services.cache import Cache, InMemoryTTLCache
from portal_search.services.circuit_breaker import CircuitBreaker
from portal_search.services.claude import ClaudeRewriteProvider, RewriteProvider
from portal_search.services.content_sources import ContentProvider, HttpContentProvider
from portal_search.services.embeddings import EmbeddingProvider, HashEmbeddingProvider, SentenceTransformerEmbeddingProvider
from portal_search.services.observability import Observability
from portal_search.services.opensearch import OpenSearchClient
from portal_search.services.pii import PIIRedactor
from portal_search.services.redis_client import RedisCache

logger = structlog.get_logger(__name__)


@dataclass
class Services:
    """Everything the HTTP layer needs, plus the resources it must open and close."""

    settings: Settings
    cache: Cache
    search: Any
    observability: Observability
    pipeline: QueryPipeline
    ingestion: dict[str, IngestionRunner] = field(default_factory=dict)
    resources: list[Any] = field(default_factory=list)
    _stack: AsyncExitStack | None = field(default=None, init=False, repr=False)

    async def start(self) -> None:
        """Open the cache connection and every async-context-managed client."""
        stack = AsyncExitStack()
        if isinstance(self.cache, RedisCache):
            await self.cache.connect()
            stack.push_async_callback(self.cache.disconnect)
        for resource in self.resources:
            await stack.enter_async_context(resource)
        self._stack = stack

    async def stop(self) -> None:
        if self._stack is not None:
            await self._stack.aclose()
            self._stack = None


def build_cache(config: Settings) -> Cache:
    if config.cache_backend == "redis":
        return RedisCache(config.redis_url)
    return InMemoryTTLCache(default_ttl_seconds=300)


def build_rewrite_provider(config: Settings) -> RewriteProvider | None:
    if not config.enable_rewrite:
        return None
    if not config.anthropic_api_key:
        logger.warning("factory.rewrite_without_key", hint="set ANTHROPIC_API_KEY")
        return None
    heuristics = HeuristicRewriter(load_synonyms(config.synonyms_path))
    return ClaudeRewriteProvider(
        api_key=config.anthropic_api_key,
        model=config.anthropic_model,
        temperature=config.rewrite_temperature,
        heuristics=heuristics,
    )


def build_embedding_provider(config: Settings) -> EmbeddingProvider:
    if config.embedding_provider == "sentence-transformers":
        return SentenceTransformerEmbeddingProvider(config.embedding_model, dimension=config.vector_dim)
    return HashEmbeddingProvider(dimension=config.vector_dim)


def build_rerank_provider(config: Settings) -> ReRankProvider:
    if config.rerank_provider == "cross-encoder":
        return CrossEncoderReRankProvider(config.cross_encoder_model)
    return HeuristicReRankProvider(
        freshness_days=config.freshness_days,
        index_prefix=config.opensearch_index_prefix,
    )


def _content_providers(config: Settings) -> dict[str, ContentProvider]:
    urls = {
        "catalog": config.catalog_source_url,
        "techdocs": config.techdocs_source_url,
        "apis": config.apis_source_url,
    }
    return {source: HttpContentProvider(url) for source, url in urls.items() if url}


def build_services(
    config: Settings,
    *,
    search: Any = None,  # noqa: ANN401
    rewrite_provider: RewriteProvider | None = None,
    embedding_provider: EmbeddingProvider | None = None,
    content_providers: Mapping[str, ContentProvider] | None = None,
    observability: Observability | None = None,
) -> Services:
    """Wire every component according to *config*.

    Keyword arguments replace the corresponding default so tests (or an
    embedding application) can inject their own collaborators. Injected
    objects are not opened or closed by :meth:`Services.start`.
    """
    resources: list[Any] = []
    cache = build_cache(config)
    observability = observability or Observability(sample_rate=config.observability_sample_rate)

    if search is None:
        search = OpenSearchClient(
            config.opensearch_url,
            index_prefix=config.opensearch_index_prefix,
            auth_type=config.opensearch_auth_type,
            username=config.opensearch_username,
            password=config.opensearch_password,
            token=config.opensearch_token,
            verify_tls=config.opensearch_verify_tls,
            ranking=RankingWeights(
                source_weight=config.ranking_source_weight,
                tag_weight=config.ranking_tag_weight,
            ),
            vector_enabled=config.enable_semantic,
            vector_dim=config.vector_dim,
        )
        resources.append(search)

    provider = rewrite_provider if rewrite_provider is not None else build_rewrite_provider(config)
    rewrite = QueryRewriteStage(
        provider,
        cache=cache,
        breaker=CircuitBreaker(
            failure_threshold=config.rewrite_breaker_threshold,
            reset_timeout=config.rewrite_breaker_reset_s,
            name="rewrite",
        ),
        redactor=PIIRedactor(
            redact_emails=config.redact_emails,
            redact_tokens=config.redact_tokens,
            redact_ips=config.redact_ips,
            redact_phone_numbers=config.redact_phone_numbers,
            redact_ssns=config.redact_ssns,
        ),
        enabled=config.enable_rewrite,
        timeout_s=config.rewrite_budget_ms / 1000,
        max_query_len=config.max_query_len,
        observability=observability,
    )

    embedding: EmbeddingStage | None = None
    if config.enable_semantic:
        embedding = EmbeddingStage(
            embedding_provider or build_embedding_provider(config),
            cache=cache,
            breaker=CircuitBreaker(
                failure_threshold=config.embedding_breaker_threshold,
                reset_timeout=config.embedding_breaker_reset_s,
                name="embedding",
            ),
            timeout_s=config.embed_budget_ms / 1000,
            observability=observability,
        )

    rerank = ReRankStage(
        build_rerank_provider(config) if config.enable_rerank else None,
        enabled=config.enable_rerank,
        top_k=config.rerank_top_k,
        timeout_s=config.rerank_budget_ms / 1000,
        observability=observability,
    )

    pipeline = QueryPipeline(rewrite, search, rerank, observability, embedding=embedding)

    if content_providers is None:
        content_providers = _content_providers(config)
        resources.extend(content_providers.values())

    ingestion = {
        source: IngestionRunner(
            source,
            provider=content,
            indexer=INDEXERS[source],
            client=search,
            observability=observability,
            page_size=config.ingest_page_size,
            embedding=embedding,
        )
        for source, content in content_providers.items()
        if source in INDEXERS
    }

    logger.info(
        "factory.built",
        rewrite=rewrite.enabled,
        rerank=rerank.enabled,
        semantic=embedding is not None,
        cache=config.cache_backend,
        ingestion=sorted(ingestion),
    )
    return Services(
        settings=config,
        cache=cache,
        search=search,
        observability=observability,
        pipeline=pipeline,
        ingestion=ingestion,
        resources=resources,
    )
