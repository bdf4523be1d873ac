"""Cursor-paginated ingestion: provider pages → indexer → bulk index."""

from __future__ import annotations

import asyncio
from typing import Protocol, Sequence

import structlog

from portal_search.errors import IngestionInProgressError
from portal_search.ingestion.indexers import Indexer
from portal_search.models import IndexedDoc, IngestionReport
from portal_search.pipeline.embed import EmbeddingStage
from portal_search.services.content_sources import ContentProvider
from portal_search.services.observability import Observability

logger = structlog.get_logger(__name__)


class BulkIndexer(Protocol):
    async def bulk_index(self, source: str, docs: Sequence[IndexedDoc]) -> int: ...


class IngestionRunner:
    """Drive one content source end to end.

    Runs are fail-fast: the first provider or backend error aborts the run
    and no indexing event is emitted. Only one run per runner may be active.

    Args:
        source:        Source name; documents land in ``{prefix}-{source}``.
        provider:      Cursor-paginated content provider.
        indexer:       Maps raw provider items to documents.
        client:        Search backend with ``bulk_index``.
        observability: Receives one ``record_indexing`` event per run.
        page_size:     Items requested per page.
        embedding:     When given, each document's title and text are embedded.
    """

    def __init__(
        self,
        source: str,
        provider: ContentProvider,
        indexer: Indexer,
        client: BulkIndexer,
        observability: Observability,
        page_size: int = 500,
        embedding: EmbeddingStage | None = None,
    ) -> None:
        self.source = source
        self._provider = provider
        self._indexer = indexer
        self._client = client
        self._observability = observability
        self._page_size = page_size
        self._embedding = embedding
        self._lock = asyncio.Lock()

    @property
    def running(self) -> bool:
        return self._lock.locked()

    async def run_once(self) -> IngestionReport:
        """Page through the provider until it stops returning a cursor.

        Raises:
            IngestionInProgressError: A run for this source is already active.
        """
        if self._lock.locked():
            raise IngestionInProgressError(self.source)
        async with self._lock:
            log = logger.bind(source=self.source)
            log.info("ingestion.start", page_size=self._page_size)

            cursor: str | None = None
            pages = 0
            total = 0
            while True:
                page = await self._provider.fetch_page(cursor, self._page_size)
                if page.items:
                    docs = self._indexer(page.items)
                    await self._embed(docs)
                    total += await self._client.bulk_index(self.source, docs)
                pages += 1
                cursor = page.next_cursor
                if not cursor:
                    break

            self._observability.record_indexing(self.source, pages, total)
            log.info("ingestion.complete", pages=pages, items=total)
            return IngestionReport(source=self.source, pages=pages, items=total)

    async def _embed(self, docs: list[IndexedDoc]) -> None:
        embedding = self._embedding
        if embedding is None:
            return
        for doc in docs:
            vector = await embedding.embed(f"{doc.title} {doc.text or ''}".strip())
            if vector:
                doc.embedding = vector
