"""Pydantic v2 data models for the portal search pipeline."""

from __future__ import annotations

from typing import Any, Optional, Union

from pydantic import BaseModel, ConfigDict, Field

FilterValue = Union[str, int, float, bool]


# ---------------------------------------------------------------------------
# Search results
# ---------------------------------------------------------------------------


class SearchItem(BaseModel):
    """A single normalised hit from the search backend."""

    title: str
    url: Optional[str] = None
    text: Optional[str] = None
    score: float = 0.0
    source: Optional[str] = None
    fields: dict[str, Any] = Field(default_factory=dict)

    @property
    def tags(self) -> list[str]:
        raw = self.fields.get("tags")
        if isinstance(raw, list):
            return [str(t) for t in raw]
        return []


class SearchPage(BaseModel):
    """One page of results plus the backend's total hit count."""

    items: list[SearchItem] = Field(default_factory=list)
    total: int = 0
    degraded: bool = False


class IndexedDoc(BaseModel):
    """A document written to the search backend by the ingestion path."""

    model_config = ConfigDict(extra="allow")

    title: str
    id: Optional[str] = None
    text: Optional[str] = None
    url: Optional[str] = None
    tags: list[str] = Field(default_factory=list)
    kind: Optional[str] = None
    namespace: Optional[str] = None
    owner: Optional[str] = None
    system: Optional[str] = None
    lifecycle: Optional[str] = None
    source: Optional[str] = None
    embedding: Optional[list[float]] = None


# ---------------------------------------------------------------------------
# Rewrite / search hints
# ---------------------------------------------------------------------------


class BoostHints(BaseModel):
    """Sources and tags the ranking should favour."""

    sources: list[str] = Field(default_factory=list)
    tags: list[str] = Field(default_factory=list)


class RewriteOutput(BaseModel):
    """Result of the query rewrite stage."""

    query: str
    intent: list[str] = Field(default_factory=list)
    expanded: list[str] = Field(default_factory=list)
    boosts: BoostHints = Field(default_factory=BoostHints)
    filters: dict[str, list[FilterValue]] = Field(default_factory=dict)
    pii_found: list[str] = Field(default_factory=list)

    @property
    def has_hints(self) -> bool:
        return bool(
            self.intent
            or self.expanded
            or self.boosts.sources
            or self.boosts.tags
            or self.filters
        )


class SearchHints(BaseModel):
    """Everything upstream stages contribute to the backend request."""

    expanded_terms: list[str] = Field(default_factory=list)
    boost_sources: list[str] = Field(default_factory=list)
    boost_tags: list[str] = Field(default_factory=list)
    filter_terms: dict[str, list[FilterValue]] = Field(default_factory=dict)
    query_vector: Optional[list[float]] = None


class SearchOptions(BaseModel):
    """Caller options for a single search request."""

    filters: dict[str, Any] = Field(default_factory=dict)
    page: int = Field(default=0, ge=0)
    page_size: int = Field(default=20, ge=1, le=500)
    hints: SearchHints = Field(default_factory=SearchHints)


class RankingWeights(BaseModel):
    """Boost weights applied to hinted sources and tags at query time."""

    source_weight: float = 2.0
    tag_weight: float = 1.5


# ---------------------------------------------------------------------------
# Ingestion
# ---------------------------------------------------------------------------


class ContentPage(BaseModel):
    """One page from a content provider; ``next_cursor=None`` ends the loop."""

    items: list[dict[str, Any]] = Field(default_factory=list)
    next_cursor: Optional[str] = None


class IngestionReport(BaseModel):
    """Totals for one completed ingestion run."""

    source: str
    pages: int
    items: int


# ---------------------------------------------------------------------------
# API request / response models
# ---------------------------------------------------------------------------


class QueryRequest(BaseModel):
    """Body of POST /query."""

    model_config = ConfigDict(populate_by_name=True)

    query: str = Field(..., min_length=1)
    filters: dict[str, Any] = Field(default_factory=dict)
    page: int = Field(default=0, ge=0)
    page_size: int = Field(default=20, ge=1, le=100, alias="pageSize")


class QueryResponse(BaseModel):
    """Response from POST /query."""

    results: list[SearchItem]
    total: int
    timings: dict[str, float]
    degraded: bool = False
    diagnostic: Optional[dict[str, Any]] = None


class IndexRequest(BaseModel):
    """Body of POST /index."""

    source: str = Field(..., min_length=1)
    docs: list[IndexedDoc]


class IndexResponse(BaseModel):
    """Response from POST /index."""

    ok: bool = True
    indexed: int


class ReindexResponse(BaseModel):
    """Response from POST /admin/reindex/{source}."""

    ok: bool = True
    source: str
    pages: int
    items: int


class HealthResponse(BaseModel):
    """Response from GET /health."""

    status: str
    opensearch: str
    cache: str
    uptime_seconds: float
