"""Async OpenSearch HTTP client: search, bulk indexing, and index template."""

from __future__ import annotations

import json
from datetime import datetime, timezone
from types import TracebackType
from typing import Any, Sequence

import httpx
import structlog

from portal_search.errors import PermanentUpstreamError, TransientUpstreamError, UpstreamError
from portal_search.models import IndexedDoc, RankingWeights, SearchOptions, SearchPage
from portal_search.pipeline.query_builder import build_search_body, map_hits
from portal_search.services.retry import RETRYABLE_STATUSES

logger = structlog.get_logger(__name__)

# Timeout settings for OpenSearch requests (seconds).
_TIMEOUT = httpx.Timeout(connect=5.0, read=20.0, write=10.0, pool=5.0)

_KEYWORD = {"type": "keyword"}


class OpenSearchClient:
    """Async HTTP client for an OpenSearch cluster.

    Designed to be used as an async context manager::

        async with OpenSearchClient(base_url) as client:
            page = await client.search(query, options)

    Args:
        base_url:       Cluster URL, e.g. ``"http://localhost:9200"``.
        index_prefix:   Documents live in ``{prefix}-{source}`` indices.
        auth_type:      ``"none"``, ``"basic"`` or ``"bearer"``.
        username:       Basic auth user.
        password:       Basic auth password.
        token:          Bearer token.
        verify_tls:     Set ``False`` for self-signed development clusters.
        ranking:        Boost weights applied to hinted sources and tags.
        vector_enabled: Declare the ``embedding`` k-NN field in the template.
        vector_dim:     Dimension of that field.
        transport:      Optional httpx transport (tests use ``MockTransport``).
    """

    def __init__(
        self,
        base_url: str,
        index_prefix: str = "backstage",
        auth_type: str = "none",
        username: str | None = None,
        password: str | None = None,
        token: str | None = None,
        verify_tls: bool = True,
        ranking: RankingWeights | None = None,
        vector_enabled: bool = False,
        vector_dim: int = 384,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._prefix = index_prefix
        self._auth_type = auth_type
        self._username = username
        self._password = password
        self._token = token
        self._verify_tls = verify_tls
        self._ranking = ranking or RankingWeights()
        self._vector_enabled = vector_enabled
        self._vector_dim = vector_dim
        self._transport = transport
        self._client: httpx.AsyncClient | None = None

    @property
    def index_prefix(self) -> str:
        return self._prefix

    async def __aenter__(self) -> "OpenSearchClient":
        headers: dict[str, str] = {}
        auth: httpx.Auth | None = None
        if self._auth_type == "basic" and self._username and self._password:
            auth = httpx.BasicAuth(self._username, self._password)
        elif self._auth_type == "bearer" and self._token:
            headers["Authorization"] = f"Bearer {self._token}"
        self._client = httpx.AsyncClient(
            base_url=self._base_url,
            timeout=_TIMEOUT,
            headers=headers,
            auth=auth,
            verify=self._verify_tls,
            transport=self._transport,
        )
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: TracebackType | None,
    ) -> None:
        if self._client:
            await self._client.aclose()
            self._client = None

    @property
    def _http(self) -> httpx.AsyncClient:
        if self._client is None:
            raise RuntimeError("OpenSearchClient must be used as an async context manager.")
        return self._client

    async def _request(self, method: str, path: str, **kwargs: Any) -> Any:  # noqa: ANN401
        """Send one request and decode the JSON reply.

        Raises:
            TransientUpstreamError: On network errors and retryable statuses.
            PermanentUpstreamError: On any other non-2xx status.
        """
        try:
            resp = await self._http.request(method, path, **kwargs)
        except httpx.TransportError as exc:
            raise TransientUpstreamError(f"OpenSearch {method} {path}: {exc}") from exc

        if resp.status_code >= 400:
            message = f"OpenSearch HTTP {resp.status_code}: {resp.text[:500]}"
            if resp.status_code in RETRYABLE_STATUSES:
                raise TransientUpstreamError(message)
            raise PermanentUpstreamError(message, status_code=resp.status_code)

        if not resp.content:
            return {}
        try:
            return resp.json()
        except json.JSONDecodeError:
            return resp.text

    async def ping(self) -> bool:
        """GET / to verify the cluster is reachable.

        Raises:
            UpstreamError: If the request fails.
        """
        await self._request("GET", "/")
        return True

    async def search(self, query: str, options: SearchOptions | None = None) -> SearchPage:
        """Run *query* against every ``{prefix}-*`` index.

        Backend failures never propagate: they yield an empty page flagged
        ``degraded`` so the pipeline can still answer.
        """
        options = options or SearchOptions()
        body = build_search_body(query, options, self._ranking)
        path = f"/{self._prefix}-*/_search"

        logger.debug(
            "opensearch.search",
            knn="knn" in body,
            expanded=len(options.hints.expanded_terms),
            filters=len(options.filters) + len(options.hints.filter_terms),
        )
        try:
            data = await self._request("POST", path, json=body)
        except UpstreamError as exc:
            logger.warning("opensearch.search_failed", error=str(exc))
            return SearchPage(items=[], total=0, degraded=True)

        if not isinstance(data, dict):
            logger.warning("opensearch.unexpected_response", kind=type(data).__name__)
            return SearchPage(items=[], total=0, degraded=True)

        page = map_hits(data)
        logger.debug("opensearch.results_received", count=len(page.items), total=page.total)
        return page

    async def bulk_index(self, source: str, docs: Sequence[IndexedDoc]) -> int:
        """Write *docs* into ``{prefix}-{source}`` via ``_bulk``.

        Every document is stamped with ``source`` and ``updated_at``.

        Returns:
            Number of documents submitted.

        Raises:
            UpstreamError: If the bulk request fails.
        """
        if not docs:
            return 0
        index = f"{self._prefix}-{source}"
        stamp = datetime.now(timezone.utc).isoformat()

        lines: list[str] = []
        for doc in docs:
            action: dict[str, Any] = {"_index": index}
            if doc.id:
                action["_id"] = doc.id
            lines.append(json.dumps({"index": action}))
            payload = doc.model_dump(exclude_none=True)
            payload.update(source=source, updated_at=stamp)
            lines.append(json.dumps(payload, default=str))

        await self._request(
            "POST",
            "/_bulk",
            content="\n".join(lines) + "\n",
            headers={"Content-Type": "application/x-ndjson"},
        )
        logger.info("opensearch.bulk_indexed", index=index, count=len(docs))
        return len(docs)

    def index_template(self) -> dict[str, Any]:
        """Return the composable index template body for ``{prefix}-*``."""
        properties: dict[str, Any] = {
            "title": {"type": "text", "fields": {"keyword": {"type": "keyword", "ignore_above": 256}}},
            "text": {"type": "text"},
            "url": _KEYWORD,
            "tags": _KEYWORD,
            "kind": _KEYWORD,
            "namespace": _KEYWORD,
            "owner": _KEYWORD,
            "system": _KEYWORD,
            "lifecycle": _KEYWORD,
            "source": _KEYWORD,
            "updated_at": {"type": "date"},
        }
        if self._vector_enabled:
            properties["embedding"] = {
                "type": "knn_vector",
                "dimension": self._vector_dim,
                "method": {"name": "hnsw", "engine": "lucene", "space_type": "cosinesimil"},
            }
        return {
            "index_patterns": [f"{self._prefix}-*"],
            "template": {
                "settings": {
                    "number_of_shards": 1,
                    "index.knn": True,
                    "analysis": {"analyzer": {"default": {"type": "standard"}}},
                },
                "mappings": {"dynamic": "false", "properties": properties},
            },
            "priority": 100,
            "_meta": {"managed_by": "portal-search"},
        }

    async def ensure_index_template(self) -> None:
        """Create or replace the index template. Safe to call repeatedly."""
        name = f"{self._prefix}-template"
        await self._request("PUT", f"/_index_template/{name}", json=self.index_template())
        logger.info("opensearch.template_ensured", name=name, vector=self._vector_enabled)
