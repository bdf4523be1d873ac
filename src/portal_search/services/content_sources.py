"""Content providers that feed the ingestion runners."""

from __future__ import annotations

from types import TracebackType
from typing import Protocol

import httpx
import structlog

from portal_search.errors import PermanentUpstreamError, TransientUpstreamError
from portal_search.models import ContentPage
from portal_search.services.retry import RETRYABLE_STATUSES

logger = structlog.get_logger(__name__)

_TIMEOUT = httpx.Timeout(connect=5.0, read=30.0, write=5.0, pool=5.0)


class ContentProvider(Protocol):
    """Cursor-paginated source of raw items."""

    async def fetch_page(self, cursor: str | None, limit: int) -> ContentPage: ...


class HttpContentProvider:
    """Fetch pages from an HTTP endpoint returning ``{"items", "nextCursor"}``.

    Designed to be used as an async context manager::

        async with HttpContentProvider(url) as provider:
            page = await provider.fetch_page(None, 500)

    Args:
        url:       Endpoint queried as ``GET {url}?limit=N&cursor=C``.
        headers:   Extra request headers, e.g. an ``Authorization`` token.
        transport: Optional httpx transport (tests use ``MockTransport``).
    """

    def __init__(
        self,
        url: str,
        headers: dict[str, str] | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._url = url
        self._headers = headers or {}
        self._transport = transport
        self._client: httpx.AsyncClient | None = None

    async def __aenter__(self) -> "HttpContentProvider":
        self._client = httpx.AsyncClient(timeout=_TIMEOUT, headers=self._headers, transport=self._transport)
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
            raise RuntimeError("HttpContentProvider must be used as an async context manager.")
        return self._client

    async def fetch_page(self, cursor: str | None, limit: int) -> ContentPage:
        """Fetch one page.

        Raises:
            TransientUpstreamError: On network errors and retryable statuses.
            PermanentUpstreamError: On any other non-2xx status or a malformed body.
        """
        params: dict[str, str | int] = {"limit": limit}
        if cursor:
            params["cursor"] = cursor

        try:
            resp = await self._http.get(self._url, params=params)
        except httpx.TransportError as exc:
            raise TransientUpstreamError(f"content source {self._url}: {exc}") from exc
        if resp.status_code >= 400:
            message = f"content source HTTP {resp.status_code}: {resp.text[:200]}"
            if resp.status_code in RETRYABLE_STATUSES:
                raise TransientUpstreamError(message)
            raise PermanentUpstreamError(message, status_code=resp.status_code)

        try:
            data = resp.json()
        except ValueError as exc:
            raise PermanentUpstreamError(f"content source {self._url}: body is not JSON") from exc
        if not isinstance(data, dict) or not isinstance(data.get("items", []), list):
            raise PermanentUpstreamError(f"content source {self._url}: malformed page")
        page = ContentPage(items=data.get("items") or [], next_cursor=data.get("nextCursor") or None)
        logger.debug("content_source.page", url=self._url, items=len(page.items), more=page.next_cursor is not None)
        return page
