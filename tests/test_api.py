"""Tests for the HTTP surface using FastAPI's TestClient."""

from __future__ import annotations

from typing import Iterator
from unittest.mock import AsyncMock, MagicMock

import pytest
from fastapi.testclient import TestClient

from portal_search.config import Settings
from portal_search.factory import Services, build_services
from portal_search.main import create_app
from portal_search.models import ContentPage


@pytest.fixture
def catalog_provider() -> AsyncMock:
    provider = AsyncMock()
    provider.fetch_page.side_effect = [
        ContentPage(items=[{"metadata": {"name": "payments"}}], next_cursor="c1"),
        ContentPage(items=[{"metadata": {"name": "orders"}}], next_cursor=None),
    ]
    return provider


@pytest.fixture
def services(mock_search: AsyncMock, catalog_provider: AsyncMock) -> Services:
    config = Settings(_env_file=None, enable_rewrite=False, enable_rerank=True, enable_semantic=False)
    return build_services(config, search=mock_search, content_providers={"catalog": catalog_provider})


@pytest.fixture
def client(services: Services) -> Iterator[TestClient]:
    with TestClient(create_app(services)) as test_client:
        yield test_client


class TestHealthAndMetrics:
    def test_health_ok(self, client: TestClient) -> None:
        resp = client.get("/health")
        assert resp.status_code == 200
        body = resp.json()
        assert body["status"] == "ok"
        assert body["opensearch"] == "reachable"
        assert body["cache"] == "connected"

    def test_health_degraded(self, client: TestClient, mock_search: AsyncMock) -> None:
        mock_search.ping.side_effect = ConnectionError("down")
        body = client.get("/health").json()
        assert body["status"] == "degraded"
        assert body["opensearch"] == "unreachable"

    def test_metrics_exposition(self, client: TestClient) -> None:
        client.post("/query", json={"query": "payments"})
        resp = client.get("/metrics")
        assert resp.status_code == 200
        assert resp.headers["content-type"].startswith("text/plain")
        assert "portal_search_query_total" in resp.text


class TestQueryEndpoint:
    def test_returns_results_and_timings(self, client: TestClient, mock_search: AsyncMock) -> None:
        resp = client.post("/query", json={"query": "payments", "pageSize": 5, "page": 1})
        assert resp.status_code == 200
        body = resp.json()
        assert body["total"] == 3
        assert len(body["results"]) == 3
        assert {"search_ms", "rerank_ms", "total_ms"} <= set(body["timings"])
        assert body["degraded"] is False
        assert "diagnostic" not in body

        options = mock_search.search.await_args.args[1]
        assert options.page == 1
        assert options.page_size == 5

    def test_missing_query_is_400(self, client: TestClient) -> None:
        resp = client.post("/query", json={"filters": {}})
        assert resp.status_code == 400
        assert resp.json()["error"] == "Invalid request"

    def test_blank_query_is_400(self, client: TestClient) -> None:
        resp = client.post("/query", json={"query": "   "})
        assert resp.status_code == 400

    def test_pipeline_failure_is_500(self, client: TestClient, mock_search: AsyncMock) -> None:
        mock_search.search.side_effect = RuntimeError("bug")
        resp = client.post("/query", json={"query": "payments"})
        assert resp.status_code == 500
        assert resp.json()["error"] == "Query failed"


class TestAdminEndpoints:
    def test_ensure_template(self, client: TestClient, mock_search: AsyncMock) -> None:
        resp = client.post("/admin/ensure-template")
        assert resp.status_code == 200
        assert resp.json() == {"ok": True}
        mock_search.ensure_index_template.assert_awaited_once()

    def test_ensure_template_failure(self, client: TestClient, mock_search: AsyncMock) -> None:
        mock_search.ensure_index_template.side_effect = RuntimeError("403 forbidden")
        resp = client.post("/admin/ensure-template")
        assert resp.status_code == 500
        assert resp.json()["message"] == "403 forbidden"

    def test_reindex_catalog(self, client: TestClient, mock_search: AsyncMock) -> None:
        resp = client.post("/admin/reindex/catalog")
        assert resp.status_code == 200
        assert resp.json() == {"ok": True, "source": "catalog", "pages": 2, "items": 2}
        mock_search.ensure_index_template.assert_awaited_once()
        assert mock_search.bulk_index.await_count == 2

    def test_reindex_unknown_source(self, client: TestClient) -> None:
        assert client.post("/admin/reindex/wiki").status_code == 404

    def test_reindex_not_configured(self, client: TestClient) -> None:
        resp = client.post("/admin/reindex/techdocs")
        assert resp.status_code == 400
        assert "not configured" in resp.json()["error"]

    def test_reindex_already_running(self, client: TestClient, services: Services) -> None:
        services.ingestion["apis"] = MagicMock(running=True)
        assert client.post("/admin/reindex/apis").status_code == 409

    def test_reindex_failure(self, client: TestClient, catalog_provider: AsyncMock) -> None:
        catalog_provider.fetch_page.side_effect = ConnectionError("catalog down")
        resp = client.post("/admin/reindex/catalog")
        assert resp.status_code == 500
        assert resp.json()["error"] == "catalog reindex failed"

    def test_index_documents(self, client: TestClient, mock_search: AsyncMock) -> None:
        docs = [{"title": "Payments", "id": "p1"}, {"title": "Orders"}]
        resp = client.post("/index", json={"source": "catalog", "docs": docs})
        assert resp.status_code == 200
        assert resp.json() == {"ok": True, "indexed": 2}
        source, sent = mock_search.bulk_index.await_args.args
        assert source == "catalog"
        assert [d.title for d in sent] == ["Payments", "Orders"]

    def test_index_requires_docs(self, client: TestClient) -> None:
        assert client.post("/index", json={"source": "catalog"}).status_code == 400
