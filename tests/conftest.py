"""Shared pytest fixtures and configuration."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any
from unittest.mock import AsyncMock

import pytest

from portal_search.models import BoostHints, RewriteOutput, SearchItem, SearchPage
from portal_search.services.observability import Observability


# ---------------------------------------------------------------------------
# Pytest configuration
# ---------------------------------------------------------------------------

pytest_plugins = ("pytest_asyncio",)

FIXED_NOW = datetime(2024, 6, 1, 12, 0, tzinfo=timezone.utc)


class FakeClock:
    """Manually advanced monotonic clock."""

    def __init__(self, start: float = 1000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


# ---------------------------------------------------------------------------
# Model fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def sample_items() -> list[SearchItem]:
    """Three hits in backend order, as the search client returns them."""
    return [
        SearchItem(
            title="Payments service",
            url="https://portal.example.com/catalog/payments",
            text="Handles card payments and refunds.",
            score=3.0,
            source="backstage-catalog",
            fields={"source": "catalog", "tags": ["payments"], "kind": "Component"},
        ),
        SearchItem(
            title="Deploying to Kubernetes",
            url="https://portal.example.com/docs/deploy",
            text="How to deploy a service with the golden path.",
            score=2.5,
            source="backstage-techdocs",
            fields={"source": "techdocs", "tags": ["deployment", "kubernetes"]},
        ),
        SearchItem(
            title="Payments API",
            url="https://portal.example.com/api/payments",
            text="OpenAPI definition for the payments service.",
            score=2.0,
            source="backstage-apis",
            fields={"source": "apis", "tags": ["payments", "rest"]},
        ),
    ]


@pytest.fixture
def sample_rewrite() -> RewriteOutput:
    """Rewrite output for an API-flavoured query."""
    return RewriteOutput(
        query="payments api",
        intent=["api"],
        expanded=["openapi", "rest"],
        boosts=BoostHints(sources=["apis"], tags=["rest"]),
        filters={"kind": ["API"]},
    )


def make_hit(title: str, score: float = 1.0, index: str = "backstage-catalog", **source: Any) -> dict[str, Any]:
    """Build one raw OpenSearch hit."""
    return {"_index": index, "_score": score, "_source": {"title": title, **source}}


# ---------------------------------------------------------------------------
# Mock service fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def observability() -> Observability:
    """Observability with its own registry and sampling disabled."""
    return Observability(sample_rate=0.0)


@pytest.fixture
def mock_search(sample_items: list[SearchItem]) -> AsyncMock:
    """Mock search backend that doesn't require a real OpenSearch cluster."""
    mock = AsyncMock()
    mock.search.return_value = SearchPage(items=sample_items, total=len(sample_items))
    mock.ping.return_value = True
    mock.ensure_index_template.return_value = None
    mock.bulk_index.side_effect = lambda source, docs: len(docs)
    return mock


@pytest.fixture
def mock_rewrite_provider(sample_rewrite: RewriteOutput) -> AsyncMock:
    """Mock AI provider returning a fixed rewrite."""
    mock = AsyncMock()
    mock.rewrite.return_value = sample_rewrite
    return mock
