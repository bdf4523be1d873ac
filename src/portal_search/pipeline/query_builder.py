"""Pure translation between pipeline models and OpenSearch JSON."""

from __future__ import annotations

from typing import Any

from portal_search.models import RankingWeights, SearchItem, SearchOptions, SearchPage

_FIELDS = ["title^3", "text^1", "tags^2"]
_HIGHLIGHT = {"fields": {"text": {}}}
_MIN_CANDIDATES = 100


def expand_query(query: str, expanded_terms: list[str]) -> str:
    """Join *query* and its expansion terms with ``OR``."""
    if not expanded_terms:
        return query
    return " OR ".join([query, *expanded_terms])


def _filter_clauses(options: SearchOptions) -> list[dict[str, Any]]:
    clauses: list[dict[str, Any]] = []
    for field, value in options.filters.items():
        if isinstance(value, (list, tuple)):
            clauses.append({"terms": {field: list(value)}})
        else:
            clauses.append({"term": {field: value}})
    for field, values in options.hints.filter_terms.items():
        clauses.append({"terms": {field: list(values)}})
    return clauses


def _should_clauses(options: SearchOptions, ranking: RankingWeights) -> list[dict[str, Any]]:
    should: list[dict[str, Any]] = []
    for source in options.hints.boost_sources:
        should.append({"term": {"source": {"value": source, "boost": ranking.source_weight}}})
    for tag in options.hints.boost_tags:
        should.append({"term": {"tags": {"value": tag, "boost": ranking.tag_weight}}})
    return should


def build_search_body(
    query: str,
    options: SearchOptions,
    ranking: RankingWeights | None = None,
) -> dict[str, Any]:
    """Build the ``_search`` request body for *query*.

    A non-empty ``hints.query_vector`` selects the k-NN branch, which keeps
    the filters but drops the lexical clauses.

    Args:
        query:   Effective query text.
        options: Paging, caller filters and upstream hints.
        ranking: Boost weights for hinted sources and tags.

    Returns:
        A JSON-serialisable request body.
    """
    ranking = ranking or RankingWeights()
    size = options.page_size
    filters = _filter_clauses(options)

    vector = options.hints.query_vector
    if vector:
        return {
            "size": size,
            "query": {"bool": {"filter": filters}},
            "knn": {
                "field": "embedding",
                "query_vector": list(vector),
                "k": size,
                "num_candidates": max(_MIN_CANDIDATES, size * 2),
            },
            "highlight": _HIGHLIGHT,
        }

    lexical = {
        "simple_query_string": {
            "query": expand_query(query, options.hints.expanded_terms),
            "default_operator": "and",
            "fields": _FIELDS,
        }
    }
    should = _should_clauses(options, ranking)
    if should or filters:
        body_query: dict[str, Any] = {"bool": {"must": lexical, "should": should, "filter": filters}}
    else:
        body_query = lexical

    return {
        "query": body_query,
        "from": options.page * size,
        "size": size,
        "highlight": _HIGHLIGHT,
    }


def _hit_to_item(hit: dict[str, Any]) -> SearchItem:
    source = hit.get("_source") or {}
    highlight = (hit.get("highlight") or {}).get("text")
    text = " ".join(highlight) if highlight else source.get("text")
    return SearchItem(
        title=source.get("title") or source.get("name") or "Untitled",
        url=source.get("location") or source.get("url"),
        text=text,
        score=float(hit.get("_score") or 0.0),
        source=hit.get("_index"),
        fields=source,
    )


def map_hits(response: dict[str, Any]) -> SearchPage:
    """Normalise a raw ``_search`` response into a :class:`SearchPage`."""
    hits = response.get("hits") or {}
    items = [_hit_to_item(h) for h in hits.get("hits") or []]
    total = hits.get("total")
    if isinstance(total, dict):
        total = total.get("value")
    if not isinstance(total, int):
        total = len(items)
    return SearchPage(items=items, total=total)
