"""Tests for heuristic intent detection, expansion and rewrite merging."""

from __future__ import annotations

from pathlib import Path

import portal_search.config
from portal_search.config import Settings
from portal_search.models import BoostHints, RewriteOutput
from portal_search.pipeline.heuristics import HeuristicRewriter, dedupe, load_synonyms, merge_rewrites


class TestDetectIntents:
    """Regex-driven intent detection."""

    def test_api(self) -> None:
        assert HeuristicRewriter.detect_intents("payments API") == ["api"]

    def test_how_to(self) -> None:
        assert HeuristicRewriter.detect_intents("How to deploy to k8s") == ["how-to"]

    def test_incident(self) -> None:
        assert HeuristicRewriter.detect_intents("sev1 runbook for checkout") == ["incident"]

    def test_multiple_in_pattern_order(self) -> None:
        assert HeuristicRewriter.detect_intents("api guide for security team") == [
            "how-to",
            "owner",
            "api",
            "policy",
        ]

    def test_none(self) -> None:
        assert HeuristicRewriter.detect_intents("payments") == []

    def test_api_needs_word_boundary(self) -> None:
        assert "api" not in HeuristicRewriter.detect_intents("rapid release")


class TestHeuristicRewrite:
    """End-to-end heuristic rewrite output."""

    def test_api_query(self) -> None:
        out = HeuristicRewriter().rewrite("payments  api")
        assert out.query == "payments api"
        assert out.intent == ["api"]
        assert out.expanded == ["openapi", "swagger", "rest", "endpoint", "spec"]
        assert out.boosts.sources == ["apis"]
        assert out.filters == {}

    def test_expansion_skips_words_in_query(self) -> None:
        out = HeuristicRewriter().rewrite("rest api")
        assert "rest" not in out.expanded

    def test_owner_adds_kind_filter(self) -> None:
        out = HeuristicRewriter().rewrite("who is the owner of payments")
        assert out.filters == {"kind": ["Component", "System"]}

    def test_incident_boosts_runbook_tag(self) -> None:
        out = HeuristicRewriter().rewrite("incident checkout")
        assert out.boosts.tags == ["runbook"]

    def test_custom_synonyms_appended(self) -> None:
        out = HeuristicRewriter({"api": ["graphql"]}).rewrite("orders api")
        assert out.expanded[-1] == "graphql"

    def test_plain_query_has_no_hints(self) -> None:
        out = HeuristicRewriter().rewrite("payments")
        assert not out.has_hints


class TestMergeRewrites:
    """AI output takes precedence; lists are unioned."""

    def test_none_returns_heuristic(self) -> None:
        heuristic = HeuristicRewriter().rewrite("payments api")
        assert merge_rewrites(heuristic, None) is heuristic

    def test_ai_wins_on_conflict(self) -> None:
        heuristic = RewriteOutput(
            query="payments api",
            intent=["api"],
            expanded=["openapi", "rest"],
            boosts=BoostHints(sources=["apis"]),
            filters={"kind": ["Component"]},
        )
        ai = RewriteOutput(
            query="payments rest api",
            intent=["api", "how-to"],
            expanded=["rest", "http"],
            boosts=BoostHints(sources=["techdocs"], tags=["payments"]),
            filters={"kind": ["API"]},
        )
        merged = merge_rewrites(heuristic, ai)
        assert merged.query == "payments rest api"
        assert merged.intent == ["api", "how-to"]
        assert merged.expanded == ["rest", "http", "openapi"]
        assert merged.boosts.sources == ["techdocs", "apis"]
        assert merged.boosts.tags == ["payments"]
        assert merged.filters == {"kind": ["API"]}

    def test_empty_ai_query_falls_back(self) -> None:
        heuristic = RewriteOutput(query="payments")
        merged = merge_rewrites(heuristic, RewriteOutput(query=""))
        assert merged.query == "payments"


class TestLoadSynonyms:
    def test_reads_yaml(self, tmp_path: Path) -> None:
        path = tmp_path / "synonyms.yaml"
        path.write_text("synonyms:\n  api: [graphql, grpc]\n", encoding="utf-8")
        assert load_synonyms(path) == {"api": ("graphql", "grpc")}

    def test_missing_file_is_empty(self, tmp_path: Path) -> None:
        assert load_synonyms(tmp_path / "absent.yaml") == {}


def test_dedupe_preserves_order() -> None:
    assert dedupe(["b", "a", "b", "c", "a"]) == ["b", "a", "c"]

    def test_default_table_ships_with_package(self) -> None:
        path = Settings.model_fields["synonyms_path"].default
        assert path.parent == Path(portal_search.config.__file__).resolve().parent
        assert path.is_file()
        assert load_synonyms(path)["api"] == ("graphql", "grpc")
