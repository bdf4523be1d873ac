"""Deterministic query intelligence: intents, synonym expansion, boosts.

Provider-independent. Any rewrite provider can run this first and blend its
own output on top with :func:`merge_rewrites`.
"""

from __future__ import annotations

import re
from functools import lru_cache
from pathlib import Path
from typing import Iterable, Mapping

import structlog
import yaml

from portal_search.models import BoostHints, FilterValue, RewriteOutput

logger = structlog.get_logger(__name__)

# Ordered: detected intents are reported in this order.
_INTENT_PATTERNS: tuple[tuple[str, re.Pattern[str]], ...] = (
    ("how-to", re.compile(r"how\s+to|how do i|guide|tutorial")),
    ("incident", re.compile(r"incident|runbook|on[- ]?call|pagerduty|sev\d")),
    ("owner", re.compile(r"owner|team|contact")),
    ("api", re.compile(r"\bapis?\b|openapi|swagger")),
    ("policy", re.compile(r"policy|security|compliance")),
)

# Expansion order follows this sequence, not detection order.
_EXPANSION_ORDER: tuple[str, ...] = ("api", "how-to", "incident", "owner", "policy")

DEFAULT_SYNONYMS: dict[str, tuple[str, ...]] = {
    "api": ("openapi", "swagger", "rest", "endpoint", "spec"),
    "how-to": ("guide", "tutorial", "how-to"),
    "incident": ("runbook", "incident", "oncall", "pagerduty"),
    "owner": ("owner", "maintainer", "team", "contact"),
    "policy": ("policy", "security", "compliance", "standard"),
}

_SOURCE_BOOSTS: dict[str, str] = {"how-to": "techdocs", "api": "apis"}
_TAG_BOOSTS: dict[str, str] = {"incident": "runbook"}


def dedupe(items: Iterable[str]) -> list[str]:
    """Drop repeats while preserving first-seen order."""
    seen: set[str] = set()
    out: list[str] = []
    for item in items:
        if item not in seen:
            seen.add(item)
            out.append(item)
    return out


@lru_cache(maxsize=8)
def load_synonyms(path: Path) -> dict[str, tuple[str, ...]]:
    """Load the ``synonyms:`` mapping from a YAML file.

    A missing or malformed file yields an empty table; the built-in synonyms
    still apply.
    """
    try:
        with Path(path).open("r", encoding="utf-8") as fh:
            raw = yaml.safe_load(fh) or {}
        table = {
            str(intent): tuple(str(term) for term in (terms or []))
            for intent, terms in (raw.get("synonyms") or {}).items()
        }
        logger.info("heuristics.synonyms_loaded", path=str(path), intents=list(table))
        return table
    except Exception as exc:  # noqa: BLE001
        logger.warning("heuristics.synonyms_load_failed", path=str(path), error=str(exc))
        return {}


class HeuristicRewriter:
    """Regex intent detection plus a configurable synonym table.

    Args:
        synonyms: Extra terms per intent, appended to :data:`DEFAULT_SYNONYMS`.
    """

    def __init__(self, synonyms: Mapping[str, Iterable[str]] | None = None) -> None:
        table = {intent: list(terms) for intent, terms in DEFAULT_SYNONYMS.items()}
        for intent, terms in (synonyms or {}).items():
            table[intent] = dedupe([*table.get(intent, []), *terms])
        self._synonyms = table

    @staticmethod
    def normalize(query: str) -> str:
        return " ".join(query.split())

    @staticmethod
    def detect_intents(query: str) -> list[str]:
        q = query.lower()
        return [intent for intent, pattern in _INTENT_PATTERNS if pattern.search(q)]

    def expand(self, query: str, intents: Iterable[str]) -> list[str]:
        """Synonyms for *intents*, minus words already present in *query*."""
        wanted = set(intents)
        terms: list[str] = []
        for intent in _EXPANSION_ORDER:
            if intent in wanted:
                terms.extend(self._synonyms.get(intent, []))
        original = set(query.lower().split())
        return dedupe(t for t in terms if t.lower() not in original)

    @staticmethod
    def boosts(intents: Iterable[str]) -> BoostHints:
        intents = list(intents)
        return BoostHints(
            sources=dedupe(_SOURCE_BOOSTS[i] for i in intents if i in _SOURCE_BOOSTS),
            tags=dedupe(_TAG_BOOSTS[i] for i in intents if i in _TAG_BOOSTS),
        )

    @staticmethod
    def filters(intents: Iterable[str]) -> dict[str, list[FilterValue]]:
        # Kept light so hints never hide results.
        if "owner" in intents:
            return {"kind": ["Component", "System"]}
        return {}

    def rewrite(self, query: str) -> RewriteOutput:
        q = self.normalize(query)
        intents = self.detect_intents(q)
        return RewriteOutput(
            query=q,
            intent=intents,
            expanded=self.expand(q, intents),
            boosts=self.boosts(intents),
            filters=self.filters(intents),
        )


def merge_rewrites(heuristic: RewriteOutput, ai: RewriteOutput | None) -> RewriteOutput:
    """Blend an AI rewrite over the heuristic one; AI fields win on conflict."""
    if ai is None:
        return heuristic
    return RewriteOutput(
        query=ai.query or heuristic.query,
        intent=ai.intent or heuristic.intent,
        expanded=dedupe([*ai.expanded, *heuristic.expanded]),
        boosts=BoostHints(
            sources=dedupe([*ai.boosts.sources, *heuristic.boosts.sources]),
            tags=dedupe([*ai.boosts.tags, *heuristic.boosts.tags]),
        ),
        filters={**heuristic.filters, **ai.filters},
    )
