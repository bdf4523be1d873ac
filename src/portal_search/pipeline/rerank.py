"""Re-rank stage: heuristic or cross-encoder re-scoring of the top-K hits."""

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Protocol

import structlog

from portal_search.models import BoostHints, SearchItem
from portal_search.services.observability import Observability, outcome_of
from portal_search.utils.deadline import run_with_deadline

logger = structlog.get_logger(__name__)

_TEXT_BONUS = 0.5
_TITLE_BONUS = 0.75
_SOURCE_BONUS = 0.8
_TAG_BONUS = 0.6
_FRESHNESS_BONUS = 0.5
_TIE_BREAK = 1e-6


@dataclass
class ReRankContext:
    """Rewrite output the re-ranker may use."""

    intent: list[str] = field(default_factory=list)
    boosts: BoostHints = field(default_factory=BoostHints)


class ReRankProvider(Protocol):
    async def rerank(
        self, query: str, items: list[SearchItem], ctx: ReRankContext | None = None
    ) -> list[SearchItem]: ...


def _normalize(scores: list[float]) -> list[float]:
    """Min-max normalize a list of scores to [0, 1].

    Args:
        scores: Raw cross-encoder logit scores.

    Returns:
        Normalised floats. A constant input maps to all ``0.5``.
    """
    if not scores:
        return scores
    lo, hi = min(scores), max(scores)
    span = hi - lo
    if span == 0:
        return [0.5] * len(scores)
    return [(s - lo) / span for s in scores]


def _parse_timestamp(value: Any) -> datetime | None:  # noqa: ANN401
    if not value:
        return None
    try:
        parsed = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


class HeuristicReRankProvider:
    """Additive bonuses on top of the backend score.

    Args:
        freshness_days: Window over which the freshness bonus decays to zero.
        index_prefix:   Prefix stripped from ``_index`` to recover the source.
        now:            Clock returning an aware UTC datetime; injectable for tests.
    """

    def __init__(
        self,
        freshness_days: int = 30,
        index_prefix: str = "backstage",
        now: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ) -> None:
        self._window = timedelta(days=freshness_days)
        self._index_prefix = index_prefix
        self._now = now

    def _sources_of(self, item: SearchItem) -> set[str]:
        candidates: set[str] = set()
        stamped = item.fields.get("source")
        if stamped:
            candidates.add(str(stamped).lower())
        if item.source:
            index = item.source.lower()
            candidates.add(index)
            prefix = f"{self._index_prefix.lower()}-"
            if index.startswith(prefix):
                candidates.add(index[len(prefix):])
        return candidates

    def _freshness(self, item: SearchItem, now: datetime) -> float:
        updated = _parse_timestamp(item.fields.get("updated_at"))
        if updated is None or self._window.total_seconds() <= 0:
            return 0.0
        age = now - updated
        if timedelta(0) <= age < self._window:
            return _FRESHNESS_BONUS * (1 - age / self._window)
        return 0.0

    async def rerank(
        self, query: str, items: list[SearchItem], ctx: ReRankContext | None = None
    ) -> list[SearchItem]:
        ctx = ctx or ReRankContext()
        q = query.lower()
        now = self._now()
        boost_sources = {s.lower() for s in ctx.boosts.sources}
        boost_tags = {t.lower() for t in ctx.boosts.tags}

        scored: list[tuple[float, float, SearchItem]] = []
        for idx, item in enumerate(items):
            score = item.score
            title = (item.title or "").lower()
            haystack = " ".join([title, (item.text or "").lower(), " ".join(item.tags).lower()])
            if q and q in haystack:
                score += _TEXT_BONUS
            if q and q in title:
                score += _TITLE_BONUS
            if boost_sources & self._sources_of(item):
                score += _SOURCE_BONUS
            if any(t.lower() in boost_tags for t in item.tags):
                score += _TAG_BONUS
            score += self._freshness(item, now)
            # Earlier items win exact ties; the epsilon only orders, it is not returned.
            scored.append((score - idx * _TIE_BREAK, score, item))

        scored.sort(key=lambda entry: entry[0], reverse=True)
        return [item.model_copy(update={"score": score}) for _, score, item in scored]


class CrossEncoderReRankProvider:
    """Score ``(query, title + text)`` pairs with a sentence-transformers CrossEncoder.

    The model is loaded on first use; ``predict`` runs in a worker thread.
    """

    def __init__(self, model_name: str = "cross-encoder/ms-marco-MiniLM-L-6-v2", model: Any = None) -> None:  # noqa: ANN401
        self._model_name = model_name
        self._model = model

    def _load(self) -> Any:  # noqa: ANN401
        if self._model is None:
            from sentence_transformers import CrossEncoder

            logger.info("cross_encoder.loading", model=self._model_name)
            self._model = CrossEncoder(self._model_name)
            logger.info("cross_encoder.loaded", model=self._model_name)
        return self._model

    def _predict(self, pairs: list[tuple[str, str]]) -> list[float]:
        return [float(s) for s in self._load().predict(pairs)]

    async def rerank(
        self, query: str, items: list[SearchItem], ctx: ReRankContext | None = None
    ) -> list[SearchItem]:
        if not items:
            return []
        pairs = [(query, f"{item.title} {item.text or ''}".strip()) for item in items]
        scores = _normalize(await asyncio.to_thread(self._predict, pairs))
        ranked = sorted(zip(scores, items), key=lambda pair: pair[0], reverse=True)
        logger.debug("rerank.semantic_scores_computed", count=len(ranked))
        return [item.model_copy(update={"score": score}) for score, item in ranked]


class ReRankStage:
    """Re-order the head of a result list without ever failing the request.

    Only the first ``top_k`` items are sent to the provider; the tail is
    appended unchanged. On timeout or error the input list is returned.
    """

    def __init__(
        self,
        provider: ReRankProvider | None,
        enabled: bool = True,
        top_k: int = 50,
        timeout_s: float | None = 0.08,
        observability: Observability | None = None,
    ) -> None:
        self._provider = provider
        self._enabled = enabled
        self._top_k = top_k
        self._timeout_s = timeout_s
        self._observability = observability

    @property
    def enabled(self) -> bool:
        return self._enabled and self._provider is not None

    async def rerank(
        self, query: str, items: list[SearchItem], ctx: ReRankContext | None = None
    ) -> list[SearchItem]:
        provider = self._provider
        if not self._enabled or provider is None or not items:
            return items

        k = min(self._top_k, len(items))
        head, tail = items[:k], items[k:]
        started = time.perf_counter()
        try:
            reranked = await run_with_deadline(
                provider.rerank(query, list(head), ctx), self._timeout_s, "rerank"
            )
        except Exception as exc:  # noqa: BLE001
            outcome = outcome_of(exc)
            logger.warning("rerank.fallback", reason=outcome, error=str(exc))
            self._record(outcome, started)
            return items

        self._record("success", started)
        logger.debug("rerank.done", reranked=len(reranked), tail=len(tail))
        return [*reranked, *tail]

    def _record(self, outcome: str, started: float) -> None:
        if self._observability is not None:
            ms = (time.perf_counter() - started) * 1000
            self._observability.record_ai_usage("rerank", outcome, ms)
