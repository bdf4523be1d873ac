"""Anthropic Claude rewrite provider for developer-portal queries."""

from __future__ import annotations

import json
import re
from typing import Any, Mapping, Protocol

import anthropic
import structlog

from portal_search.models import BoostHints, RewriteOutput
from portal_search.pipeline.heuristics import HeuristicRewriter, merge_rewrites

logger = structlog.get_logger(__name__)

_SYSTEM_PROMPT = (
    "You are a search query optimizer for a developer portal. Users search for "
    "documentation, APIs, services, teams, and runbooks in their organization.\n"
    "Return ONLY valid JSON with these fields:\n"
    "- query: the optimized search query (clean, normalized, typos fixed, abbreviations expanded)\n"
    "- intent: array of intents from [how-to, incident, owner, api, policy]\n"
    "- expanded: array of additional search terms and synonyms\n"
    '- boosts: object with "sources" and "tags" arrays for result boosting\n'
    "- filters: object mapping field names to arrays of allowed values; be conservative\n"
    'Example: {"query": "deploy kubernetes service", "intent": ["how-to"], '
    '"expanded": ["deployment", "k8s"], "boosts": {"sources": ["techdocs"], '
    '"tags": ["deployment"]}, "filters": {}}'
)


class RewriteProvider(Protocol):
    """External capability that turns a raw query into a :class:`RewriteOutput`."""

    async def rewrite(
        self, query: str, filters: Mapping[str, Any] | None = None
    ) -> RewriteOutput: ...


def _str_list(value: Any) -> list[str]:  # noqa: ANN401
    if not isinstance(value, list):
        return []
    return [str(v) for v in value if isinstance(v, str | int | float) and str(v).strip()]


def parse_ai_response(raw_text: str) -> RewriteOutput | None:
    """Parse the model's JSON reply; ``None`` when it is unusable."""
    text = raw_text.strip()
    # Strip any markdown code fences that the model might add.
    text = re.sub(r"^```(?:json)?\s*", "", text)
    text = re.sub(r"\s*```$", "", text)
    try:
        data = json.loads(text)
    except json.JSONDecodeError as exc:
        logger.warning("claude.parse_failed", error=str(exc))
        return None
    if not isinstance(data, dict):
        return None

    boosts = data.get("boosts") if isinstance(data.get("boosts"), dict) else {}
    filters: dict[str, list[Any]] = {}
    if isinstance(data.get("filters"), dict):
        for key, values in data["filters"].items():
            if isinstance(values, list) and values:
                filters[str(key)] = [v for v in values if isinstance(v, str | int | float | bool)]
    return RewriteOutput(
        query=str(data.get("query") or "").strip(),
        intent=_str_list(data.get("intent")),
        expanded=_str_list(data.get("expanded")),
        boosts=BoostHints(sources=_str_list(boosts.get("sources")), tags=_str_list(boosts.get("tags"))),
        filters=filters,
    )


class ClaudeRewriteProvider:
    """Heuristic pass blended with a Claude-generated enhancement.

    SDK errors are *not* caught here: the rewrite stage wraps this provider in
    a retry executor and circuit breaker that need to see them. A reply that
    is not valid JSON is treated as "no enhancement" and the heuristic result
    is returned.

    Args:
        api_key:     Anthropic API key.
        model:       Model name.
        temperature: Sampling temperature.
        heuristics:  Shared heuristic rewriter.
    """

    def __init__(
        self,
        api_key: str,
        model: str = "claude-haiku-4-5",
        temperature: float = 0.3,
        heuristics: HeuristicRewriter | None = None,
        client: anthropic.AsyncAnthropic | None = None,
    ) -> None:
        # Retries are handled by the rewrite stage, not the SDK.
        self._client = client or anthropic.AsyncAnthropic(api_key=api_key, max_retries=0)
        self._model = model
        self._temperature = temperature
        self._heuristics = heuristics or HeuristicRewriter()

    async def rewrite(
        self, query: str, filters: Mapping[str, Any] | None = None
    ) -> RewriteOutput:
        """Return the merged heuristic + Claude rewrite of *query*.

        Raises:
            anthropic.APIError: On any API-level failure.
        """
        heuristic = self._heuristics.rewrite(query)

        prompt = f'Analyze and optimize this search query: "{query}"'
        if filters:
            prompt += f"\nExisting filters: {json.dumps(dict(filters), default=str)}"

        message = await self._client.messages.create(
            model=self._model,
            max_tokens=500,
            temperature=self._temperature,
            system=_SYSTEM_PROMPT,
            messages=[{"role": "user", "content": prompt}],
        )
        if not message.content or not hasattr(message.content[0], "text"):
            ai = None
        else:
            ai = parse_ai_response(message.content[0].text)

        merged = merge_rewrites(heuristic, ai)
        logger.debug(
            "claude.rewrite",
            intent=merged.intent,
            expanded=len(merged.expanded),
            ai_used=ai is not None,
        )
        return merged

    async def health(self) -> bool:
        try:
            await self._client.models.list(limit=1)
            return True
        except Exception as exc:  # noqa: BLE001
            logger.warning("claude.health_failed", error=str(exc))
            return False
