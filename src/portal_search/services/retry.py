"""Bounded exponential-backoff retry for calls to external services."""

from __future__ import annotations

import socket
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, TypeVar

import anthropic
import httpx
import structlog
from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
)

from portal_search.errors import CircuitOpenError, PermanentUpstreamError, TransientUpstreamError

logger = structlog.get_logger(__name__)

T = TypeVar("T")

RETRYABLE_STATUSES: frozenset[int] = frozenset({408, 429, 500, 502, 503, 504})

# Provider error kinds that signal a transient condition on the provider side.
_TRANSIENT_KINDS: frozenset[str] = frozenset(
    {
        "insufficient_quota",
        "server_error",
        "rate_limit_error",
        "overloaded_error",
        "api_error",
    }
)


@dataclass(frozen=True)
class RetryPolicy:
    """Retry budget and backoff curve; all durations are in seconds."""

    retries: int = 3
    min_timeout: float = 1.0
    max_timeout: float = 5.0
    factor: float = 2.0

    def delay(self, attempt: int) -> float:
        """Backoff before retry number *attempt* (0-based)."""
        return min(self.max_timeout, self.min_timeout * self.factor**attempt)


PROVIDER_RETRY = RetryPolicy(retries=2, min_timeout=1.0, max_timeout=3.0)


def _status_of(exc: BaseException) -> int | None:
    if isinstance(exc, httpx.HTTPStatusError):
        return exc.response.status_code
    for attr in ("status_code", "status"):
        value = getattr(exc, attr, None)
        if isinstance(value, int):
            return value
    return None


def _kind_of(exc: BaseException) -> str | None:
    for attr in ("type", "code"):
        value = getattr(exc, attr, None)
        if isinstance(value, str):
            return value
    body = getattr(exc, "body", None)
    if isinstance(body, dict):
        error = body.get("error")
        if isinstance(error, dict) and isinstance(error.get("type"), str):
            return error["type"]
    return None


def is_retryable_error(exc: BaseException) -> bool:
    """Decide whether *exc* is worth another attempt.

    Network-level failures, retryable HTTP statuses, and transient provider
    error kinds are retryable. Everything else (other 4xx, malformed
    requests, an open circuit) fails fast.
    """
    if isinstance(exc, CircuitOpenError | PermanentUpstreamError):
        return False
    if isinstance(exc, TransientUpstreamError):
        return True
    if isinstance(exc, httpx.TransportError | anthropic.APIConnectionError):
        return True
    if isinstance(exc, ConnectionError | socket.gaierror | TimeoutError):
        return True

    status = _status_of(exc)
    if status is not None:
        return status in RETRYABLE_STATUSES

    return _kind_of(exc) in _TRANSIENT_KINDS


def _log_attempt(name: str) -> Callable[[RetryCallState], None]:
    def before_sleep(state: RetryCallState) -> None:
        exc = state.outcome.exception() if state.outcome else None
        logger.warning(
            "retry.attempt_failed",
            operation=name,
            attempt=state.attempt_number,
            error=str(exc),
            retry_in_s=round(state.next_action.sleep, 3) if state.next_action else None,
        )

    return before_sleep


async def with_retry(
    operation: Callable[[], Awaitable[T]],
    policy: RetryPolicy = RetryPolicy(),
    name: str = "operation",
    retry_if: Callable[[BaseException], bool] = is_retryable_error,
    sleep: Callable[[float], Awaitable[Any]] | None = None,
) -> T:
    """Invoke *operation*, retrying retryable failures with exponential backoff.

    Args:
        operation: Zero-argument coroutine factory.
        policy:    Retry budget; ``retries`` is the number of extra attempts.
        name:      Label used in retry logs.
        retry_if:  Classifier deciding which exceptions consume retry budget.
        sleep:     Awaitable sleep function; injectable for tests.

    Returns:
        The first successful result.

    Raises:
        Exception: The last error once retries are exhausted, or the first
            non-retryable error immediately.
    """
    kwargs: dict[str, Any] = {}
    if sleep is not None:
        kwargs["sleep"] = sleep
    async for attempt in AsyncRetrying(
        stop=stop_after_attempt(policy.retries + 1),
        wait=wait_exponential(
            multiplier=policy.min_timeout,
            max=policy.max_timeout,
            exp_base=policy.factor,
        ),
        retry=retry_if_exception(retry_if),
        before_sleep=_log_attempt(name),
        reraise=True,
        **kwargs,
    ):
        with attempt:
            return await operation()
    raise RuntimeError(f"{name}: retry loop exited without a result")  # pragma: no cover
