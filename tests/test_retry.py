"""Tests for the retry executor and error classification."""

from __future__ import annotations

from unittest.mock import AsyncMock

import httpx
import pytest

from portal_search.errors import CircuitOpenError, PermanentUpstreamError, TransientUpstreamError
from portal_search.services.retry import RetryPolicy, is_retryable_error, with_retry


def _status_error(status: int) -> httpx.HTTPStatusError:
    request = httpx.Request("POST", "http://search.local/_search")
    response = httpx.Response(status, request=request)
    return httpx.HTTPStatusError(f"HTTP {status}", request=request, response=response)


class TestIsRetryableError:
    """Classification of errors into retryable and fail-fast."""

    @pytest.mark.parametrize("status", [408, 429, 500, 502, 503, 504])
    def test_retryable_statuses(self, status: int) -> None:
        assert is_retryable_error(_status_error(status)) is True

    @pytest.mark.parametrize("status", [400, 401, 403, 404, 422])
    def test_client_errors_fail_fast(self, status: int) -> None:
        assert is_retryable_error(_status_error(status)) is False

    def test_network_errors(self) -> None:
        assert is_retryable_error(httpx.ConnectError("refused")) is True
        assert is_retryable_error(ConnectionResetError()) is True
        assert is_retryable_error(TimeoutError()) is True

    def test_upstream_taxonomy(self) -> None:
        assert is_retryable_error(TransientUpstreamError("503")) is True
        assert is_retryable_error(PermanentUpstreamError("400", status_code=400)) is False

    def test_open_circuit_is_not_retried(self) -> None:
        assert is_retryable_error(CircuitOpenError("rewrite", 10.0)) is False

    def test_status_attribute(self) -> None:
        exc = RuntimeError("rate limited")
        exc.status_code = 429  # type: ignore[attr-defined]
        assert is_retryable_error(exc) is True

    def test_provider_error_kind(self) -> None:
        exc = RuntimeError("overloaded")
        exc.body = {"error": {"type": "overloaded_error"}}  # type: ignore[attr-defined]
        assert is_retryable_error(exc) is True

    def test_plain_error_is_not_retried(self) -> None:
        assert is_retryable_error(ValueError("bad input")) is False


class TestRetryPolicy:
    def test_delay_is_capped(self) -> None:
        policy = RetryPolicy(min_timeout=1.0, max_timeout=5.0, factor=2.0)
        assert [policy.delay(n) for n in range(4)] == [1.0, 2.0, 4.0, 5.0]


@pytest.mark.asyncio
class TestWithRetry:
    """Attempt counting with a no-op sleep."""

    async def test_succeeds_after_two_failures(self) -> None:
        operation = AsyncMock(side_effect=[TransientUpstreamError("a"), TransientUpstreamError("b"), "ok"])
        sleep = AsyncMock()
        result = await with_retry(operation, RetryPolicy(retries=3), sleep=sleep)
        assert result == "ok"
        assert operation.await_count == 3
        assert sleep.await_count == 2

    async def test_exhausts_budget_and_reraises_last_error(self) -> None:
        operation = AsyncMock(side_effect=TransientUpstreamError("down"))
        with pytest.raises(TransientUpstreamError):
            await with_retry(operation, RetryPolicy(retries=2), sleep=AsyncMock())
        assert operation.await_count == 3

    async def test_non_retryable_called_once(self) -> None:
        operation = AsyncMock(side_effect=PermanentUpstreamError("bad request", status_code=400))
        with pytest.raises(PermanentUpstreamError):
            await with_retry(operation, RetryPolicy(retries=3), sleep=AsyncMock())
        assert operation.await_count == 1

    async def test_backoff_grows_exponentially(self) -> None:
        operation = AsyncMock(side_effect=TransientUpstreamError("down"))
        sleep = AsyncMock()
        with pytest.raises(TransientUpstreamError):
            await with_retry(operation, RetryPolicy(retries=3, min_timeout=1.0, max_timeout=3.0), sleep=sleep)
        delays = [call.args[0] for call in sleep.await_args_list]
        assert delays == [1.0, 2.0, 3.0]

    async def test_custom_classifier(self) -> None:
        operation = AsyncMock(side_effect=[ValueError("flaky"), "ok"])
        result = await with_retry(
            operation,
            RetryPolicy(retries=1),
            retry_if=lambda exc: isinstance(exc, ValueError),
            sleep=AsyncMock(),
        )
        assert result == "ok"

    async def test_plain_coroutine_factory_is_awaited(self) -> None:
        async def fetch(value: str) -> str:
            return value.upper()

        result = await with_retry(lambda: fetch("ok"), RetryPolicy(retries=2), sleep=AsyncMock())
        assert result == "OK"

    async def test_plain_coroutine_factory_is_retried(self) -> None:
        calls: list[int] = []

        async def flaky() -> str:
            calls.append(1)
            if len(calls) < 3:
                raise TransientUpstreamError("503")
            return "ok"

        sleep = AsyncMock()
        result = await with_retry(lambda: flaky(), RetryPolicy(retries=3), sleep=sleep)
        assert result == "ok"
        assert len(calls) == 3
        assert sleep.await_count == 2

    async def test_plain_coroutine_factory_non_retryable(self) -> None:
        calls: list[int] = []

        async def rejected() -> None:
            calls.append(1)
            raise PermanentUpstreamError("bad request", status_code=400)

        with pytest.raises(PermanentUpstreamError):
            await with_retry(lambda: rejected(), RetryPolicy(retries=3), sleep=AsyncMock())
        assert calls == [1]
