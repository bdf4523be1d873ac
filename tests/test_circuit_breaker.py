"""Tests for the circuit breaker state machine."""

from __future__ import annotations

from unittest.mock import AsyncMock

import pytest

from conftest import FakeClock
from portal_search.errors import CircuitOpenError
from portal_search.services.circuit_breaker import CircuitBreaker, CircuitState


async def _fail() -> None:
    raise RuntimeError("boom")


async def _ok() -> str:
    return "ok"


@pytest.mark.asyncio
class TestCircuitBreaker:
    """Transitions between CLOSED, OPEN and HALF_OPEN."""

    async def test_success_keeps_closed(self) -> None:
        breaker = CircuitBreaker(failure_threshold=2)
        assert await breaker.execute(_ok) == "ok"
        assert breaker.state is CircuitState.CLOSED
        assert breaker.failure_count == 0

    async def test_opens_after_threshold(self, clock: FakeClock) -> None:
        breaker = CircuitBreaker(failure_threshold=2, reset_timeout=1.0, clock=clock)
        for _ in range(2):
            with pytest.raises(RuntimeError):
                await breaker.execute(_fail)
        assert breaker.state is CircuitState.OPEN
        assert breaker.failure_count == 2

    async def test_open_rejects_without_calling(self, clock: FakeClock) -> None:
        breaker = CircuitBreaker(failure_threshold=1, reset_timeout=1.0, clock=clock)
        with pytest.raises(RuntimeError):
            await breaker.execute(_fail)

        operation = AsyncMock(return_value="never")
        with pytest.raises(CircuitOpenError):
            await breaker.execute(operation)
        operation.assert_not_called()

    async def test_half_open_success_closes(self, clock: FakeClock) -> None:
        """Two failures open it; after the reset window one success closes it."""
        breaker = CircuitBreaker(failure_threshold=2, reset_timeout=1.0, clock=clock)
        for _ in range(2):
            with pytest.raises(RuntimeError):
                await breaker.execute(_fail)
        assert breaker.state is CircuitState.OPEN

        clock.advance(1.1)
        assert await breaker.execute(_ok) == "ok"
        assert breaker.state is CircuitState.CLOSED
        assert breaker.failure_count == 0

    async def test_half_open_failure_reopens(self, clock: FakeClock) -> None:
        breaker = CircuitBreaker(failure_threshold=1, reset_timeout=1.0, clock=clock)
        with pytest.raises(RuntimeError):
            await breaker.execute(_fail)
        clock.advance(1.5)
        with pytest.raises(RuntimeError):
            await breaker.execute(_fail)
        assert breaker.state is CircuitState.OPEN
        with pytest.raises(CircuitOpenError):
            await breaker.execute(_ok)

    async def test_success_resets_failure_count(self) -> None:
        breaker = CircuitBreaker(failure_threshold=3)
        with pytest.raises(RuntimeError):
            await breaker.execute(_fail)
        await breaker.execute(_ok)
        assert breaker.failure_count == 0

    async def test_records_last_failure_time(self, clock: FakeClock) -> None:
        breaker = CircuitBreaker(failure_threshold=5, clock=clock)
        with pytest.raises(RuntimeError):
            await breaker.execute(_fail)
        assert breaker.last_failure_time == clock.now

    def test_rejects_zero_threshold(self) -> None:
        with pytest.raises(ValueError):
            CircuitBreaker(failure_threshold=0)

    async def test_tripping_failure_reraises_original_error(self, clock: FakeClock) -> None:
        breaker = CircuitBreaker(failure_threshold=1, reset_timeout=5.0, clock=clock)
        with pytest.raises(RuntimeError, match="boom"):
            await breaker.execute(_fail)
        assert breaker.state is CircuitState.OPEN

    async def test_open_error_reports_remaining_cooldown(self, clock: FakeClock) -> None:
        breaker = CircuitBreaker(failure_threshold=1, reset_timeout=5.0, name="rewrite", clock=clock)
        with pytest.raises(RuntimeError):
            await breaker.execute(_fail)
        clock.advance(2.0)
        with pytest.raises(CircuitOpenError) as info:
            await breaker.execute(_ok)
        assert info.value.name == "rewrite"
        assert info.value.retry_in_s == pytest.approx(3.0)

    async def test_reset_closes(self, clock: FakeClock) -> None:
        breaker = CircuitBreaker(failure_threshold=1, reset_timeout=60.0, clock=clock)
        with pytest.raises(RuntimeError):
            await breaker.execute(_fail)
        breaker.reset()
        assert breaker.state is CircuitState.CLOSED
        assert await breaker.execute(_ok) == "ok"
