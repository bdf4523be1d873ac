"""Circuit breaker guarding calls to unreliable AI providers, built on pybreaker."""

from __future__ import annotations

import time
from enum import Enum
from typing import Any, Awaitable, Callable, TypeVar

import pybreaker
import structlog

from portal_search.errors import CircuitOpenError

logger = structlog.get_logger(__name__)

T = TypeVar("T")


class CircuitState(str, Enum):
    CLOSED = "CLOSED"
    OPEN = "OPEN"
    HALF_OPEN = "HALF_OPEN"


_STATES: dict[str, CircuitState] = {
    pybreaker.STATE_CLOSED: CircuitState.CLOSED,
    pybreaker.STATE_OPEN: CircuitState.OPEN,
    pybreaker.STATE_HALF_OPEN: CircuitState.HALF_OPEN,
}


class _TransitionListener(pybreaker.CircuitBreakerListener):
    """Stamps open/failure times with the owner's clock and logs transitions."""

    def __init__(self, owner: CircuitBreaker) -> None:
        self._owner = owner

    def state_change(self, cb: pybreaker.CircuitBreaker, old_state: Any, new_state: Any) -> None:
        owner = self._owner
        if new_state.name == pybreaker.STATE_OPEN:
            owner._opened_at = owner._clock()
            logger.warning(
                "breaker.opened",
                breaker=owner.name,
                failures=cb.fail_counter,
                reset_timeout_s=owner.reset_timeout,
            )
        elif new_state.name == pybreaker.STATE_HALF_OPEN:
            logger.info("breaker.half_open", breaker=owner.name)
        elif old_state is not None and old_state.name != pybreaker.STATE_CLOSED:
            logger.info("breaker.closed", breaker=owner.name)

    def failure(self, cb: pybreaker.CircuitBreaker, exc: BaseException) -> None:
        self._owner._last_failure_time = self._owner._clock()


def _replay(exc: BaseException | None) -> None:
    if exc is not None:
        raise exc


class CircuitBreaker:
    """Stop calling a failing dependency for a cooldown period.

    After ``failure_threshold`` consecutive failures the breaker opens and
    rejects calls with :class:`CircuitOpenError` until ``reset_timeout``
    seconds have passed. The first call after that is let through as a trial
    (``HALF_OPEN``): success closes the circuit, failure re-opens it with a
    fresh cooldown.

    State and counters live in a :class:`pybreaker.CircuitBreaker`. The
    awaited operation runs outside pybreaker; its outcome is then recorded
    through ``pybreaker.CircuitBreaker.call``, so pybreaker's lock is never
    held across an ``await``. The cooldown is measured with ``clock`` rather
    than pybreaker's wall-clock timer. Concurrent callers arriving while
    ``HALF_OPEN`` are all let through.

    Args:
        failure_threshold: Consecutive failures before opening.
        reset_timeout:     Cooldown in seconds before a trial call is allowed.
        name:              Label used in logs and errors.
        clock:             Monotonic time source; injectable for tests.
    """

    def __init__(
        self,
        failure_threshold: int = 5,
        reset_timeout: float = 60.0,
        name: str = "default",
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if failure_threshold < 1:
            raise ValueError("failure_threshold must be >= 1")
        self.failure_threshold = failure_threshold
        self.reset_timeout = reset_timeout
        self.name = name
        self._clock = clock
        self._opened_at = 0.0
        self._last_failure_time = 0.0
        self._breaker = pybreaker.CircuitBreaker(
            fail_max=failure_threshold,
            reset_timeout=reset_timeout,
            listeners=[_TransitionListener(self)],
            name=name,
        )

    @property
    def state(self) -> CircuitState:
        return _STATES[self._breaker.current_state]

    @property
    def failure_count(self) -> int:
        return self._breaker.fail_counter

    @property
    def last_failure_time(self) -> float:
        return self._last_failure_time

    async def execute(self, operation: Callable[[], Awaitable[T]]) -> T:
        """Run *operation* unless the circuit is open.

        Raises:
            CircuitOpenError: The breaker is open and the cooldown has not elapsed.
            Exception:        Whatever *operation* raised (after recording the failure).
        """
        self._before_call()
        try:
            result = await operation()
        except Exception as exc:
            self._record(exc)
            raise
        self._record(None)
        return result

    def reset(self) -> None:
        self._breaker.close()

    def _before_call(self) -> None:
        if self._breaker.current_state != pybreaker.STATE_OPEN:
            return
        remaining = self._opened_at + self.reset_timeout - self._clock()
        if remaining > 0:
            raise CircuitOpenError(self.name, remaining)
        self._breaker.half_open()

    def _record(self, exc: BaseException | None) -> None:
        # pybreaker re-raises the failure, or CircuitBreakerError when it trips.
        try:
            self._breaker.call(_replay, exc)
        except pybreaker.CircuitBreakerError:
            pass
        except Exception as raised:  # noqa: BLE001
            if raised is not exc:
                raise
