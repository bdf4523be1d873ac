"""Race a coroutine against a timer without cancelling the coroutine."""

from __future__ import annotations

import asyncio
from typing import Awaitable, TypeVar

import structlog

from portal_search.errors import StageTimeoutError

logger = structlog.get_logger(__name__)

T = TypeVar("T")

# Strong references to calls that outlived their deadline; the event loop
# only keeps weak references to tasks.
_background: set[asyncio.Task] = set()


def _reap(task: asyncio.Task) -> None:
    _background.discard(task)
    if task.cancelled():
        return
    exc = task.exception()
    if exc is not None:
        logger.debug("deadline.background_failed", task=task.get_name(), error=str(exc))


async def run_with_deadline(aw: Awaitable[T], timeout_s: float | None, stage: str) -> T:
    """Await *aw*, giving up after *timeout_s* seconds.

    When the deadline fires, the underlying call is *not* cancelled: it keeps
    running in the background and its result (or error) is discarded.

    Args:
        aw:        Coroutine or awaitable to run.
        timeout_s: Budget in seconds; ``None`` or ``<= 0`` disables the timer.
        stage:     Stage name used in the timeout error and logs.

    Raises:
        StageTimeoutError: The budget elapsed first.
    """
    task = asyncio.ensure_future(aw)
    _background.add(task)
    task.add_done_callback(_reap)

    if timeout_s is None or timeout_s <= 0:
        return await task

    try:
        return await asyncio.wait_for(asyncio.shield(task), timeout_s)
    except asyncio.TimeoutError as exc:
        raise StageTimeoutError(stage, timeout_s) from exc
