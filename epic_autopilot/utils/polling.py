"""Bounded polling of asynchronous external verdicts.

``poll_until`` repeatedly calls an attempt coroutine until it returns a
verdict, sleeping between calls, and gives up after a fixed number of
iterations. ``IntervalTimer`` decides when background servicing of the
pending queue is due.

Example:
    >>> async def attempt() -> str | None:
    ...     review = await reviews.latest_review(17)
    ...     return None if review.verdict == ReviewVerdict.NONE else review.verdict
    >>> verdict = await poll_until(attempt, max_iterations=60, interval=30)
"""

import asyncio
import time
from collections.abc import Awaitable, Callable
from typing import TypeVar

import structlog

from epic_autopilot.exceptions import ExternalServiceError, ExternalTimeoutError

log = structlog.get_logger(__name__)

T = TypeVar("T")

Sleep = Callable[[float], Awaitable[None]]


async def poll_until(
    attempt: Callable[[], Awaitable[T | None]],
    max_iterations: int,
    interval: float,
    sleep: Sleep = asyncio.sleep,
    description: str = "verdict",
    item_id: str | None = None,
    phase: str | None = None,
) -> T:
    """Call ``attempt`` until it returns something other than None.

    An ``ExternalServiceError`` raised by an attempt counts as "still
    waiting". There is no sleep after the last attempt.

    Args:
        attempt: Coroutine returning a verdict, or None to keep waiting
        max_iterations: Number of attempts before giving up (at least 1)
        interval: Seconds to sleep between attempts
        sleep: Injected sleep coroutine
        description: What is being waited for, used in logs and errors
        item_id: Item being waited on, attached to the timeout error
        phase: Phase doing the waiting, attached to the timeout error

    Returns:
        The first non-None attempt result.

    Raises:
        ExternalTimeoutError: After ``max_iterations`` attempts without a verdict.
    """
    iterations = max(1, max_iterations)

    for iteration in range(1, iterations + 1):
        try:
            result = await attempt()
        except ExternalServiceError as e:
            log.warning("poll_service_error", waiting_for=description, iteration=iteration, error=str(e))
            result = None

        if result is not None:
            log.debug("poll_resolved", waiting_for=description, iteration=iteration)
            return result

        log.debug("poll_waiting", waiting_for=description, iteration=iteration, max_iterations=iterations)
        if iteration < iterations:
            await sleep(interval)

    raise ExternalTimeoutError(
        f"Timed out waiting for {description}",
        item_id=item_id,
        phase=phase,
        iterations=iterations,
    )


class IntervalTimer:
    """Monotonic timer that is due at most once per ``interval`` seconds.

    The first check is due immediately.
    """

    def __init__(self, interval: float, clock: Callable[[], float] = time.monotonic) -> None:
        self.interval = interval
        self._clock = clock
        self._last: float | None = None

    def due(self) -> bool:
        if self._last is None:
            return True
        return self._clock() - self._last >= self.interval

    def mark(self) -> None:
        self._last = self._clock()

    def reset(self) -> None:
        self._last = None
