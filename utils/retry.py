"""
Async retry with exponential backoff for remote calls (git remotes, REST APIs).
"""

from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable, TypeVar

log = logging.getLogger(__name__)

T = TypeVar("T")

MAX_ATTEMPTS = 3
INITIAL_DELAY = 1.0  # seconds
MAX_DELAY = 10.0
BACKOFF_MULTIPLIER = 2.0


async def retry_with_backoff(
    operation: Callable[[], Awaitable[T]],
    max_attempts: int = MAX_ATTEMPTS,
    initial_delay: float = INITIAL_DELAY,
    max_delay: float = MAX_DELAY,
    backoff_multiplier: float = BACKOFF_MULTIPLIER,
    retry_on: tuple[type[BaseException], ...] = (Exception,),
    should_retry: Callable[[BaseException], bool] | None = None,
) -> T:
    """Await ``operation()`` up to ``max_attempts`` times.

    The delay between attempts starts at ``initial_delay`` and is multiplied
    by ``backoff_multiplier`` after each failure, capped at ``max_delay``.
    Errors outside ``retry_on``, or rejected by ``should_retry``, are raised
    at once. The last error is re-raised once attempts are exhausted.
    """
    delay = initial_delay
    for attempt in range(1, max_attempts + 1):
        try:
            return await operation()
        except retry_on as e:
            if attempt == max_attempts or (should_retry is not None and not should_retry(e)):
                raise
            log.warning(
                "Attempt %d/%d failed, retrying in %.1fs: %s",
                attempt, max_attempts, delay, e,
            )
            await asyncio.sleep(delay)
            delay = min(delay * backoff_multiplier, max_delay)

    raise RuntimeError("unreachable")  # satisfies type checker
