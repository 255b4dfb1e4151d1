"""
Retry with exponential backoff for transient engine failures.

Used for registry pulls and pushes, where network hiccups and registry
rate limits are common. Builds are never retried.

The delay before attempt N+1 is base_delay * 2**(N-1). Delays suspend
only the calling task and cannot be cancelled early except by cancelling
that task.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable, Optional, Tuple, Type, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


def backoff_delay(base_delay: float, attempt: int) -> float:
    """Delay after the given failed attempt (1-based)."""
    return base_delay * (2 ** (attempt - 1))


async def retry_with_backoff(
    operation: Callable[[], Awaitable[T]],
    *,
    attempts: int = 3,
    base_delay: float = 1.0,
    context: str = "operation",
    retry_on: Tuple[Type[BaseException], ...] = (Exception,),
) -> T:
    """
    Await operation() until it succeeds or attempts are exhausted.

    Args:
        operation: Zero-argument coroutine factory, called once per attempt.
        attempts: Maximum number of attempts (including the first).
        base_delay: Seconds to wait after the first failure; doubles after each.
        context: Label for log messages (e.g. "pull ubuntu:24.04").
        retry_on: Exception types that trigger a retry. Anything else propagates.

    Returns:
        The first successful result.

    Raises:
        The exception from the final attempt.
    """
    attempts = max(1, attempts)
    last_exception: Optional[BaseException] = None

    for attempt in range(1, attempts + 1):
        try:
            return await operation()
        except retry_on as e:
            last_exception = e
            logger.warning(
                "%s failed (attempt %d/%d): %s", context, attempt, attempts, e
            )

        if attempt < attempts:
            await asyncio.sleep(backoff_delay(base_delay, attempt))

    assert last_exception is not None
    raise last_exception
