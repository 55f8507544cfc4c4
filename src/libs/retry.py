"""
Retry helper with exponential backoff for idempotent store reads.

Writes are not retried here; failed writes are handed to the offline
action queue instead.
"""

from __future__ import annotations

import asyncio
import random
from collections.abc import Awaitable, Callable
from typing import TypeVar

import structlog

logger = structlog.get_logger(__name__)

T = TypeVar("T")


class RetryExhaustedError(Exception):
    """Raised when every attempt of a retried operation failed."""

    def __init__(self, attempts: int, last_error: BaseException) -> None:
        super().__init__(f"Operation failed after {attempts} attempts. Last error: {last_error}")
        self.attempts = attempts
        self.last_error = last_error


def backoff_delay(
    attempt: int,
    base_delay: float,
    *,
    max_delay: float | None = None,
    jitter: float = 0.0,
) -> float:
    """Delay before retry number ``attempt`` (1-based): base, 2*base, 4*base, ..."""
    delay = base_delay * (2 ** (attempt - 1))
    if max_delay is not None:
        delay = min(delay, max_delay)
    if jitter:
        delay += delay * jitter * random.random()
    return delay


async def with_retry(
    operation: Callable[[], Awaitable[T]],
    *,
    max_retries: int = 3,
    base_delay: float = 0.5,
    max_delay: float | None = 10.0,
    jitter: float = 0.1,
    retry_on: tuple[type[BaseException], ...] = (Exception,),
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> T:
    """Run ``operation`` up to ``max_retries`` times.

    Only exceptions listed in ``retry_on`` are retried; anything else
    propagates immediately. When all attempts fail a RetryExhaustedError is
    raised with the last error chained.
    """
    attempts = max(1, max_retries)
    last_error: BaseException | None = None

    for attempt in range(1, attempts + 1):
        try:
            return await operation()
        except retry_on as exc:
            last_error = exc
            if attempt == attempts:
                break
            delay = backoff_delay(attempt, base_delay, max_delay=max_delay, jitter=jitter)
            await logger.awarning(
                "retry_scheduled",
                attempt=attempt,
                max_retries=attempts,
                delay_seconds=round(delay, 3),
                error=str(exc),
            )
            await sleep(delay)

    assert last_error is not None
    raise RetryExhaustedError(attempts, last_error) from last_error
