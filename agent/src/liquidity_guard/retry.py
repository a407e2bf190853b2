"""Retry with exponential backoff for loop-level I/O."""

import asyncio
import logging
from typing import Any, Awaitable, Callable, Optional, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


async def with_retry(
    fn: Callable[[], Awaitable[T]],
    max_retries: int = 3,
    initial_delay: float = 1.0,
    max_delay: float = 10.0,
    multiplier: float = 2.0,
    context: Optional[dict[str, Any]] = None,
) -> T:
    """Await ``fn()`` up to ``max_retries`` times; the last error is re-raised."""
    if max_retries < 1:
        raise ValueError("max_retries must be at least 1")

    delay = initial_delay
    for attempt in range(1, max_retries + 1):
        try:
            return await fn()
        except Exception as e:
            extra = {**(context or {}), "attempt": attempt, "max_retries": max_retries}
            if attempt == max_retries:
                logger.error(f"Retries exhausted: {e!r}", extra=extra)
                raise
            logger.warning(f"Attempt failed, retrying in {delay:.2f}s: {e!r}", extra=extra)
            await asyncio.sleep(delay)
            delay = min(delay * multiplier, max_delay)

    raise AssertionError("unreachable")
