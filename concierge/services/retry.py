"""Bounded retry with exponential backoff for tool execution.

Same policy as the HTTP clients use internally (attempt, log, back off,
try again) but lifted into a reusable async helper so any operation can be
wrapped.  There is no jitter: delays are fully deterministic, which keeps
tests and log timelines predictable.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from typing import TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_MAX_ATTEMPTS = 3
DEFAULT_INITIAL_DELAY_MS = 100
DEFAULT_BACKOFF_FACTOR = 2

OnRetry = Callable[[int, BaseException, float], None]


async def execute_with_retry(
    operation: Callable[[], Awaitable[T]],
    *,
    max_attempts: int = DEFAULT_MAX_ATTEMPTS,
    initial_delay_ms: float = DEFAULT_INITIAL_DELAY_MS,
    backoff_factor: float = DEFAULT_BACKOFF_FACTOR,
    on_retry: OnRetry | None = None,
) -> T:
    """Await ``operation()`` until it succeeds or ``max_attempts`` is reached.

    Args:
        operation: Zero-argument coroutine factory.  Called once per attempt.
        max_attempts: Total number of calls, including the first one.
        initial_delay_ms: Sleep before the second attempt.
        backoff_factor: Multiplier applied to the delay after every retry.
        on_retry: Optional hook ``(attempt, error, next_delay_ms)`` invoked
            before each sleep.  It is for logging only; anything it raises
            is logged and ignored.

    Returns:
        Whatever the first successful call returned.

    Raises:
        The exception from the final attempt, unchanged.
    """
    if max_attempts < 1:
        raise ValueError("max_attempts must be at least 1")

    delay_ms = initial_delay_ms
    attempt = 0
    while True:
        try:
            return await operation()
        except Exception as exc:
            attempt += 1
            if attempt >= max_attempts:
                raise

            if on_retry is not None:
                try:
                    on_retry(attempt, exc, delay_ms)
                except Exception:
                    logger.exception("on_retry hook failed (attempt %d)", attempt)

            await asyncio.sleep(delay_ms / 1000)
            delay_ms *= backoff_factor
