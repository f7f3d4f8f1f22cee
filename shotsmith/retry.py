"""The retry policy shared by every remote call."""

from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable, TypeVar

from shotsmith.errors import is_retryable

logger = logging.getLogger(__name__)

T = TypeVar("T")


async def retry(
    operation: Callable[[], Awaitable[T]],
    max_attempts: int = 3,
    base_delay: float = 2.0,
    *,
    delay_for: Callable[[int], float] | None = None,
    retryable: Callable[[BaseException], bool] = is_retryable,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    label: str = "request",
) -> T:
    """Run ``operation`` until it succeeds or the attempts run out.

    The delay before attempt ``i + 1`` is ``base_delay * 2 ** i`` unless
    ``delay_for(i)`` is given. Errors that are not ``retryable`` propagate
    immediately.

    Args:
        operation: Zero-argument coroutine factory, called once per attempt.
        max_attempts: Total number of attempts.
        base_delay: First backoff delay in seconds.
        delay_for: Optional override of the backoff schedule.
        retryable: Classifier deciding whether an error is transient.
        sleep: Awaitable sleep, injectable for tests.
        label: Name used in log messages.

    Returns:
        The operation's result.

    Raises:
        Exception: The last attempt's error, unchanged.
    """
    if max_attempts < 1:
        raise ValueError("max_attempts must be at least 1")

    for attempt in range(max_attempts):
        try:
            return await operation()
        except Exception as exc:
            if not retryable(exc) or attempt == max_attempts - 1:
                raise
            wait = delay_for(attempt) if delay_for else base_delay * (2 ** attempt)
            logger.warning(
                "%s failed: %s. Retrying in %.1fs (attempt %d/%d)",
                label, exc, wait, attempt + 1, max_attempts,
            )
            await sleep(wait)

    raise AssertionError("unreachable")
