"""
Bounded retry with a fixed delay for every fallible upstream call.
"""

import asyncio
from typing import Awaitable, Callable, Optional, TypeVar

from .errors import ExhaustionError, TransientUpstreamError
from .logger import get_logger

T = TypeVar('T')

RETRY_ATTEMPTS = 3

_logger = get_logger('retry')


async def with_retry(
    operation: Callable[[], Awaitable[T]],
    delay: float,
    what: str = "operation",
    attempts: int = RETRY_ATTEMPTS,
    logger=None,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep
) -> T:
    """
    Run an async operation until it succeeds or the attempts run out.

    Only TransientUpstreamError is retried; any other exception propagates
    immediately. The delay is applied between attempts, never after the last.

    Args:
        operation: Zero-argument coroutine factory.
        delay: Seconds to sleep between attempts.
        what: Human-readable name used in logs and the final error.
        attempts: Maximum number of calls.
        logger: Logger or adapter to report failures to.
        sleep: Awaitable sleep, replaceable in tests.

    Returns:
        The first successful result.

    Raises:
        ExhaustionError: After the last failed attempt, chained to it.
    """
    log = logger or _logger
    last_error: Optional[TransientUpstreamError] = None

    for attempt in range(1, attempts + 1):
        try:
            return await operation()
        except TransientUpstreamError as e:
            last_error = e
            log.warning(f"{what} failed (attempt {attempt}/{attempts}): {e}")

        if attempt < attempts:
            await sleep(delay)

    raise ExhaustionError(what, attempts, last_error) from last_error
