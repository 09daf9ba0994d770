import asyncio
from typing import Awaitable, Callable, TypeVar

import structlog

from .errors import describe

log = structlog.get_logger(__name__)

T = TypeVar("T")


def backoff_delay_ms(attempt: int, base_delay_ms: float) -> float:
    """Delay before retrying after failed ``attempt`` (1-based)."""
    return base_delay_ms * (2 ** (attempt - 1))


async def retry_with_backoff(
    operation: Callable[[], Awaitable[T]],
    max_attempts: int = 5,
    base_delay_ms: float = 1000,
    should_retry: Callable[[BaseException], bool] = lambda error: True,
) -> T:
    """Run ``operation`` until it succeeds, backing off exponentially.

    ``max_attempts`` counts every call including the first, so 5 attempts
    allow 4 retries. The error is re-raised untouched as soon as
    ``should_retry`` rejects it or attempts run out.
    """
    attempt = 1
    while True:
        try:
            return await operation()
        except Exception as e:
            if attempt >= max_attempts or not should_retry(e):
                raise
            delay = backoff_delay_ms(attempt, base_delay_ms)
            log.warning("retrying", attempt=attempt, max_attempts=max_attempts,
                        delay_ms=delay, error=describe(e))
            await asyncio.sleep(delay / 1000)
            attempt += 1
