"""Retry-with-backoff for direct model calls."""

import logging
from collections.abc import Awaitable, Callable
from typing import TypeVar

from tenacity import (
    AsyncRetrying,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
)

from .report import RateLimitError, TransportError

logger = logging.getLogger(__name__)

T = TypeVar("T")

PERSISTENT_429_THRESHOLD = 2


def is_rate_limit(error: BaseException) -> bool:
    return isinstance(error, RateLimitError) or (
        isinstance(error, TransportError) and error.status == 429
    )


def default_should_retry(error: BaseException) -> bool:
    """Retry rate limits and server-side failures, nothing else."""
    if is_rate_limit(error):
        return True
    if isinstance(error, TransportError) and isinstance(error.status, int):
        return 500 <= error.status < 600
    return False


async def retry_with_backoff(
    fn: Callable[[], Awaitable[T]],
    *,
    max_attempts: int = 5,
    initial_delay: float = 5.0,
    max_delay: float = 30.0,
    should_retry: Callable[[BaseException], bool] = default_should_retry,
    on_persistent_429: Callable[[BaseException], Awaitable[str | None]] | None = None,
) -> T:
    """Call *fn* until it succeeds, backing off exponentially between tries.

    After PERSISTENT_429_THRESHOLD consecutive rate-limit failures,
    ``on_persistent_429`` is awaited; it may switch the active model (and
    return its name) so the next attempt goes to the fallback.
    """
    consecutive_429 = 0

    def _log_retry(retry_state) -> None:
        logger.warning(
            "model call failed (attempt %d/%d): %s; retrying",
            retry_state.attempt_number,
            max_attempts,
            retry_state.outcome.exception(),
        )

    retrying = AsyncRetrying(
        stop=stop_after_attempt(max_attempts),
        wait=wait_exponential(multiplier=initial_delay, max=max_delay),
        retry=retry_if_exception(should_retry),
        before_sleep=_log_retry,
        reraise=True,
    )
    async for attempt in retrying:
        with attempt:
            try:
                result = await fn()
            except TransportError as e:
                if not is_rate_limit(e):
                    consecutive_429 = 0
                    raise
                consecutive_429 += 1
                if consecutive_429 >= PERSISTENT_429_THRESHOLD and on_persistent_429:
                    switched = await on_persistent_429(e)
                    if switched:
                        logger.info("switched to fallback model %s", switched)
                        consecutive_429 = 0
                raise
    return result
