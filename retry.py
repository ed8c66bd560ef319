import asyncio
import logging
from typing import Awaitable, Callable, Optional, TypeVar

from errors import is_rate_limit

logger = logging.getLogger("rag_app.retry")

T = TypeVar("T")


async def with_retry(
    operation: Callable[[], Awaitable[T]],
    max_attempts: int = 3,
    base_delay: float = 65.0,
    is_retryable: Callable[[BaseException], bool] = is_rate_limit,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> T:
    """
    Run ``operation`` and retry it on rate-limit errors with linear backoff.

    The wait after failed attempt ``n`` (1-indexed) is ``base_delay * n``.
    Errors for which ``is_retryable`` is false are raised immediately. When
    every attempt hit a rate limit, the last rate-limit error is raised.
    """
    if max_attempts < 1:
        raise ValueError("max_attempts must be >= 1")

    last_error: Optional[BaseException] = None
    for attempt in range(1, max_attempts + 1):
        try:
            return await operation()
        except Exception as exc:
            if not is_retryable(exc):
                raise
            last_error = exc
            if attempt == max_attempts:
                break
            delay = base_delay * attempt
            logger.warning(
                "Rate limit hit. Waiting %.1fs before retry (%d/%d)",
                delay,
                attempt,
                max_attempts,
            )
            await sleep(delay)

    logger.error("Rate limit persisted after %d attempts", max_attempts)
    raise last_error
