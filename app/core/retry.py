"""Bounded retry for upstream provider calls.

Every provider call is treated as retryable: network errors, timeouts and
4xx/5xx responses alike. The wrapper re-executes the call with a fixed
backoff and, once the attempt budget is spent, raises ProviderError chained
to the last failure.

Usage:
    fetch_quote = with_retry(provider.get_quote, attempts=3, backoff_seconds=1.0)
    quote = await fetch_quote("AAPL")
"""

import asyncio
import functools
from typing import Any, Awaitable, Callable, Optional, TypeVar

import structlog

from app.core.errors import ProviderError

logger = structlog.get_logger(__name__)

T = TypeVar("T")


def with_retry(
    fn: Callable[..., Awaitable[T]],
    attempts: int,
    backoff_seconds: float,
    operation: Optional[str] = None,
) -> Callable[..., Awaitable[T]]:
    """
    Wrap an async callable with a fixed attempt budget and fixed backoff.

    Args:
        fn: Coroutine function performing the provider call
        attempts: Total number of attempts (not retries), at least 1
        backoff_seconds: Delay between consecutive attempts
        operation: Name used in logs and in the ProviderError message

    Returns:
        A coroutine function with the same signature as ``fn``
    """
    if attempts < 1:
        raise ValueError("attempts must be >= 1")

    name = operation or getattr(fn, "__name__", "provider_call")

    @functools.wraps(fn)
    async def wrapper(*args: Any, **kwargs: Any) -> T:
        last_error: Optional[Exception] = None

        for attempt in range(1, attempts + 1):
            try:
                return await fn(*args, **kwargs)
            except Exception as e:
                last_error = e
                logger.warning(
                    "provider call failed",
                    operation=name,
                    attempt=attempt,
                    attempts=attempts,
                    error=str(e),
                    error_type=type(e).__name__,
                )
                if attempt < attempts and backoff_seconds > 0:
                    await asyncio.sleep(backoff_seconds)

        logger.error("provider retries exhausted", operation=name, attempts=attempts)
        raise ProviderError(name, attempts, last_error) from last_error

    return wrapper
