"""
Retry logic with exponential backoff for outbound service calls.
"""

import asyncio
import functools
import inspect
import logging
import random

import httpx

logger = logging.getLogger(__name__)

RETRYABLE_STATUS_CODES = {502, 503, 504}
RETRYABLE_EXCEPTIONS = (
    httpx.ConnectError,
    httpx.ReadTimeout,
    httpx.ConnectTimeout,
    httpx.RemoteProtocolError,
)


def retry_with_backoff(max_retries: int = 3, base_delay: float = 1.0):
    """Decorator that retries a coroutine on transient failures.

    Retries on connection errors, timeouts, and HTTP 502/503/504.
    Does NOT retry on 4xx responses.
    Uses exponential backoff with jitter.
    """

    def decorator(func):
        @functools.wraps(func)
        async def async_wrapper(*args, **kwargs):
            last_exception = None
            for attempt in range(max_retries + 1):
                try:
                    return await func(*args, **kwargs)
                except RETRYABLE_EXCEPTIONS as e:
                    last_exception = e
                    if attempt >= max_retries:
                        raise
                    delay = base_delay * (2 ** attempt) + random.uniform(0, 0.5)
                    logger.warning(
                        "Retry %d/%d for %s after %s (delay %.1fs)",
                        attempt + 1, max_retries, func.__name__, type(e).__name__, delay,
                    )
                    await asyncio.sleep(delay)
                except httpx.HTTPStatusError as e:
                    if e.response.status_code not in RETRYABLE_STATUS_CODES:
                        raise
                    last_exception = e
                    if attempt >= max_retries:
                        raise
                    delay = base_delay * (2 ** attempt) + random.uniform(0, 0.5)
                    logger.warning(
                        "Retry %d/%d for %s after HTTP %d (delay %.1fs)",
                        attempt + 1, max_retries, func.__name__,
                        e.response.status_code, delay,
                    )
                    await asyncio.sleep(delay)

            raise last_exception  # type: ignore

        if not inspect.iscoroutinefunction(func):
            raise TypeError("retry_with_backoff only wraps coroutine functions")
        return async_wrapper

    return decorator
