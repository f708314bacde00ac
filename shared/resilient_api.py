"""
Resilient API client with retry logic and error handling.

This module provides the retry primitive used for Google Calendar API calls:
exponential backoff on transient provider errors (rate limits, 5xx).

Timeouts and connection failures are NOT retried here. The calendar
projection is best-effort relative to the booking, so a slow provider must
degrade quickly instead of holding the caller.
"""

import asyncio
import logging
from typing import Any, Awaitable, Callable, TypeVar

from googleapiclient.errors import HttpError

logger = logging.getLogger(__name__)

T = TypeVar('T')

RETRYABLE_STATUS_CODES = (429, 500, 502, 503, 504)
RATE_LIMIT_REASONS = ("rateLimitExceeded", "userRateLimitExceeded")


async def call_with_retry(
    func: Callable[..., Awaitable[T]],
    *args: Any,
    max_retries: int = 3,
    initial_delay: float = 1.0,
    max_delay: float = 10.0,
    exponential_base: float = 2.0,
    **kwargs: Any,
) -> T:
    """
    Call an async function with exponential backoff retry logic.

    Args:
        func: Async function to call
        *args: Positional arguments to pass to func
        max_retries: Maximum number of retry attempts (default: 3)
        initial_delay: Initial delay between retries in seconds (default: 1.0)
        max_delay: Maximum delay between retries in seconds (default: 10.0)
        exponential_base: Base for exponential backoff (default: 2.0)
        **kwargs: Keyword arguments to pass to func

    Returns:
        Result from successful function call

    Raises:
        Exception: Non-retryable errors immediately, or the last retryable
        error once all retries are exhausted

    Example:
        >>> event = await call_with_retry(
        ...     execute_request,
        ...     request,
        ...     max_retries=2,
        ... )
    """
    name = getattr(func, "__name__", repr(func))

    for attempt in range(max_retries + 1):
        try:
            result = await func(*args, **kwargs)

            if attempt > 0:
                logger.info(f"Function {name} succeeded on attempt {attempt + 1}")
            return result

        except Exception as e:
            if not is_retryable_error(e):
                raise

            if attempt == max_retries:
                logger.error(
                    f"Function {name} failed after {max_retries + 1} attempts: {e}"
                )
                raise

            delay = min(initial_delay * (exponential_base ** attempt), max_delay)

            logger.warning(
                f"Function {name} failed (attempt {attempt + 1}/{max_retries + 1}), "
                f"retrying in {delay:.2f}s: {e}"
            )

            await asyncio.sleep(delay)

    raise RuntimeError("unreachable")  # pragma: no cover


def is_retryable_error(error: Exception) -> bool:
    """
    Determine if an error is retryable.

    Args:
        error: Exception to check

    Returns:
        bool: True if error is retryable, False otherwise

    Retryable errors:
    - Google Calendar API: 429 (rate limit), 500, 502, 503, 504
    - Google Calendar API: 403 with a rate-limit reason
    """
    if isinstance(error, HttpError):
        status = error.resp.status
        if status in RETRYABLE_STATUS_CODES:
            return True
        if status == 403:
            content = error.content.decode("utf-8", errors="ignore") if error.content else ""
            return any(reason in content for reason in RATE_LIMIT_REASONS)

    return False
