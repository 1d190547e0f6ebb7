"""
Utility functions for the bundle checkout engine.
Retry helpers for throttled remote calls and transient database errors.
"""
import asyncio
import functools
import logging
import random
from typing import Any, Callable, Optional, Tuple, Type

from sqlalchemy.exc import (
    OperationalError,
    InterfaceError,
    TimeoutError as SQLAlchemyTimeoutError,
    DisconnectionError,
)

import settings
from services.errors import RateLimited

logger = logging.getLogger(__name__)

# Transient database errors that should be retried
TRANSIENT_DB_ERRORS: Tuple[Type[Exception], ...] = (
    OperationalError,
    InterfaceError,
    SQLAlchemyTimeoutError,
    DisconnectionError,
    ConnectionError,
    TimeoutError,
)


def is_transient_error(exc: Exception) -> bool:
    """Check if an exception is a transient error that should be retried."""
    if isinstance(exc, (RateLimited,) + TRANSIENT_DB_ERRORS):
        return True

    error_msg = str(exc).lower()
    transient_patterns = [
        "connection refused",
        "connection reset",
        "connection timed out",
        "too many connections",
        "server closed the connection",
        "temporarily unavailable",
    ]
    return any(pattern in error_msg for pattern in transient_patterns)


def _backoff_delay(attempt: int, base_delay: float, max_delay: float, jitter: bool, exc: Exception) -> float:
    delay = min(base_delay * (2 ** attempt), max_delay)
    if jitter:
        delay = delay * (0.5 + random.random())  # 50-150% of delay
    retry_after = getattr(exc, "retry_after", None)
    if retry_after:
        delay = max(delay, min(float(retry_after), max_delay))
    return delay


def retry_async(
    max_retries: int = 3,
    base_delay: float = 0.5,
    max_delay: float = 10.0,
    jitter: bool = True,
    retry_on: Optional[Tuple[Type[Exception], ...]] = None,
):
    """
    Decorator for async functions that retries on transient failures.

    Args:
        max_retries: Maximum number of retry attempts
        base_delay: Initial delay between retries in seconds (doubles per attempt)
        max_delay: Maximum delay between retries in seconds
        jitter: Whether to add random jitter to delays
        retry_on: Tuple of exception types to retry on (defaults to is_transient_error)
    """
    def decorator(func: Callable):
        @functools.wraps(func)
        async def wrapper(*args, **kwargs):
            for attempt in range(max_retries + 1):
                try:
                    return await func(*args, **kwargs)
                except Exception as e:
                    if retry_on:
                        should_retry = isinstance(e, retry_on)
                    else:
                        should_retry = is_transient_error(e)

                    if not should_retry or attempt >= max_retries:
                        raise

                    delay = _backoff_delay(attempt, base_delay, max_delay, jitter, e)
                    logger.warning(
                        f"Retry {attempt + 1}/{max_retries} for {getattr(func, '__name__', 'call')} "
                        f"after {delay:.2f}s due to: {type(e).__name__}: {str(e)[:100]}"
                    )
                    await asyncio.sleep(delay)

        return wrapper
    return decorator


async def with_retry(
    coro_func: Callable,
    *args,
    max_retries: Optional[int] = None,
    base_delay: Optional[float] = None,
    **kwargs,
) -> Any:
    """
    Call a catalog client method, retrying only on RateLimited.

    Example:
        sku = await with_retry(client.create_sku, item_id, 1999, "continue")
    """
    wrapped = retry_async(
        max_retries=settings.RATE_LIMIT_RETRIES if max_retries is None else max_retries,
        base_delay=settings.RATE_LIMIT_BASE_DELAY_SECONDS if base_delay is None else base_delay,
        retry_on=(RateLimited,),
    )(coro_func)
    return await wrapped(*args, **kwargs)
