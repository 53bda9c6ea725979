"""
Retry utilities with exponential backoff and jitter.

Used beneath the provider client so that a single page request survives rate
limiting and transient server errors before the caller ever sees a failure.
"""

import asyncio
import inspect
import functools
import random
import time
from typing import Any, Callable, Optional, Type, Union

TOO_MANY_REQUESTS = 429


def backoff_delay(
    attempt: int,
    base_delay: float = 1.0,
    max_delay: float = 60.0,
    exponential_base: float = 2.0,
    jitter: bool = True,
) -> float:
    """
    Delay before the retry that follows ``attempt`` (1-based).

    Args:
        attempt: Number of the attempt that just failed
        base_delay: Initial delay between retries in seconds
        max_delay: Maximum delay between retries in seconds
        exponential_base: Base for exponential backoff calculation
        jitter: Whether to scale the delay by a random factor in [0.5, 1.0)

    Returns:
        Delay in seconds, never above ``max_delay``
    """
    delay = min(base_delay * (exponential_base ** (attempt - 1)), max_delay)
    if jitter:
        delay *= (0.5 + random.random() * 0.5)
    return delay


def retry(
    max_attempts: int = 3,
    base_delay: float = 1.0,
    max_delay: float = 60.0,
    exponential_base: float = 2.0,
    jitter: bool = True,
    exceptions: Union[Type[Exception], tuple] = Exception,
    logger: Optional[Any] = None
):
    """
    Retry decorator with exponential backoff.

    Args:
        max_attempts: Maximum number of attempts, the first call included
        base_delay: Initial delay between retries in seconds
        max_delay: Maximum delay between retries in seconds
        exponential_base: Base for exponential backoff calculation
        jitter: Whether to add random jitter to delays
        exceptions: Exception types to retry on
        logger: structlog logger for retry events

    Returns:
        Decorated function with retry logic
    """
    def decorator(func: Callable) -> Callable:
        @functools.wraps(func)
        def wrapper(*args, **kwargs):
            for attempt in range(1, max_attempts + 1):
                try:
                    return func(*args, **kwargs)
                except exceptions as e:
                    if attempt == max_attempts:
                        if logger:
                            logger.error(
                                "Retries exhausted",
                                function=func.__name__,
                                attempts=max_attempts,
                                final_exception=str(e),
                            )
                        raise

                    delay = backoff_delay(attempt, base_delay, max_delay, exponential_base, jitter)
                    if logger:
                        logger.warning(
                            "Retrying after failure",
                            function=func.__name__,
                            attempt=attempt,
                            max_attempts=max_attempts,
                            delay=round(delay, 3),
                            exception=str(e),
                        )
                    time.sleep(delay)

        @functools.wraps(func)
        async def async_wrapper(*args, **kwargs):
            for attempt in range(1, max_attempts + 1):
                try:
                    return await func(*args, **kwargs)
                except exceptions as e:
                    if attempt == max_attempts:
                        if logger:
                            logger.error(
                                "Retries exhausted",
                                function=func.__name__,
                                attempts=max_attempts,
                                final_exception=str(e),
                            )
                        raise

                    delay = backoff_delay(attempt, base_delay, max_delay, exponential_base, jitter)
                    if logger:
                        logger.warning(
                            "Retrying after failure",
                            function=func.__name__,
                            attempt=attempt,
                            max_attempts=max_attempts,
                            delay=round(delay, 3),
                            exception=str(e),
                        )
                    await asyncio.sleep(delay)

        if inspect.iscoroutinefunction(func):
            return async_wrapper
        return wrapper

    return decorator


def is_retryable_status(status: int) -> bool:
    """429 and every 5xx are transient; other 4xx are permanent."""
    return status == TOO_MANY_REQUESTS or 500 <= status <= 599
