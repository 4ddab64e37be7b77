"""
Resilience patterns for error recovery
"""

import asyncio
import functools
import logging
from typing import Any, Callable, Tuple, Type

from .exceptions import ProviderUnavailableError, RecordStoreError

logger = logging.getLogger(__name__)

RETRYABLE_ERRORS: Tuple[Type[Exception], ...] = (ProviderUnavailableError, RecordStoreError)


def with_retry(
    max_attempts: int = 3,
    delay: float = 1.0,
    retry_on: Tuple[Type[Exception], ...] = RETRYABLE_ERRORS,
):
    """
    Decorator for retrying failed operations with exponential backoff.

    Only exceptions listed in ``retry_on`` are retried; anything else (a
    configuration error, for instance) propagates on the first attempt.

    Args:
        max_attempts: Maximum number of attempts
        delay: Base delay between retries in seconds
        retry_on: Exception types worth retrying
    """
    def decorator(func: Callable) -> Callable:
        @functools.wraps(func)
        async def wrapper(*args, **kwargs) -> Any:
            for attempt in range(max_attempts):
                try:
                    return await func(*args, **kwargs)
                except retry_on as e:
                    if attempt >= max_attempts - 1:
                        raise
                    wait = delay * (2 ** attempt)
                    logger.warning(
                        f"{func.__name__} failed (attempt {attempt + 1}/{max_attempts}): {e}; "
                        f"retrying in {wait:.1f}s"
                    )
                    await asyncio.sleep(wait)

        return wrapper
    return decorator
