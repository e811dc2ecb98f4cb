"""
Async utility helpers for Resource Guard.

Provides:
- async_retry: Retry decorator with fixed or exponential backoff
"""

from __future__ import annotations

import asyncio
import functools
import logging
from typing import Awaitable, Callable, Tuple, Type, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


def async_retry(
    attempts: int = 3,
    delay: float = 1.0,
    backoff: float = 2.0,
    exceptions: Tuple[Type[BaseException], ...] = (Exception,),
) -> Callable:
    """
    Retry an async callable on the given exceptions.

    The n-th retry waits ``delay * backoff ** (n - 1)`` seconds, so
    ``backoff=1.0`` gives a fixed delay. The error from the final attempt
    propagates unchanged.

    Raises:
        ValueError: ``attempts`` is below 1

    Example:
        @async_retry(attempts=3, delay=0.5, backoff=1.0)
        async def run_linter():
            ...
    """
    if attempts < 1:
        raise ValueError("attempts must be >= 1")

    def decorator(func: Callable[..., Awaitable[T]]) -> Callable[..., Awaitable[T]]:
        @functools.wraps(func)
        async def wrapper(*args, **kwargs) -> T:
            attempt = 1
            while True:
                try:
                    return await func(*args, **kwargs)
                except exceptions as e:
                    if attempt >= attempts:
                        raise
                    wait_time = delay * (backoff ** (attempt - 1))
                    logger.warning(
                        f"{func.__name__} failed (attempt {attempt}/{attempts}), "
                        f"retrying in {wait_time:.1f}s: {e}"
                    )
                    await asyncio.sleep(wait_time)
                    attempt += 1

        return wrapper

    return decorator
