"""
Retry Utilities

Implements exponential backoff retry logic for resilient downstream calls.
"""

import asyncio
from functools import wraps
from typing import Any, Callable, Optional, Tuple, Type

from pnm_callbacks.utils.logging_config import get_logger

logger = get_logger(__name__)


def calculate_backoff(
    attempt: int,
    base: int = 2,
    max_backoff: int = 32,
) -> float:
    """
    Calculate exponential backoff delay.

    Args:
        attempt: Current retry attempt (0-indexed)
        base: Base for exponential calculation
        max_backoff: Maximum backoff time in seconds

    Returns:
        Backoff delay in seconds
    """
    backoff = min(base**attempt, max_backoff)
    return float(backoff)


def retry_async(
    max_attempts: int = 3,
    backoff_base: int = 2,
    backoff_max: int = 32,
    retryable_exceptions: Tuple[Type[Exception], ...] = (Exception,),
    on_retry: Optional[Callable[[Exception, int], None]] = None,
) -> Callable:
    """
    Decorator for async functions with exponential backoff retry logic.

    Args:
        max_attempts: Maximum number of attempts
        backoff_base: Base for exponential backoff
        backoff_max: Maximum backoff time in seconds
        retryable_exceptions: Tuple of exception types that should trigger retry
        on_retry: Optional callback function called on each retry

    Example:
        @retry_async(max_attempts=3, retryable_exceptions=(QueueException,))
        async def publish(message):
            await sqs_service.send_message(message)
    """

    def decorator(func: Callable) -> Callable:
        @wraps(func)
        async def wrapper(*args: Any, **kwargs: Any) -> Any:
            last_exception: Optional[Exception] = None

            for attempt in range(max_attempts):
                try:
                    result = await func(*args, **kwargs)
                    if attempt > 0:
                        logger.info(
                            f"Function {func.__name__} succeeded after {attempt} retries"
                        )
                    return result

                except retryable_exceptions as e:
                    last_exception = e

                    if attempt < max_attempts - 1:
                        backoff_time = calculate_backoff(attempt, backoff_base, backoff_max)

                        logger.warning(
                            f"Attempt {attempt + 1}/{max_attempts} failed for {func.__name__}: {str(e)}. "
                            f"Retrying in {backoff_time}s...",
                            extra={
                                "function": func.__name__,
                                "attempt": attempt + 1,
                                "max_attempts": max_attempts,
                                "backoff_time": backoff_time,
                                "error": str(e),
                            },
                        )

                        if on_retry:
                            on_retry(e, attempt)

                        await asyncio.sleep(backoff_time)
                    else:
                        logger.error(
                            f"All {max_attempts} attempts failed for {func.__name__}",
                            extra={
                                "function": func.__name__,
                                "max_attempts": max_attempts,
                                "error": str(e),
                            },
                        )

            if last_exception:
                raise last_exception

            raise RuntimeError(f"Unexpected error in retry logic for {func.__name__}")

        return wrapper

    return decorator
