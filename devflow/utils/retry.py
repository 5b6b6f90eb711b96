"""Retry utilities for handling transient failures.

Provides a decorator for retrying async operations with capped exponential
backoff. The engine uses it to give retryable capability failures exactly
one more attempt before surfacing them.

Example:
    >>> from devflow.utils.retry import async_retry
    >>>
    >>> @async_retry(max_attempts=2, base_delay=1.0, retry_if=lambda e: e.retryable,
    ...              exceptions=(CapabilityError,))
    ... async def call_handler() -> dict:
    ...     return await handler(params, context)

Backoff Formula:
    delay = min(base_delay * backoff_factor ** (attempt - 1), max_delay)
    For base_delay=1.0, backoff_factor=2.0: 1s, 2s, 4s, ...
"""

import asyncio
import functools
from collections.abc import Callable
from typing import Any, TypeVar

import structlog

log = structlog.get_logger(__name__)

T = TypeVar("T")


def backoff_delay(attempt: int, base_delay: float, backoff_factor: float, max_delay: float) -> float:
    """Delay to wait after failed attempt number ``attempt`` (1-based)."""
    return min(base_delay * backoff_factor ** (attempt - 1), max_delay)


def async_retry(
    max_attempts: int = 3,
    base_delay: float = 1.0,
    backoff_factor: float = 2.0,
    max_delay: float = 30.0,
    exceptions: tuple[type[Exception], ...] = (Exception,),
    retry_if: Callable[[Exception], bool] | None = None,
    on_retry: Callable[[int, Exception, float], Any] | None = None,
) -> Callable[[Callable[..., Any]], Callable[..., Any]]:
    """Decorator for async functions with exponential backoff retry logic.

    Args:
        max_attempts: Maximum number of calls, the first one included.
        base_delay: Delay in seconds after the first failed attempt.
        backoff_factor: Multiplier applied to the delay for each further attempt.
        max_delay: Upper bound on any single delay.
        exceptions: Exception types that may trigger a retry. Others
            propagate immediately.
        retry_if: Optional predicate; a caught exception is only retried
            when it returns True.
        on_retry: Optional callback ``(attempt, error, delay)`` invoked
            before sleeping. May be a coroutine function.

    Returns:
        A decorator function that wraps async functions with retry logic.

    Raises:
        The last caught exception once attempts are exhausted or the
        exception is not eligible for a retry.
    """

    def decorator(func: Callable[..., Any]) -> Callable[..., Any]:
        @functools.wraps(func)
        async def wrapper(*args: Any, **kwargs: Any) -> Any:
            for attempt in range(1, max_attempts + 1):
                try:
                    return await func(*args, **kwargs)
                except exceptions as e:
                    if retry_if is not None and not retry_if(e):
                        raise

                    if attempt == max_attempts:
                        log.error(
                            "retry_exhausted",
                            function=func.__name__,
                            attempts=attempt,
                            error=str(e),
                        )
                        raise

                    delay = backoff_delay(attempt, base_delay, backoff_factor, max_delay)
                    log.warning(
                        "retry_attempt",
                        function=func.__name__,
                        attempt=attempt,
                        max_attempts=max_attempts,
                        delay=delay,
                        error=str(e),
                    )
                    if on_retry is not None:
                        result = on_retry(attempt, e, delay)
                        if asyncio.iscoroutine(result):
                            await result
                    await asyncio.sleep(delay)

            # Unreachable with max_attempts >= 1
            raise RuntimeError("Retry logic error")

        return wrapper

    return decorator
