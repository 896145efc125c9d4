"""Retry utilities for handling transient platform failures.

Provides a decorator for retrying async operations with exponential backoff
and jitter. Only ``ExternalTransientError`` (rate limits, timeouts, 5xx) is
retried by default; conflicts, validation errors and other platform errors
propagate immediately.

Key Exports:
    async_retry: Decorator for adding retry logic to async functions.
    RetryPolicy: Immutable bundle of retry parameters taken from settings.
    compute_delay: The backoff formula, exposed for testing.

Example:
    >>> from devflow.utils.retry import async_retry
    >>>
    >>> @async_retry(max_attempts=3, base_delay=0.5)
    ... async def fetch_milestone(number: int) -> Milestone:
    ...     return await provider.get_milestone(repo, number)

Backoff Formula:
    delay = min(max_delay, base_delay * backoff_factor ** (attempt - 1))
    With jitter enabled the actual sleep is uniform in [delay / 2, delay].
    When the platform supplies ``retry_after`` the sleep is at least that long.
    Defaults (3 attempts, 0.5s base, factor 2): ~0.5s then ~1s.
"""

import asyncio
import functools
import random
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any, TypeVar

import structlog

from devflow.exceptions import ExternalTransientError

log = structlog.get_logger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class RetryPolicy:
    """Retry parameters shared by every platform call."""

    max_attempts: int = 3
    base_delay: float = 0.5
    backoff_factor: float = 2.0
    max_delay: float = 30.0
    jitter: bool = True


def compute_delay(
    attempt: int,
    base_delay: float,
    backoff_factor: float,
    max_delay: float,
    jitter: bool,
) -> float:
    """Delay to sleep after failed attempt number ``attempt`` (1-based)."""
    delay = min(max_delay, base_delay * backoff_factor ** (attempt - 1))
    if jitter:
        delay = random.uniform(delay / 2, delay)
    return delay


def async_retry(
    max_attempts: int = 3,
    base_delay: float = 0.5,
    backoff_factor: float = 2.0,
    max_delay: float = 30.0,
    jitter: bool = True,
    exceptions: tuple[type[Exception], ...] = (ExternalTransientError,),
) -> Callable[[Callable[..., Any]], Callable[..., Any]]:
    """Decorator for async functions with exponential backoff retry logic.

    Args:
        max_attempts: Maximum number of attempts before giving up, counting
            the first call.
        base_delay: Delay in seconds after the first failed attempt.
        backoff_factor: Multiplier applied to the delay for each further attempt.
        max_delay: Upper bound for a single delay.
        jitter: Randomize each delay within [delay / 2, delay].
        exceptions: Exception types that trigger a retry. Anything else is
            raised immediately.

    Returns:
        A decorator function that wraps async functions with retry logic.

    Raises:
        The last caught exception if all retry attempts are exhausted.
    """

    def decorator(func: Callable[..., Any]) -> Callable[..., Any]:
        @functools.wraps(func)
        async def wrapper(*args: Any, **kwargs: Any) -> Any:
            last_exception = None

            for attempt in range(1, max_attempts + 1):
                try:
                    return await func(*args, **kwargs)
                except exceptions as e:
                    last_exception = e
                    if attempt == max_attempts:
                        log.error(
                            "retry_exhausted",
                            function=func.__name__,
                            attempts=attempt,
                            error=str(e),
                        )
                        raise

                    delay = compute_delay(attempt, base_delay, backoff_factor, max_delay, jitter)
                    retry_after = getattr(e, "retry_after", None)
                    if retry_after:
                        delay = max(delay, min(float(retry_after), max_delay))
                    log.warning(
                        "retry_attempt",
                        function=func.__name__,
                        attempt=attempt,
                        max_attempts=max_attempts,
                        delay=round(delay, 3),
                        error=str(e),
                    )
                    await asyncio.sleep(delay)

            # This should never be reached, but satisfy type checker
            if last_exception:
                raise last_exception
            raise RuntimeError("Retry logic error")

        return wrapper

    return decorator


async def call_with_retry(policy: RetryPolicy, func: Callable[..., Any], *args: Any, **kwargs: Any) -> Any:
    """Invoke ``func`` under ``policy`` without decorating it.

    Providers use this so the retry parameters can come from settings at
    runtime instead of being fixed at import time.
    """
    wrapped = async_retry(
        max_attempts=policy.max_attempts,
        base_delay=policy.base_delay,
        backoff_factor=policy.backoff_factor,
        max_delay=policy.max_delay,
        jitter=policy.jitter,
    )(func)
    return await wrapped(*args, **kwargs)
