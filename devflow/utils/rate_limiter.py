"""Async token bucket shared by all platform calls.

Bulk operations (project provisioning, cross-repository workflows) issue many
calls in a row; the bucket smooths them to a sustained rate while still
allowing short bursts.
"""

import asyncio
import time

import structlog

log = structlog.get_logger(__name__)


class TokenBucket:
    """Token bucket rate limiter.

    Args:
        rate: Tokens added per second. ``0`` disables limiting.
        capacity: Maximum burst size.
    """

    def __init__(self, rate: float = 10.0, capacity: int = 20) -> None:
        self.rate = rate
        self.capacity = max(1, capacity)
        self._tokens = float(self.capacity)
        self._updated = time.monotonic()
        self._lock = asyncio.Lock()

    @property
    def available(self) -> float:
        return self._tokens

    def _refill(self) -> None:
        now = time.monotonic()
        elapsed = now - self._updated
        self._updated = now
        self._tokens = min(self.capacity, self._tokens + elapsed * self.rate)

    async def acquire(self, tokens: float = 1.0) -> None:
        """Wait until ``tokens`` are available and consume them."""
        if self.rate <= 0:
            return
        async with self._lock:
            self._refill()
            if self._tokens < tokens:
                wait = (tokens - self._tokens) / self.rate
                log.debug("rate_limit_wait", seconds=round(wait, 3))
                await asyncio.sleep(wait)
                self._refill()
            self._tokens -= tokens
