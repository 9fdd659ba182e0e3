"""
Token-bucket rate limiter for outbound Bot API calls.

One instance is shared by every reconciliation pass in the process.
Tokens are refilled lazily from elapsed monotonic time when ``acquire()``
runs; there is no background timer.
"""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Awaitable, Callable

logger = logging.getLogger("botapi.ratelimit")

Clock = Callable[[], float]
Sleep = Callable[[float], Awaitable[None]]


class RateLimiter:
    """Token bucket with ``burst_size`` capacity refilled at ``requests_per_second``.

    Args:
        requests_per_second: Refill rate in tokens per second.
        burst_size: Bucket capacity; the bucket starts full.
        clock: Monotonic time source (seconds).
        sleep: Coroutine used to wait for a token.
    """

    def __init__(
        self,
        requests_per_second: float = 30.0,
        burst_size: int = 5,
        clock: Clock = time.monotonic,
        sleep: Sleep = asyncio.sleep,
    ) -> None:
        if requests_per_second <= 0:
            raise ValueError("requests_per_second must be positive")
        if burst_size < 1:
            raise ValueError("burst_size must be at least 1")
        self.requests_per_second = float(requests_per_second)
        self.burst_size = int(burst_size)
        self._clock = clock
        self._sleep = sleep
        self._tokens = float(self.burst_size)
        self._last_refill = clock()
        # asyncio.Lock wakes waiters in arrival order.
        self._lock = asyncio.Lock()

    @property
    def tokens(self) -> float:
        """Tokens currently in the bucket (as of the last refill)."""
        return self._tokens

    def _refill(self) -> None:
        now = self._clock()
        elapsed = max(0.0, now - self._last_refill)
        self._tokens = min(
            float(self.burst_size),
            self._tokens + elapsed * self.requests_per_second,
        )
        self._last_refill = now

    async def acquire(self) -> float:
        """Take one token, waiting exactly as long as needed for it to appear.

        Returns:
            Seconds spent waiting (0.0 when a token was available).
        """
        async with self._lock:
            self._refill()
            waited = 0.0
            if self._tokens < 1:
                waited = (1 - self._tokens) / self.requests_per_second
                logger.debug("Rate limit reached; waiting %.3fs for a token", waited)
                await self._sleep(waited)
                self._refill()
                # The sleep can return marginally early on coarse clocks.
                self._tokens = max(self._tokens, 1.0)
            self._tokens -= 1
            return waited
