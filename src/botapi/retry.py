"""
Bounded exponential-backoff retry for single Bot API calls.
"""

from __future__ import annotations

import asyncio
import logging
import random
from typing import Awaitable, Callable, List, TypeVar

from botapi.errors import is_retryable

logger = logging.getLogger("botapi.retry")

T = TypeVar("T")


class RetryExecutor:
    """Runs an async operation up to ``max_attempts`` times.

    The delay before attempt *k* (1-indexed, k >= 2) is
    ``min(max_delay, base_delay * backoff_multiplier ** (k - 2))``.  A
    ``retry_after`` hint on the failed attempt's error raises that delay
    to at least the hinted value.  ``jitter`` adds up to that fraction of
    the delay on top; it never changes which errors are retried.

    Args:
        max_attempts: Total attempts including the first one.
        base_delay: Delay before the second attempt, in seconds.
        max_delay: Upper bound for the computed backoff delay.
        backoff_multiplier: Growth factor between consecutive delays.
        jitter: Random extra delay as a fraction of the computed delay.
        classifier: Decides whether an exception is retryable.
        sleep: Coroutine used for backoff waits.
    """

    def __init__(
        self,
        max_attempts: int = 3,
        base_delay: float = 1.0,
        max_delay: float = 10.0,
        backoff_multiplier: float = 2.0,
        jitter: float = 0.0,
        classifier: Callable[[BaseException], bool] = is_retryable,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        self.max_attempts = int(max_attempts)
        self.base_delay = float(base_delay)
        self.max_delay = float(max_delay)
        self.backoff_multiplier = float(backoff_multiplier)
        self.jitter = max(0.0, float(jitter))
        self._classifier = classifier
        self._sleep = sleep

    def delay_before(self, attempt: int) -> float:
        """Backoff delay before *attempt* (1-indexed); 0 for the first one."""
        if attempt < 2:
            return 0.0
        return min(
            self.max_delay,
            self.base_delay * self.backoff_multiplier ** (attempt - 2),
        )

    def delays(self) -> List[float]:
        """The full delay schedule for a call that fails every attempt."""
        return [self.delay_before(k) for k in range(2, self.max_attempts + 1)]

    async def execute(self, operation: Callable[[], Awaitable[T]]) -> T:
        """Await ``operation()`` until it succeeds or retries are exhausted.

        Raises:
            The error of the last attempt, or the first non-retryable error.
        """
        attempt = 1
        while True:
            try:
                return await operation()
            except Exception as exc:
                if attempt >= self.max_attempts or not self._classifier(exc):
                    raise
                attempt += 1
                delay = self.delay_before(attempt)
                retry_after = getattr(exc, "retry_after", None)
                if retry_after is not None:
                    delay = max(delay, float(retry_after))
                if self.jitter:
                    delay += random.uniform(0.0, delay * self.jitter)
                logger.warning(
                    "Retrying in %.2fs (attempt %d/%d) after: %s",
                    delay,
                    attempt,
                    self.max_attempts,
                    exc,
                )
                await self._sleep(delay)
