"""
Token bucket rate limiter shared by every GoHighLevel call.
"""

import asyncio
import logging
import time
from typing import Awaitable, Callable


logger = logging.getLogger(__name__)


class TokenBucket:
    """
    Async token bucket.

    Callers wait (cooperatively) until a token is available instead of
    firing and hoping. Waiters are served one at a time under an asyncio
    lock, so one instance is safe to share across concurrent sync tasks
    on the same event loop.
    """

    def __init__(
        self,
        capacity: int,
        refill_per_second: float,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        if capacity <= 0 or refill_per_second <= 0:
            raise ValueError("capacity and refill rate must be positive")

        self.capacity = float(capacity)
        self.refill_per_second = float(refill_per_second)
        self._clock = clock
        self._sleep = sleep
        self._tokens = float(capacity)
        self._updated_at = clock()
        self._lock = asyncio.Lock()

    @property
    def available(self) -> float:
        self._refill()
        return self._tokens

    def _refill(self) -> None:
        now = self._clock()
        elapsed = max(0.0, now - self._updated_at)
        self._tokens = min(self.capacity, self._tokens + elapsed * self.refill_per_second)
        self._updated_at = now

    async def acquire(self, tokens: float = 1.0) -> float:
        """
        Take tokens from the bucket, waiting for refill if needed.

        Returns:
            Seconds spent waiting
        """
        if tokens > self.capacity:
            raise ValueError(f"cannot acquire {tokens} tokens from a bucket of {self.capacity}")

        waited = 0.0
        async with self._lock:
            while True:
                self._refill()
                if self._tokens >= tokens:
                    self._tokens -= tokens
                    if waited:
                        logger.debug(f"Rate limiter released after {waited:.2f}s")
                    return waited

                delay = (tokens - self._tokens) / self.refill_per_second
                waited += delay
                await self._sleep(delay)
