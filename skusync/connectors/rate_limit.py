"""Token-bucket limiter for outbound platform calls.

Each platform client owns exactly one bucket sized to that platform's
documented burst and refill rate. A caller that cannot get a token within
max_wait seconds fails with RateLimitExceeded instead of queueing forever.
"""

import asyncio
import time

from loguru import logger

from ..errors import RateLimitExceeded


class TokenBucket:
    def __init__(
        self,
        platform: str,
        capacity: int,
        refill_per_second: float,
        max_wait: float = 5.0,
        clock=time.monotonic,
        sleep=asyncio.sleep,
    ):
        if capacity < 1 or refill_per_second <= 0:
            raise ValueError("bucket needs capacity >= 1 and a positive refill rate")
        self.platform = platform
        self.capacity = capacity
        self.refill_per_second = refill_per_second
        self.max_wait = max_wait
        self._clock = clock
        self._sleep = sleep
        self._tokens = float(capacity)
        self._updated = clock()
        self._lock = asyncio.Lock()

    @property
    def available(self) -> float:
        self._refill()
        return self._tokens

    def _refill(self) -> None:
        now = self._clock()
        elapsed = now - self._updated
        if elapsed > 0:
            self._tokens = min(self.capacity, self._tokens + elapsed * self.refill_per_second)
            self._updated = now

    async def acquire(self) -> None:
        """Take one token, suspending at most max_wait in total, lock queue included."""
        deadline = self._clock() + self.max_wait
        if self._lock.locked():
            try:
                await asyncio.wait_for(self._lock.acquire(), timeout=max(deadline - self._clock(), 0))
            except asyncio.TimeoutError:
                raise self._exceeded(deadline) from None
        else:
            await self._lock.acquire()
        try:
            while True:
                self._refill()
                if self._tokens >= 1:
                    self._tokens -= 1
                    return
                needed = (1 - self._tokens) / self.refill_per_second
                if needed > deadline - self._clock():
                    raise self._exceeded(deadline)
                await self._sleep(needed)
        finally:
            self._lock.release()

    def _exceeded(self, deadline: float) -> RateLimitExceeded:
        waited = self.max_wait - max(deadline - self._clock(), 0)
        logger.warning("Rate limit wait exceeded", platform=self.platform, waited=round(waited, 3))
        return RateLimitExceeded(self.platform, f"no request capacity within {self.max_wait}s")
