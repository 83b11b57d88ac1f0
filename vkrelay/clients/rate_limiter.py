"""
Async rate limiter for outgoing VK API calls.
Allows at most `max_calls` acquisitions inside any sliding `period` window.
"""
import asyncio
import collections
import time
from typing import Callable, Deque


class AsyncRateLimiter:
    """Count-by-interval limiter shared by every VK API call."""

    def __init__(self, max_calls: int, period: float = 1.0,
                 clock: Callable[[], float] = time.monotonic):
        if max_calls < 1:
            raise ValueError("max_calls must be at least 1")
        if period <= 0:
            raise ValueError("period must be positive")
        self.max_calls = max_calls
        self.period = period
        self._clock = clock
        self._calls: Deque[float] = collections.deque()
        self._lock = asyncio.Lock()

    @classmethod
    def per_second(cls, rate: float) -> "AsyncRateLimiter":
        """Build a limiter from a (possibly fractional) calls-per-second rate."""
        if rate >= 1:
            return cls(int(rate), 1.0)
        return cls(1, 1.0 / rate)

    async def acquire(self) -> None:
        async with self._lock:
            while True:
                now = self._clock()
                while self._calls and now - self._calls[0] >= self.period:
                    self._calls.popleft()
                if len(self._calls) < self.max_calls:
                    self._calls.append(now)
                    return
                await asyncio.sleep(self.period - (now - self._calls[0]))

    async def __aenter__(self) -> "AsyncRateLimiter":
        await self.acquire()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        return None
