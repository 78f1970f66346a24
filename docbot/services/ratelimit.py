
"""Pacing for groups of provider calls.

The embedding provider allows a fixed number of requests per minute. Callers
issue one group of requests at a time through a limiter; the limiter decides
how long to wait before the group may start.
"""

import asyncio
import time
from contextlib import asynccontextmanager
from typing import AsyncContextManager, AsyncIterator, Awaitable, Callable, Optional, Protocol

Clock = Callable[[], float]
Sleep = Callable[[float], Awaitable[None]]


class GroupRateLimiter(Protocol):
    def group(self) -> AsyncContextManager[None]: ...


class IntervalRateLimiter:
    """Runs groups one at a time with at least ``delay`` seconds between the
    end of one group and the start of the next.

    Shared by every caller of one gateway, so two ingestions running side by
    side still respect the provider quota together.
    """

    def __init__(self, delay: float, *, clock: Clock = time.monotonic, sleep: Sleep = asyncio.sleep):
        if delay < 0:
            raise ValueError("delay must be >= 0")
        self.delay = delay
        self._clock = clock
        self._sleep = sleep
        self._lock = asyncio.Lock()
        self._last_finished: Optional[float] = None

    def seconds_until_ready(self) -> float:
        if self._last_finished is None:
            return 0.0
        return max(0.0, self._last_finished + self.delay - self._clock())

    @asynccontextmanager
    async def group(self) -> AsyncIterator[None]:
        async with self._lock:
            wait = self.seconds_until_ready()
            if wait > 0:
                await self._sleep(wait)
            try:
                yield
            finally:
                self._last_finished = self._clock()


class UnlimitedRateLimiter:
    @asynccontextmanager
    async def group(self) -> AsyncIterator[None]:
        yield
