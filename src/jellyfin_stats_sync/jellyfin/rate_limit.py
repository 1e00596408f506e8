"""Concurrency cap plus minimum start spacing for outgoing API requests."""

import asyncio
import time
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager


class RateLimiter:
    """
    Limit requests in flight and how often a request may start.

    Start spacing is a token bucket with capacity 1: at most one request
    starts every ``1 / rate_per_second`` seconds, so N requests take at
    least ``(N - 1) / rate_per_second`` seconds.

    Example:
        >>> limiter = RateLimiter(rate_per_second=10, max_concurrent=5)
        >>> async with limiter.slot():
        ...     await client.get(url)
    """

    def __init__(self, rate_per_second: float = 10.0, max_concurrent: int = 5):
        if max_concurrent < 1:
            raise ValueError("max_concurrent must be at least 1")
        self.rate_per_second = rate_per_second
        self.max_concurrent = max_concurrent
        self.min_interval = 1.0 / rate_per_second if rate_per_second > 0 else 0.0

        self._semaphore = asyncio.Semaphore(max_concurrent)
        self._lock = asyncio.Lock()
        self._next_start: float = 0.0

    async def _wait_for_turn(self) -> None:
        if self.min_interval <= 0:
            return
        async with self._lock:
            now = time.monotonic()
            wait = self._next_start - now
            if wait > 0:
                await asyncio.sleep(wait)
                now = time.monotonic()
            self._next_start = now + self.min_interval

    @asynccontextmanager
    async def slot(self) -> AsyncIterator[None]:
        """Hold a concurrency slot for the duration of one request."""
        async with self._semaphore:
            await self._wait_for_turn()
            yield
