"""Token-bucket rate limiting for calls to external services."""

import asyncio
import logging
import time
from typing import Optional

logger = logging.getLogger(__name__)


class TokenBucket:
    """Asynchronous token bucket.

    ``rate`` tokens are added per second up to ``capacity``. Each
    :meth:`acquire` consumes one token, sleeping until one is available.
    Waiters are served in arrival order.
    """

    def __init__(self, rate: float, capacity: Optional[float] = None, name: str = "default"):
        if rate <= 0:
            raise ValueError("rate must be positive")
        self.rate = rate
        self.capacity = capacity if capacity is not None else max(1.0, rate)
        if self.capacity < 1:
            raise ValueError("capacity must allow at least one token")
        self.name = name
        self._tokens = self.capacity
        self._updated = time.monotonic()
        self._lock = asyncio.Lock()

    def _refill(self) -> None:
        now = time.monotonic()
        elapsed = now - self._updated
        self._updated = now
        self._tokens = min(self.capacity, self._tokens + elapsed * self.rate)

    @property
    def available(self) -> float:
        """Tokens currently available (refilled to now)."""
        self._refill()
        return self._tokens

    async def acquire(self) -> float:
        """Take one token; returns the time spent waiting in seconds."""
        waited = 0.0
        async with self._lock:
            self._refill()
            while self._tokens < 1:
                wait_time = (1 - self._tokens) / self.rate
                logger.debug(f"Rate limiter '{self.name}' waiting {wait_time:.2f}s")
                await asyncio.sleep(wait_time)
                waited += wait_time
                self._refill()
            self._tokens -= 1
        return waited

    async def __aenter__(self):
        await self.acquire()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        return False
