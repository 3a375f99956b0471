"""
Rate Limiter
Per-account token buckets guarding outbound platform API calls
"""
import asyncio
import logging
import time
from typing import Callable, Dict, Hashable, Optional

from chatbridge.exceptions import RateLimitExceededError

logger = logging.getLogger(__name__)


class TokenBucket:
    """
    Classic token bucket. The lock only guards the refill arithmetic;
    callers sleep outside it.
    """

    def __init__(self, capacity: float, refill_per_second: float,
                 clock: Callable[[], float] = time.monotonic):
        self.capacity = float(capacity)
        self.refill_per_second = float(refill_per_second)
        self.clock = clock
        self.tokens = float(capacity)
        self.updated_at = clock()
        self._lock = asyncio.Lock()

    def _refill(self) -> None:
        now = self.clock()
        elapsed = max(0.0, now - self.updated_at)
        self.tokens = min(self.capacity, self.tokens + elapsed * self.refill_per_second)
        self.updated_at = now

    async def try_acquire(self) -> float:
        """Take a token if available. Returns 0 on success, else seconds until one is due."""
        async with self._lock:
            self._refill()
            if self.tokens >= 1.0:
                self.tokens -= 1.0
                return 0.0
            return (1.0 - self.tokens) / self.refill_per_second

    async def acquire(self, timeout: float) -> None:
        """
        Wait for a token for at most timeout seconds.

        Raises:
            RateLimitExceededError: If no token can be granted in time
        """
        deadline = self.clock() + max(0.0, timeout)
        while True:
            wait = await self.try_acquire()
            if wait <= 0:
                return
            remaining = deadline - self.clock()
            if wait > remaining:
                raise RateLimitExceededError(f"Rate limit exceeded; next permit in {wait:.2f}s")
            await asyncio.sleep(wait)


class RateLimiterRegistry:
    """One bucket per key (account id), created on first use"""

    def __init__(self, requests_per_minute: int, max_wait_seconds: float):
        self.requests_per_minute = max(1, requests_per_minute)
        self.max_wait_seconds = max_wait_seconds
        self._buckets: Dict[Hashable, TokenBucket] = {}

    def bucket(self, key: Hashable) -> TokenBucket:
        bucket = self._buckets.get(key)
        if bucket is None:
            bucket = TokenBucket(
                capacity=self.requests_per_minute,
                refill_per_second=self.requests_per_minute / 60.0,
            )
            self._buckets[key] = bucket
        return bucket

    async def acquire(self, key: Hashable, timeout: Optional[float] = None) -> None:
        wait = self.max_wait_seconds if timeout is None else min(timeout, self.max_wait_seconds)
        try:
            await self.bucket(key).acquire(wait)
        except RateLimitExceededError:
            logger.warning(f"🚦 Outbound rate limit hit for account {key}")
            raise
