"""
Store-backed rate limiters.

Two variants share one result type:

- FixedWindowRateLimiter counts requests in a key that expires at the end
  of the window. Cheap, but allows up to 2x the limit across a boundary.
- SlidingWindowRateLimiter keeps a sorted set of request timestamps and
  counts only those inside the trailing window. Rejected requests are not
  recorded, so a client that keeps retrying is not locked out forever.
"""

import logging
from dataclasses import dataclass
from typing import Callable, Optional

from ..cache.store import KeyValueStore
from ..cache.utils import CacheKeyBuilder, CacheKeyPrefix, TokenGenerator, now_ms

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RateLimitResult:
    """Outcome of one rate limit check."""
    allowed: bool
    count: int
    limit: int

    @property
    def remaining(self) -> int:
        return max(0, self.limit - self.count)


class _RateLimiter:
    prefix: CacheKeyPrefix

    def __init__(self, store: KeyValueStore, limit: int, window_seconds: float):
        if limit < 1:
            raise ValueError("limit must be at least 1")
        if window_seconds <= 0:
            raise ValueError("window_seconds must be positive")
        self.store = store
        self.limit = limit
        self.window_seconds = window_seconds
        self.key_builder = CacheKeyBuilder()

    def key_for(self, identity: str) -> str:
        if not identity:
            raise ValueError("identity must be a non-empty string")
        return self.key_builder.build_key(self.prefix, identity)

    def _log(self, identity: str, result: RateLimitResult) -> RateLimitResult:
        if not result.allowed:
            logger.info(f"Rate limited {identity}: {result.count}/{self.limit} in {self.window_seconds}s")
        return result


class FixedWindowRateLimiter(_RateLimiter):
    """At most ``limit`` requests per identity per fixed window."""

    prefix = CacheKeyPrefix.RATE_LIMIT_FIXED

    async def allow(self, identity: str) -> RateLimitResult:
        count = await self.store.increment_window(self.key_for(identity), self.window_seconds)
        return self._log(identity, RateLimitResult(allowed=count <= self.limit, count=count, limit=self.limit))


class SlidingWindowRateLimiter(_RateLimiter):
    """At most ``limit`` requests per identity in any trailing window."""

    prefix = CacheKeyPrefix.RATE_LIMIT_SLIDING

    def __init__(
        self,
        store: KeyValueStore,
        limit: int,
        window_seconds: float,
        clock_ms: Optional[Callable[[], int]] = None
    ):
        super().__init__(store, limit, window_seconds)
        self._clock_ms = clock_ms or now_ms

    async def allow(self, identity: str) -> RateLimitResult:
        timestamp = self._clock_ms()
        allowed, count = await self.store.sliding_window_hit(
            self.key_for(identity),
            timestamp,
            self.window_seconds,
            self.limit,
            TokenGenerator.request_member(timestamp),
        )
        return self._log(identity, RateLimitResult(allowed=allowed, count=count, limit=self.limit))
