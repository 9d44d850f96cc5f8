"""
Services for cacheguard.

This module contains the distributed lock manager, the stampede-guarded
cache with its bloom filter and circuit breaker, and the rate limiters.
"""

from .lock_manager import DistributedLockManager, AutoRenewingLock
from .stampede_guard import StampedeGuardedCache
from .bloom_filter import BloomFilter
from .circuit_breaker import CircuitBreaker
from .rate_limiter import FixedWindowRateLimiter, SlidingWindowRateLimiter, RateLimitResult

__all__ = [
    "DistributedLockManager",
    "AutoRenewingLock",
    "StampedeGuardedCache",
    "BloomFilter",
    "CircuitBreaker",
    "FixedWindowRateLimiter",
    "SlidingWindowRateLimiter",
    "RateLimitResult",
]
