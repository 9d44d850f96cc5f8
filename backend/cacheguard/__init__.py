"""
cacheguard: distributed lease locks and stampede-guarded caching on Valkey.

The package provides:
1. A lease-based distributed lock with token-checked release and renewal
2. A read-through cache that collapses concurrent recomputes into one
3. Fixed and sliding window rate limiters backed by the same store

Every component receives its store handle explicitly; nothing here keeps
a process-wide connection.
"""

from .exceptions import (
    CacheGuardError,
    StoreUnavailableError,
    StoreTimeoutError,
    LockError,
    LockNotAcquiredError,
    LockNotHeldError,
    CacheContendedError,
    UnknownKeyError,
    CircuitOpenError,
)
from .cache import (
    ValkeyConfig,
    ValkeyClient,
    KeyValueStore,
    ValkeyStore,
    InMemoryStore,
    CacheManager,
    CacheLookup,
)
from .services import (
    DistributedLockManager,
    AutoRenewingLock,
    StampedeGuardedCache,
    BloomFilter,
    CircuitBreaker,
    FixedWindowRateLimiter,
    SlidingWindowRateLimiter,
    RateLimitResult,
)

__version__ = "0.1.0"

__all__ = [
    "CacheGuardError",
    "StoreUnavailableError",
    "StoreTimeoutError",
    "LockError",
    "LockNotAcquiredError",
    "LockNotHeldError",
    "CacheContendedError",
    "UnknownKeyError",
    "CircuitOpenError",
    "ValkeyConfig",
    "ValkeyClient",
    "KeyValueStore",
    "ValkeyStore",
    "InMemoryStore",
    "CacheManager",
    "CacheLookup",
    "DistributedLockManager",
    "AutoRenewingLock",
    "StampedeGuardedCache",
    "BloomFilter",
    "CircuitBreaker",
    "FixedWindowRateLimiter",
    "SlidingWindowRateLimiter",
    "RateLimitResult",
]
