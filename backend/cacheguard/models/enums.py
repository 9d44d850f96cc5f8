"""
Enums shared by the lock manager and the stampede guard.
"""

from enum import Enum


class ContentionPolicy(str, Enum):
    """What a cache miss does when the population lock stays busy."""
    FAIL = "fail"    # re-read once, then raise CacheContendedError
    WAIT = "wait"    # keep polling the cache and the lock until wait_timeout_seconds


class GetOutcome(str, Enum):
    """How StampedeGuardedCache.get produced its value."""
    HIT = "hit"                        # fast path, no lock
    DOUBLE_CHECK_HIT = "double_check"  # filled while we waited for the lock
    LOADED = "loaded"                  # this caller ran the loader
    JOINED = "joined"                  # shared an in-process in-flight load
    CONTENDED_HIT = "contended_hit"    # lock busy, but the re-read found a value


class CircuitState(str, Enum):
    """Circuit breaker state around the loader."""
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"
