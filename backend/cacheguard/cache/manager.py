"""
Cache manager with JSON serialization and operation statistics.

This module provides a high-level cache abstraction on top of a
KeyValueStore. Unlike a best-effort cache, store failures are never turned
into misses: they are counted and re-raised as StoreUnavailableError so
callers can tell an outage from an empty cache.
"""

import json
import logging
import time
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, Optional

from ..exceptions import StoreUnavailableError
from .store import KeyValueStore
from .utils import CacheKeyPrefix, TTLCalculator

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CacheLookup:
    """Result of a cache read: whether the key was present, and its value."""

    found: bool
    value: Any = None

    @classmethod
    def miss(cls) -> "CacheLookup":
        return cls(found=False)

    @classmethod
    def hit(cls, value: Any) -> "CacheLookup":
        return cls(found=True, value=value)


@dataclass
class CacheStats:
    """Cache operation statistics."""

    hit_count: int = 0
    miss_count: int = 0
    error_count: int = 0
    set_count: int = 0
    delete_count: int = 0
    total_operations: int = 0
    total_response_time_ms: float = 0.0
    start_time: datetime = field(default_factory=datetime.now)

    @property
    def hit_ratio(self) -> float:
        """Calculate cache hit ratio."""
        total_reads = self.hit_count + self.miss_count
        return self.hit_count / total_reads if total_reads > 0 else 0.0

    @property
    def avg_response_time_ms(self) -> float:
        """Calculate average response time."""
        return (self.total_response_time_ms / self.total_operations
                if self.total_operations > 0 else 0.0)

    def to_dict(self) -> Dict[str, Any]:
        """Convert stats to dictionary."""
        return {
            "hit_count": self.hit_count,
            "miss_count": self.miss_count,
            "error_count": self.error_count,
            "set_count": self.set_count,
            "delete_count": self.delete_count,
            "total_operations": self.total_operations,
            "hit_ratio": self.hit_ratio,
            "avg_response_time_ms": self.avg_response_time_ms,
            "uptime_seconds": (datetime.now() - self.start_time).total_seconds(),
        }


class CacheManager:
    """
    High-level cache manager.

    Features:
    - JSON serialization of cached values
    - Tagged hit/miss results instead of None sentinels
    - TTL jitter applied at write time
    - Operation statistics

    Values live under ``<namespace>:<key>`` so they never share a store key
    with locks, bloom filters or rate limit counters.
    """

    def __init__(
        self,
        store: KeyValueStore,
        jitter_percent: float = 0.1,
        min_ttl: int = 1,
        namespace: str = CacheKeyPrefix.CACHE.value
    ):
        """
        Initialize cache manager.

        Args:
            store: KeyValueStore holding cache entries
            jitter_percent: Default TTL jitter as a fraction of the base TTL
            min_ttl: Lower bound for jittered TTLs in seconds
            namespace: Store key prefix for cached values
        """
        if not namespace:
            raise ValueError("namespace must be a non-empty string")
        self.store = store
        self.namespace = namespace
        self.jitter_percent = jitter_percent
        self.min_ttl = min_ttl
        self.ttl_calculator = TTLCalculator()
        self.stats = CacheStats()

        logger.info(f"CacheManager initialized on {type(store).__name__}")

    def storage_key(self, key: str) -> str:
        """Store key holding the value cached for ``key``."""
        return f"{self.namespace}:{key}"

    def _record(self, started: float) -> None:
        self.stats.total_operations += 1
        self.stats.total_response_time_ms += (time.perf_counter() - started) * 1000

    def _record_error(self, key: str, error: Exception) -> None:
        self.stats.error_count += 1
        logger.error(f"Cache operation failed for key {key}: {error}")

    @staticmethod
    def serialize(value: Any) -> str:
        return json.dumps(value, default=str)

    @staticmethod
    def deserialize(raw: str) -> Any:
        try:
            return json.loads(raw)
        except (json.JSONDecodeError, TypeError):
            return raw

    async def lookup(self, key: str) -> CacheLookup:
        """
        Read a key.

        Returns:
            CacheLookup.hit(value) or CacheLookup.miss()

        Raises:
            StoreUnavailableError: If the store cannot be read
        """
        started = time.perf_counter()
        try:
            raw = await self.store.get(self.storage_key(key))
        except StoreUnavailableError as e:
            self._record_error(key, e)
            raise
        finally:
            self._record(started)

        if raw is None:
            self.stats.miss_count += 1
            logger.debug(f"Cache miss: {key}")
            return CacheLookup.miss()

        self.stats.hit_count += 1
        logger.debug(f"Cache hit: {key}")
        return CacheLookup.hit(self.deserialize(raw))

    async def get(self, key: str, default: Any = None) -> Any:
        """Get a cached value, or ``default`` when the key is absent."""
        result = await self.lookup(key)
        return result.value if result.found else default

    async def set(
        self,
        key: str,
        value: Any,
        ttl: Optional[int] = None,
        jitter: bool = True
    ) -> int:
        """
        Write a value, replacing any previous entry.

        Args:
            key: Cache key
            value: JSON-serializable value
            ttl: Base time to live in seconds, None for no expiry
            jitter: Spread the TTL by +/- jitter_percent

        Returns:
            The TTL actually applied (0 when the entry does not expire)
        """
        final_ttl = 0
        if ttl:
            if jitter:
                final_ttl = self.ttl_calculator.calculate_ttl_with_jitter(
                    ttl, self.jitter_percent, self.min_ttl
                )
            else:
                final_ttl = int(ttl)

        started = time.perf_counter()
        try:
            await self.store.set(self.storage_key(key), self.serialize(value), final_ttl or None)
        except StoreUnavailableError as e:
            self._record_error(key, e)
            raise
        finally:
            self._record(started)

        self.stats.set_count += 1
        logger.debug(f"Cache set: {key} (ttl={final_ttl}s)")
        return final_ttl

    async def delete(self, key: str) -> bool:
        """Delete a key. Returns True if an entry was removed."""
        started = time.perf_counter()
        try:
            deleted = await self.store.delete(self.storage_key(key))
        except StoreUnavailableError as e:
            self._record_error(key, e)
            raise
        finally:
            self._record(started)

        if deleted:
            self.stats.delete_count += 1
        return deleted

    async def get_ttl(self, key: str) -> Optional[float]:
        """Remaining TTL for key in seconds, None if missing or persistent."""
        return await self.store.ttl(self.storage_key(key))

    def get_stats(self) -> Dict[str, Any]:
        """Get cache statistics."""
        return self.stats.to_dict()

    def reset_stats(self) -> None:
        """Reset cache statistics."""
        self.stats = CacheStats()
        logger.info("Cache statistics reset")
