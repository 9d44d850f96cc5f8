"""
Stampede-guarded read-through cache.

On a miss, only the caller holding the key's population lock runs the
loader; everyone else either shares that caller's in-process result or
re-reads the cache once the lock is free. This module implements:

1. Fast path read with no locking
2. Cross-process single-flight through DistributedLockManager
3. In-process single-flight through a shared future per key
4. Double-check of the cache after the lock is acquired
5. Jittered TTLs so keys filled together do not expire together
6. Optional bloom filter, short-lived caching of not-found results and a
   circuit breaker around the loader
"""

import asyncio
import logging
import time
from datetime import datetime
from typing import Any, Awaitable, Callable, Dict, Optional, Tuple

from ..cache.config import StampedeSettings
from ..cache.manager import CacheManager
from ..cache.utils import CacheKeyBuilder, TTLCalculator
from ..exceptions import CacheContendedError, CircuitOpenError, StoreUnavailableError, UnknownKeyError
from ..models.enums import ContentionPolicy, GetOutcome
from ..models.lock import LockInfo
from ..models.metrics import GuardMetricsModel
from .bloom_filter import BloomFilter
from .circuit_breaker import CircuitBreaker
from .lock_manager import DistributedLockManager

logger = logging.getLogger(__name__)

Loader = Callable[[], Awaitable[Any]]


class _LeaderCancelled(Exception):
    """The in-process caller running the load was cancelled before finishing."""


class StampedeGuardedCache:
    """
    Read-through cache that performs at most one concurrent recompute per key.

    Values live at ``cache:<key>`` and the population lock at
    ``lock:cache:<key>``, so neither can collide with the other or with an
    application lock taken on ``key`` itself. The lock lease is short and
    independent of the cache entry TTL: it only has to outlive one loader
    call.
    """

    def __init__(
        self,
        cache: CacheManager,
        lock_manager: DistributedLockManager,
        settings: Optional[StampedeSettings] = None,
        bloom_filter: Optional[BloomFilter] = None,
        circuit_breaker: Optional[CircuitBreaker] = None
    ):
        """
        Args:
            cache: CacheManager holding the values
            lock_manager: DistributedLockManager on the same store
            settings: TTL, jitter, lock and contention parameters
            bloom_filter: When set, misses for keys never loaded are rejected
            circuit_breaker: When set, an open circuit stops loader calls
        """
        self.cache = cache
        self.lock_manager = lock_manager
        self.settings = settings or StampedeSettings()
        self.bloom_filter = bloom_filter
        self.circuit_breaker = circuit_breaker
        self.key_builder = CacheKeyBuilder()
        self.ttl_calculator = TTLCalculator()
        self._inflight: Dict[str, asyncio.Future] = {}

        self._requests = 0
        self._hits = 0
        self._misses = 0
        self._double_check_hits = 0
        self._loads = 0
        self._load_failures = 0
        self._joined = 0
        self._contended_hits = 0
        self._contended = 0
        self._filtered = 0
        self._null_values = 0
        self._circuit_rejections = 0
        self._load_ms_total = 0.0

        logger.info(
            f"StampedeGuardedCache initialized (ttl={self.settings.cache_ttl_seconds}s, "
            f"policy={self.settings.contention_policy.value})"
        )

    def lock_resource_for(self, key: str) -> str:
        """The lock resource guarding population of ``key``."""
        return self.cache.storage_key(key)

    def lock_key_for(self, key: str) -> str:
        """Store key of the population lock for ``key``."""
        return self.key_builder.lock_key(self.lock_resource_for(key))

    async def get(self, key: str, loader: Loader, ttl: Optional[int] = None) -> Any:
        """
        Return the cached value for ``key``, computing it with ``loader`` on a miss.

        Args:
            key: Cache key
            loader: Async zero-argument callable producing the value
            ttl: Base TTL in seconds, defaults to settings.cache_ttl_seconds

        Raises:
            CacheContendedError: Lock stayed busy and the cache is still empty
            UnknownKeyError: The bloom filter has never seen ``key``
            CircuitOpenError: The loader circuit is open
            StoreUnavailableError: Cache or lock store unreachable
            Exception: Whatever ``loader`` raised, unchanged; nothing is cached
        """
        value, _ = await self.get_with_outcome(key, loader, ttl)
        return value

    async def get_with_outcome(
        self,
        key: str,
        loader: Loader,
        ttl: Optional[int] = None
    ) -> Tuple[Any, GetOutcome]:
        """Like get(), also reporting which path produced the value."""
        self._requests += 1

        lookup = await self.cache.lookup(key)
        if lookup.found:
            self._hits += 1
            return lookup.value, GetOutcome.HIT
        self._misses += 1

        if self.bloom_filter is not None and not await self.bloom_filter.might_contain(key):
            self._filtered += 1
            logger.debug(f"Bloom filter rejected {key}")
            raise UnknownKeyError(key)

        if not self.settings.coalesce_local:
            return await self._populate(key, loader, ttl)

        inflight = self._inflight.get(key)
        if inflight is not None:
            self._joined += 1
            logger.debug(f"Joining in-flight load for {key}")
            try:
                return await asyncio.shield(inflight), GetOutcome.JOINED
            except _LeaderCancelled:
                logger.debug(f"In-flight load for {key} was cancelled, populating directly")
                return await self._populate(key, loader, ttl)

        future = asyncio.get_running_loop().create_future()
        # Marks the exception as retrieved when no caller joined
        future.add_done_callback(lambda f: f.cancelled() or f.exception())
        self._inflight[key] = future
        try:
            value, outcome = await self._populate(key, loader, ttl)
        except asyncio.CancelledError:
            future.set_exception(_LeaderCancelled(key))
            raise
        except BaseException as e:
            future.set_exception(e)
            raise
        else:
            future.set_result(value)
            return value, outcome
        finally:
            if self._inflight.get(key) is future:
                del self._inflight[key]

    async def _populate(self, key: str, loader: Loader, ttl: Optional[int]) -> Tuple[Any, GetOutcome]:
        settings = self.settings
        lock_info = await self.lock_manager.try_acquire(
            self.lock_resource_for(key),
            settings.lock_lease_seconds,
            settings.retry_interval_seconds,
            settings.max_attempts,
        )
        if lock_info is None:
            return await self._on_contention(key, loader, ttl)
        return await self._populate_locked(key, loader, ttl, lock_info)

    async def _populate_locked(
        self,
        key: str,
        loader: Loader,
        ttl: Optional[int],
        lock_info: LockInfo
    ) -> Tuple[Any, GetOutcome]:
        try:
            lookup = await self.cache.lookup(key)
            if lookup.found:
                self._double_check_hits += 1
                logger.debug(f"Cache filled while waiting for lock: {key}")
                return lookup.value, GetOutcome.DOUBLE_CHECK_HIT

            value = await self._load(key, loader, ttl)
            return value, GetOutcome.LOADED
        finally:
            await self._release(lock_info)

    async def _load(self, key: str, loader: Loader, ttl: Optional[int]) -> Any:
        breaker = self.circuit_breaker
        if breaker is not None and not breaker.allow_request():
            self._circuit_rejections += 1
            logger.warning(f"Loader circuit open, not loading {key}")
            raise CircuitOpenError(key, breaker.retry_after())

        self._loads += 1
        started = time.perf_counter()
        try:
            value = await loader()
        except Exception as e:
            self._load_failures += 1
            if breaker is not None:
                breaker.record_failure()
            logger.warning(f"Loader failed for {key}, nothing cached: {e}")
            raise
        finally:
            self._load_ms_total += (time.perf_counter() - started) * 1000

        if breaker is not None:
            breaker.record_success()

        if value is None and self.settings.null_ttl_seconds is not None:
            # not-found results get the short TTL and stay out of the bloom filter
            self._null_values += 1
            await self.cache.set(key, None, ttl=self.settings.null_ttl_seconds, jitter=False)
            logger.debug(f"Cached not-found result for {key} (ttl={self.settings.null_ttl_seconds}s)")
            return None

        final_ttl = self.ttl_calculator.calculate_ttl_with_jitter(
            ttl or self.settings.cache_ttl_seconds,
            self.settings.jitter_ratio,
            self.settings.min_ttl_seconds,
        )
        await self.cache.set(key, value, ttl=final_ttl, jitter=False)
        if self.bloom_filter is not None and value is not None:
            await self.bloom_filter.add(key)
        logger.debug(f"Cache populated: {key} (ttl={final_ttl}s)")
        return value

    async def register(self, key: str) -> None:
        """Add ``key`` to the bloom filter so misses on it reach the loader."""
        if self.bloom_filter is None:
            raise ValueError("register() needs a bloom filter")
        await self.bloom_filter.add(key)

    async def _release(self, lock_info: LockInfo) -> None:
        try:
            released = await self.lock_manager.release(lock_info)
        except StoreUnavailableError as e:
            logger.error(f"Could not release {lock_info.lock_key}, lease will expire on its own: {e}")
            return
        if not released:
            logger.warning(
                f"Population lock {lock_info.lock_key} expired before the load finished; "
                f"consider a longer lock_lease_seconds"
            )

    async def _on_contention(self, key: str, loader: Loader, ttl: Optional[int]) -> Tuple[Any, GetOutcome]:
        if self.settings.contention_policy == ContentionPolicy.WAIT:
            return await self._wait_for_population(key, loader, ttl)

        lookup = await self.cache.lookup(key)
        if lookup.found:
            self._contended_hits += 1
            return lookup.value, GetOutcome.CONTENDED_HIT

        self._contended += 1
        logger.warning(f"Cache key {key} contended: lock busy and no value after {self.settings.max_attempts} attempts")
        raise CacheContendedError(key, self.settings.max_attempts)

    async def _wait_for_population(self, key: str, loader: Loader, ttl: Optional[int]) -> Tuple[Any, GetOutcome]:
        """Poll the cache and the lock until a value appears or wait_timeout_seconds passes."""
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.settings.wait_timeout_seconds
        attempts = self.settings.max_attempts
        lock_resource = self.lock_resource_for(key)

        while True:
            lookup = await self.cache.lookup(key)
            if lookup.found:
                self._contended_hits += 1
                return lookup.value, GetOutcome.CONTENDED_HIT

            lock_info = await self.lock_manager.acquire(lock_resource, self.settings.lock_lease_seconds)
            attempts += 1
            if lock_info is not None:
                return await self._populate_locked(key, loader, ttl, lock_info)

            remaining = deadline - loop.time()
            if remaining <= 0:
                break
            await asyncio.sleep(min(self.settings.retry_interval_seconds, remaining))

        self._contended += 1
        logger.warning(f"Cache key {key} still contended after waiting {self.settings.wait_timeout_seconds}s")
        raise CacheContendedError(key, attempts)

    async def invalidate(self, key: str) -> bool:
        """Remove the cached value so the next get() recomputes it."""
        deleted = await self.cache.delete(key)
        if deleted:
            logger.debug(f"Cache invalidated: {key}")
        return deleted

    def get_metrics(self) -> GuardMetricsModel:
        """Snapshot of guard counters."""
        return GuardMetricsModel(
            requests=self._requests,
            hits=self._hits,
            misses=self._misses,
            double_check_hits=self._double_check_hits,
            loads=self._loads,
            load_failures=self._load_failures,
            joined=self._joined,
            contended_hits=self._contended_hits,
            contended=self._contended,
            filtered=self._filtered,
            null_values=self._null_values,
            circuit_rejections=self._circuit_rejections,
            avg_load_ms=self._load_ms_total / self._loads if self._loads else 0.0,
            last_updated=datetime.now(),
        )

    def reset_metrics(self) -> None:
        """Zero all guard counters."""
        self._requests = 0
        self._hits = 0
        self._misses = 0
        self._double_check_hits = 0
        self._loads = 0
        self._load_failures = 0
        self._joined = 0
        self._contended_hits = 0
        self._contended = 0
        self._filtered = 0
        self._null_values = 0
        self._circuit_rejections = 0
        self._load_ms_total = 0.0
        logger.info("Stampede guard metrics cleared")
