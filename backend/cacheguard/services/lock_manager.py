"""
Distributed lock manager built on atomic key-value store primitives.

Locks are leases: SET NX with an expiry and a random token as the value.
Only the holder of the current token can release or renew, which is
enforced by token-checked delete / expire scripts so a caller whose lease
already lapsed can never remove a lock that someone else now holds.
"""

import asyncio
import logging
import time
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Dict, List, Optional, Union, Any

from ..cache.config import LockSettings
from ..cache.store import KeyValueStore
from ..cache.utils import CacheKeyBuilder, TTLCalculator, TokenGenerator
from ..exceptions import LockNotAcquiredError, LockNotHeldError, StoreUnavailableError
from ..models.lock import LockInfo
from ..models.metrics import LockMetricsModel, LockStatusModel

logger = logging.getLogger(__name__)


class AutoRenewingLock:
    """
    Handle for a lease that is renewed in the background.

    The renewal task wakes every third of the lease. It stops when
    ``release()`` sets the stop flag, or by itself as soon as a renewal is
    refused or fails with an unexpected error, marking the lease lost.
    Lost ownership never raises into the holder; check
    ``lost`` / ``ensure_held()`` before each protected step instead.
    """

    def __init__(self, manager: "DistributedLockManager", lock_info: LockInfo):
        self.manager = manager
        self.lock_info = lock_info
        self.renew_interval = TTLCalculator.renewal_interval(lock_info.lease_seconds)
        self.renewal_count = 0
        self._stop_requested = False
        self._released = False
        self._lost = asyncio.Event()
        self._task: Optional[asyncio.Task] = None

    def start(self) -> None:
        self._task = asyncio.create_task(
            self._renew_loop(), name=f"lease-renewal:{self.lock_info.lock_key}"
        )

    async def _renew_loop(self) -> None:
        while not self._stop_requested:
            await asyncio.sleep(self.renew_interval)
            if self._stop_requested:
                break

            try:
                renewed = await self.manager.renew(self.lock_info)
            except StoreUnavailableError as e:
                # A missed tick is tolerated while the lease may still be valid
                if self.lock_info.is_expired:
                    logger.error(
                        f"Lease on {self.lock_info.lock_key} expired while the store was unreachable: {e}"
                    )
                    self._mark_lost()
                    break
                logger.warning(f"Lease renewal for {self.lock_info.lock_key} missed a tick: {e}")
                continue
            except Exception:
                logger.exception(f"Lease renewal for {self.lock_info.lock_key} failed unexpectedly")
                self._mark_lost()
                break

            if not renewed:
                self._mark_lost()
                break
            self.renewal_count += 1

    def _mark_lost(self) -> None:
        if self._lost.is_set():
            return
        self._lost.set()
        self.manager._leases_lost += 1
        logger.warning(
            f"Lost ownership of {self.lock_info.lock_key}; renewal loop stopped. "
            f"Work still running under this lock is no longer protected"
        )

    @property
    def lost(self) -> bool:
        """True once a renewal was refused or the lease lapsed."""
        return self._lost.is_set()

    @property
    def held(self) -> bool:
        return not self._released and not self.lost

    @property
    def token(self) -> str:
        return self.lock_info.token

    async def wait_lost(self) -> None:
        """Block until ownership is lost."""
        await self._lost.wait()

    def ensure_held(self) -> None:
        """
        Raises:
            LockNotHeldError: If the lease was lost or already released
        """
        if not self.held:
            raise LockNotHeldError(
                f"Lock {self.lock_info.lock_key} is no longer held by this caller",
                resource_key=self.lock_info.resource_key,
            )

    async def release(self) -> bool:
        """
        Stop renewing and release the lease.

        A refused release or a store failure is logged and reported as
        False rather than raised: the lease may simply have expired already.
        """
        if self._released:
            return False
        self._released = True
        self._stop_requested = True

        if self._task is not None and not self._task.done():
            self._task.cancel()
            await asyncio.gather(self._task, return_exceptions=True)

        try:
            released = await self.manager.release(self.lock_info)
        except StoreUnavailableError as e:
            logger.error(f"Could not release {self.lock_info.lock_key}, lease will expire on its own: {e}")
            return False

        if not released and not self.lost:
            logger.warning(f"Lease on {self.lock_info.lock_key} had already expired at release time")
        return released

    async def __aenter__(self) -> "AutoRenewingLock":
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.release()


class DistributedLockManager:
    """
    Lease-based distributed lock manager.

    Features:
    - Atomic acquisition with SET NX and expiry
    - Bounded, cancellable retry
    - Token-checked release and renewal
    - Background renewal with lost-ownership detection
    - Lock status inspection and metrics
    """

    def __init__(self, store: KeyValueStore, settings: Optional[LockSettings] = None):
        """
        Initialize distributed lock manager.

        Args:
            store: KeyValueStore shared by every process contending for locks
            settings: Default lease and retry parameters
        """
        self.store = store
        self.settings = settings or LockSettings()
        self.key_builder = CacheKeyBuilder()
        self.active_locks: Dict[str, LockInfo] = {}

        self._acquisitions = 0
        self._contended_attempts = 0
        self._exhausted_retries = 0
        self._releases = 0
        self._failed_releases = 0
        self._renewals = 0
        self._failed_renewals = 0
        self._leases_lost = 0
        self._store_errors = 0
        self._acquire_wait_ms_total = 0.0
        self._acquire_wait_samples = 0

        logger.info(f"DistributedLockManager initialized (default lease {self.settings.lease_seconds}s)")

    @staticmethod
    def _validate(resource_key: str, lease_seconds: float) -> None:
        if not resource_key:
            raise ValueError("resource_key must be a non-empty string")
        if lease_seconds is None or lease_seconds <= 0:
            raise ValueError(f"lease_seconds must be positive, got {lease_seconds}")

    def _resolve(self, lock: Union[LockInfo, str], token: Optional[str]):
        if isinstance(lock, LockInfo):
            return lock.lock_key, token or lock.token
        if token is None:
            raise ValueError("token is required when releasing or renewing by resource key")
        return self.key_builder.lock_key(lock), token

    async def acquire(self, resource_key: str, lease_seconds: Optional[float] = None) -> Optional[LockInfo]:
        """
        Make one attempt to take the lock.

        Args:
            resource_key: Resource identifier
            lease_seconds: Lease length, defaults to settings.lease_seconds

        Returns:
            LockInfo with a fresh token, or None if another token holds the lock

        Raises:
            ValueError: For an empty key or non-positive lease
            StoreUnavailableError: If the store cannot be reached
        """
        lease = lease_seconds if lease_seconds is not None else self.settings.lease_seconds
        self._validate(resource_key, lease)

        lock_key = self.key_builder.lock_key(resource_key)
        token = TokenGenerator.generate()

        try:
            acquired = await self.store.set_if_absent(lock_key, token, lease)
        except StoreUnavailableError:
            self._store_errors += 1
            raise

        if not acquired:
            self._contended_attempts += 1
            logger.debug(f"Lock busy: {lock_key}")
            return None

        lock_info = LockInfo.granted(resource_key, lock_key, token, lease)
        self.active_locks[lock_key] = lock_info
        self._acquisitions += 1
        logger.debug(f"Lock acquired: {lock_key} (lease {lease}s)")
        return lock_info

    async def try_acquire(
        self,
        resource_key: str,
        lease_seconds: Optional[float] = None,
        retry_interval: Optional[float] = None,
        max_attempts: Optional[int] = None
    ) -> Optional[LockInfo]:
        """
        Acquire with up to ``max_attempts`` tries, sleeping ``retry_interval``
        between them.

        Cancelling the calling task (directly or through asyncio.timeout)
        interrupts the sleep and propagates; no further attempts are made.

        Returns:
            LockInfo, or None once every attempt found the lock held
        """
        retry_interval = self.settings.retry_interval_seconds if retry_interval is None else retry_interval
        max_attempts = self.settings.max_attempts if max_attempts is None else max_attempts
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")

        started = time.perf_counter()
        for attempt in range(1, max_attempts + 1):
            lock_info = await self.acquire(resource_key, lease_seconds)
            if lock_info is not None:
                wait_ms = (time.perf_counter() - started) * 1000
                self._acquire_wait_ms_total += wait_ms
                self._acquire_wait_samples += 1
                if attempt > 1:
                    logger.debug(f"Lock acquired after {attempt} attempts ({wait_ms:.1f}ms): {lock_info.lock_key}")
                return lock_info
            if attempt < max_attempts:
                await asyncio.sleep(retry_interval)

        self._exhausted_retries += 1
        wait_ms = (time.perf_counter() - started) * 1000
        logger.debug(f"Gave up on lock {resource_key} after {max_attempts} attempts ({wait_ms:.1f}ms)")
        return None

    async def release(self, lock: Union[LockInfo, str], token: Optional[str] = None) -> bool:
        """
        Release a lock if, and only if, ``token`` still holds it.

        Args:
            lock: LockInfo from acquire, or a resource key together with ``token``
            token: Ownership token (taken from the LockInfo when omitted)

        Returns:
            True if the lock was deleted, False if the token was not current
        """
        lock_key, token = self._resolve(lock, token)

        try:
            released = await self.store.compare_and_delete(lock_key, token)
        except StoreUnavailableError:
            self._store_errors += 1
            raise

        held = self.active_locks.get(lock_key)
        if held is not None and held.token == token:
            del self.active_locks[lock_key]

        if released:
            self._releases += 1
            logger.debug(f"Lock released: {lock_key}")
        else:
            self._failed_releases += 1
            logger.warning(
                f"Lock release refused for {lock_key}: token is not the current holder "
                f"(lease expired or released twice)"
            )
        return released

    async def renew(
        self,
        lock: Union[LockInfo, str],
        token: Optional[str] = None,
        lease_seconds: Optional[float] = None
    ) -> bool:
        """
        Reset the lease to ``lease_seconds`` from now if ``token`` still holds it.

        Returns:
            True if extended, False if the token was not current (expiry untouched)
        """
        lock_key, token = self._resolve(lock, token)
        if lease_seconds is None:
            lease_seconds = lock.lease_seconds if isinstance(lock, LockInfo) else self.settings.lease_seconds
        if lease_seconds <= 0:
            raise ValueError(f"lease_seconds must be positive, got {lease_seconds}")

        try:
            renewed = await self.store.compare_and_expire(lock_key, token, lease_seconds)
        except StoreUnavailableError:
            self._store_errors += 1
            raise

        if renewed:
            self._renewals += 1
            if isinstance(lock, LockInfo):
                lock.extended(lease_seconds)
            logger.debug(f"Lock renewed: {lock_key} ({lease_seconds}s)")
        else:
            self._failed_renewals += 1
            logger.warning(f"Lock renewal refused for {lock_key}: token is not the current holder")
        return renewed

    async def acquire_with_auto_renew(
        self,
        resource_key: str,
        lease_seconds: Optional[float] = None
    ) -> AutoRenewingLock:
        """
        Acquire a lock and keep renewing it until released or lost.

        Usage:
            async with await lock_manager.acquire_with_auto_renew("report:daily", 30) as lease:
                for chunk in work:
                    lease.ensure_held()
                    await process(chunk)

        Raises:
            LockNotAcquiredError: If another token holds the lock
            StoreUnavailableError: If the store cannot be reached
        """
        lock_info = await self.acquire(resource_key, lease_seconds)
        if lock_info is None:
            raise LockNotAcquiredError(
                f"Lock on '{resource_key}' is held by another owner", resource_key=resource_key
            )

        handle = AutoRenewingLock(self, lock_info)
        handle.start()
        logger.debug(f"Auto-renewal started for {lock_info.lock_key} every {handle.renew_interval:.3f}s")
        return handle

    @asynccontextmanager
    async def lock_context(
        self,
        resource_key: str,
        lease_seconds: Optional[float] = None,
        retry_interval: Optional[float] = None,
        max_attempts: Optional[int] = None
    ):
        """
        Context manager for automatic lock acquisition and release.

        Usage:
            async with lock_manager.lock_context("order:42") as lock:
                if lock:
                    # Lock acquired, perform protected operation
                    pass
                else:
                    # Lock held elsewhere, handle appropriately
                    pass
        """
        lock_info = await self.try_acquire(resource_key, lease_seconds, retry_interval, max_attempts)

        try:
            yield lock_info
        finally:
            if lock_info:
                try:
                    await self.release(lock_info)
                except StoreUnavailableError as e:
                    logger.error(f"Could not release {lock_info.lock_key}, lease will expire on its own: {e}")

    async def get_lock_status(self, resource_key: str, token: Optional[str] = None) -> LockStatusModel:
        """
        Inspect a lock in the store.

        Args:
            resource_key: Resource identifier
            token: Optional token to compare against the current holder
        """
        lock_key = self.key_builder.lock_key(resource_key)
        current = await self.store.get(lock_key)
        ttl = await self.store.ttl(lock_key) if current is not None else None

        return LockStatusModel(
            resource_key=resource_key,
            lock_key=lock_key,
            held=current is not None,
            token=current,
            owned_by_caller=token is not None and current == token,
            ttl_seconds=ttl,
        )

    def get_active_locks(self) -> List[Dict[str, Any]]:
        """Locks acquired through this manager and not yet released."""
        return [lock.to_dict() for lock in self.active_locks.values()]

    def cleanup_expired_locks(self) -> int:
        """Drop locally tracked locks whose lease has run out."""
        expired_keys = [key for key, lock in self.active_locks.items() if lock.is_expired]
        for key in expired_keys:
            del self.active_locks[key]
        if expired_keys:
            logger.debug(f"Cleaned up {len(expired_keys)} expired locks")
        return len(expired_keys)

    def get_metrics(self) -> LockMetricsModel:
        """Snapshot of lock counters."""
        avg_wait = (
            self._acquire_wait_ms_total / self._acquire_wait_samples
            if self._acquire_wait_samples else 0.0
        )
        return LockMetricsModel(
            acquisitions=self._acquisitions,
            contended_attempts=self._contended_attempts,
            exhausted_retries=self._exhausted_retries,
            releases=self._releases,
            failed_releases=self._failed_releases,
            renewals=self._renewals,
            failed_renewals=self._failed_renewals,
            leases_lost=self._leases_lost,
            store_errors=self._store_errors,
            avg_acquire_wait_ms=avg_wait,
            last_updated=datetime.now(),
        )

    def reset_metrics(self) -> None:
        """Zero all lock counters."""
        self._acquisitions = 0
        self._contended_attempts = 0
        self._exhausted_retries = 0
        self._releases = 0
        self._failed_releases = 0
        self._renewals = 0
        self._failed_renewals = 0
        self._leases_lost = 0
        self._store_errors = 0
        self._acquire_wait_ms_total = 0.0
        self._acquire_wait_samples = 0
        logger.info("Lock metrics cleared")
