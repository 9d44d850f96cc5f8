"""
Tests for the distributed lock manager.

Covers mutual exclusion, token-checked release and renewal, lease expiry,
bounded and cancellable retry, and background renewal with lost-ownership
detection.
"""

import asyncio
import time
from unittest.mock import AsyncMock

import pytest

from cacheguard.cache import InMemoryStore
from cacheguard.cache.config import LockSettings
from cacheguard.exceptions import LockNotAcquiredError, LockNotHeldError, StoreUnavailableError
from cacheguard.services import DistributedLockManager


class TestAcquireAndRelease:
    """Test basic lock lifecycle."""

    @pytest.mark.asyncio
    async def test_order_walkthrough(self, lock_manager):
        """Acquire, contend, release, release again, re-acquire."""
        first = await lock_manager.acquire("order:42", 10)
        assert first is not None
        assert first.lock_key == "lock:order:42"

        assert await lock_manager.acquire("order:42", 10) is None

        assert await lock_manager.release(first) is True
        assert await lock_manager.release(first) is False

        third = await lock_manager.acquire("order:42", 10)
        assert third is not None
        assert third.token != first.token

    @pytest.mark.asyncio
    async def test_token_is_stored_value(self, lock_manager, store):
        lock = await lock_manager.acquire("invoice:7", 5)
        assert await store.get("lock:invoice:7") == lock.token
        assert len(lock.token) == 32

    @pytest.mark.asyncio
    async def test_concurrent_acquire_has_one_winner(self, lock_manager):
        results = await asyncio.gather(*(lock_manager.acquire("hot", 5) for _ in range(25)))
        winners = [lock for lock in results if lock is not None]
        assert len(winners) == 1

    @pytest.mark.asyncio
    async def test_release_with_foreign_token_keeps_lock(self, lock_manager, store):
        lock = await lock_manager.acquire("order:1", 5)
        assert await lock_manager.release("order:1", token="someone-else") is False
        assert await store.get("lock:order:1") == lock.token
        assert await lock_manager.release("order:1", token=lock.token) is True

    @pytest.mark.asyncio
    async def test_release_by_key_requires_token(self, lock_manager):
        with pytest.raises(ValueError):
            await lock_manager.release("order:1")

    @pytest.mark.asyncio
    async def test_stale_holder_cannot_release_new_owner(self, lock_manager, store):
        """A holder whose lease lapsed must not delete the next holder's lock."""
        stale = await lock_manager.acquire("job", 0.05)
        await asyncio.sleep(0.08)
        fresh = await lock_manager.acquire("job", 5)
        assert fresh is not None

        assert await lock_manager.release(stale) is False
        assert await store.get("lock:job") == fresh.token

    @pytest.mark.asyncio
    async def test_lease_expires(self, lock_manager):
        assert await lock_manager.acquire("short", 0.2) is not None
        assert await lock_manager.acquire("short", 0.2) is None
        await asyncio.sleep(0.25)
        assert await lock_manager.acquire("short", 0.2) is not None

    @pytest.mark.asyncio
    async def test_invalid_arguments(self, lock_manager):
        with pytest.raises(ValueError):
            await lock_manager.acquire("", 5)
        with pytest.raises(ValueError):
            await lock_manager.acquire("order:1", 0)
        with pytest.raises(ValueError):
            await lock_manager.try_acquire("order:1", 5, 0.01, 0)

    @pytest.mark.asyncio
    async def test_store_outage_is_not_contention(self, lock_manager, store):
        store.available = False
        with pytest.raises(StoreUnavailableError):
            await lock_manager.acquire("order:1", 5)
        assert lock_manager.get_metrics().store_errors == 1
        assert lock_manager.get_metrics().contended_attempts == 0


class TestRenew:
    """Test token-checked lease renewal."""

    @pytest.mark.asyncio
    async def test_renewal_keeps_lock_past_lease(self, lock_manager):
        lock = await lock_manager.acquire("batch", 0.2)
        deadline = time.monotonic() + 0.5
        while time.monotonic() < deadline:
            await asyncio.sleep(0.06)
            assert await lock_manager.renew(lock) is True
            assert await lock_manager.acquire("batch", 0.2) is None

    @pytest.mark.asyncio
    async def test_renew_with_wrong_token_leaves_ttl(self, lock_manager, store):
        await lock_manager.acquire("batch", 1)
        assert await lock_manager.renew("batch", token="intruder", lease_seconds=60) is False
        assert await store.ttl("lock:batch") <= 1

    @pytest.mark.asyncio
    async def test_renew_after_expiry_fails(self, lock_manager):
        lock = await lock_manager.acquire("batch", 0.05)
        await asyncio.sleep(0.08)
        assert await lock_manager.renew(lock) is False

    @pytest.mark.asyncio
    async def test_renew_updates_lock_info(self, lock_manager):
        lock = await lock_manager.acquire("batch", 1)
        before = lock.expires_at
        await asyncio.sleep(0.01)
        assert await lock_manager.renew(lock, lease_seconds=30) is True
        assert lock.lease_seconds == 30
        assert lock.expires_at > before


class TestTryAcquire:
    """Test bounded, cancellable retry."""

    @pytest.mark.asyncio
    async def test_gives_up_after_max_attempts(self, lock_manager):
        await lock_manager.acquire("busy", 5)
        started = time.monotonic()
        result = await lock_manager.try_acquire("busy", 5, retry_interval=0.02, max_attempts=3)
        elapsed = time.monotonic() - started

        assert result is None
        # two sleeps between three attempts, none after the last
        assert 0.035 <= elapsed < 0.5
        metrics = lock_manager.get_metrics()
        assert metrics.contended_attempts == 3
        assert metrics.exhausted_retries == 1

    @pytest.mark.asyncio
    async def test_succeeds_once_holder_releases(self, lock_manager):
        holder = await lock_manager.acquire("busy", 5)

        async def release_later():
            await asyncio.sleep(0.05)
            await lock_manager.release(holder)

        releaser = asyncio.create_task(release_later())
        lock = await lock_manager.try_acquire("busy", 5, retry_interval=0.01, max_attempts=50)
        await releaser

        assert lock is not None
        assert lock.token != holder.token

    @pytest.mark.asyncio
    async def test_cancellation_stops_retrying(self, lock_manager):
        await lock_manager.acquire("busy", 5)
        started = time.monotonic()
        with pytest.raises(TimeoutError):
            async with asyncio.timeout(0.05):
                await lock_manager.try_acquire("busy", 5, retry_interval=0.01, max_attempts=10_000)
        assert time.monotonic() - started < 0.5

        attempts_at_cancel = lock_manager.get_metrics().contended_attempts
        await asyncio.sleep(0.05)
        assert lock_manager.get_metrics().contended_attempts == attempts_at_cancel

    @pytest.mark.asyncio
    async def test_lock_context_releases(self, lock_manager, store):
        async with lock_manager.lock_context("order:9", 5) as lock:
            assert lock is not None
            assert await store.get("lock:order:9") == lock.token
        assert await store.get("lock:order:9") is None

    @pytest.mark.asyncio
    async def test_lock_context_yields_none_when_busy(self, lock_manager):
        await lock_manager.acquire("order:9", 5)
        async with lock_manager.lock_context("order:9", 5, 0.01, 2) as lock:
            assert lock is None


class TestAutoRenew:
    """Test background renewal."""

    @pytest.mark.asyncio
    async def test_lease_held_beyond_its_length(self, lock_manager):
        lease = await lock_manager.acquire_with_auto_renew("report", 0.2)
        try:
            await asyncio.sleep(0.5)
            assert lease.held
            assert lease.renewal_count >= 3
            assert await lock_manager.acquire("report", 0.2) is None
        finally:
            assert await lease.release() is True

        assert await lock_manager.acquire("report", 0.2) is not None

    @pytest.mark.asyncio
    async def test_detects_lost_ownership(self, lock_manager, store):
        lease = await lock_manager.acquire_with_auto_renew("report", 0.3)

        # Simulate the lease being taken over after a pause
        await store.delete("lock:report")
        intruder = await lock_manager.acquire("report", 5)
        assert intruder is not None

        async with asyncio.timeout(1):
            await lease.wait_lost()

        assert lease.lost
        assert not lease.held
        with pytest.raises(LockNotHeldError):
            lease.ensure_held()
        assert await lease.release() is False
        assert await store.get("lock:report") == intruder.token
        assert lock_manager.get_metrics().leases_lost == 1

    @pytest.mark.asyncio
    async def test_release_stops_renewal(self, lock_manager):
        lease = await lock_manager.acquire_with_auto_renew("report", 0.15)
        await asyncio.sleep(0.06)
        assert await lease.release() is True
        renewals = lock_manager.get_metrics().renewals

        await asyncio.sleep(0.15)
        assert lock_manager.get_metrics().renewals == renewals
        assert await lease.release() is False

    @pytest.mark.asyncio
    async def test_context_manager(self, lock_manager, store):
        async with await lock_manager.acquire_with_auto_renew("report", 1) as lease:
            lease.ensure_held()
            assert await store.get("lock:report") == lease.token
        assert await store.get("lock:report") is None

    @pytest.mark.asyncio
    async def test_busy_lock_raises(self, lock_manager):
        await lock_manager.acquire("report", 5)
        with pytest.raises(LockNotAcquiredError) as exc_info:
            await lock_manager.acquire_with_auto_renew("report", 1)
        assert exc_info.value.resource_key == "report"

    @pytest.mark.asyncio
    async def test_missed_tick_during_outage_is_tolerated(self, store):
        manager = DistributedLockManager(store, LockSettings(lease_seconds=0.3))
        lease = await manager.acquire_with_auto_renew("report")

        store.available = False
        await asyncio.sleep(0.12)
        assert not lease.lost
        store.available = True

        await asyncio.sleep(0.15)
        assert lease.held
        assert await lease.release() is True

    @pytest.mark.asyncio
    async def test_unexpected_renewal_error_marks_lease_lost(self, lock_manager, store):
        """A renewal that raises anything else stops the loop and reports the loss."""
        lease = await lock_manager.acquire_with_auto_renew("report", 0.3)
        store.compare_and_expire = AsyncMock(side_effect=RuntimeError("unexpected reply"))

        async with asyncio.timeout(1):
            await lease.wait_lost()

        assert lease.lost
        assert not lease.held
        assert lease._task.done()
        with pytest.raises(LockNotHeldError):
            lease.ensure_held()
        assert lock_manager.get_metrics().leases_lost == 1
        await lease.release()


class TestInspection:
    """Test lock status, active lock tracking and metrics."""

    @pytest.mark.asyncio
    async def test_lock_status(self, lock_manager):
        lock = await lock_manager.acquire("order:5", 5)

        status = await lock_manager.get_lock_status("order:5", lock.token)
        assert status.held
        assert status.owned_by_caller
        assert 0 < status.ttl_seconds <= 5

        other = await lock_manager.get_lock_status("order:5", "nope")
        assert other.held
        assert not other.owned_by_caller

        await lock_manager.release(lock)
        released = await lock_manager.get_lock_status("order:5")
        assert not released.held
        assert released.ttl_seconds is None

    @pytest.mark.asyncio
    async def test_active_locks_and_cleanup(self, lock_manager):
        await lock_manager.acquire("a", 0.03)
        await lock_manager.acquire("b", 5)
        assert len(lock_manager.get_active_locks()) == 2

        await asyncio.sleep(0.05)
        assert lock_manager.cleanup_expired_locks() == 1
        assert [lock["resource_key"] for lock in lock_manager.get_active_locks()] == ["b"]

    @pytest.mark.asyncio
    async def test_metrics_and_reset(self, lock_manager):
        lock = await lock_manager.acquire("m", 5)
        await lock_manager.acquire("m", 5)
        await lock_manager.release(lock)
        await lock_manager.release(lock)

        metrics = lock_manager.get_metrics()
        assert metrics.acquisitions == 1
        assert metrics.contended_attempts == 1
        assert metrics.releases == 1
        assert metrics.failed_releases == 1

        lock_manager.reset_metrics()
        assert lock_manager.get_metrics().acquisitions == 0

    @pytest.mark.asyncio
    async def test_managers_share_the_store(self):
        """Two managers stand in for two processes on one store."""
        shared = InMemoryStore()
        process_a = DistributedLockManager(shared)
        process_b = DistributedLockManager(shared)

        lock = await process_a.acquire("order:42", 5)
        assert await process_b.acquire("order:42", 5) is None
        assert await process_b.release("order:42", token=lock.token) is True
        assert await process_b.acquire("order:42", 5) is not None
