"""
Shared fixtures: every component runs on an InMemoryStore so the suite
needs no Valkey server.
"""

import pytest
import pytest_asyncio

from cacheguard.cache import CacheManager, InMemoryStore
from cacheguard.cache.config import LockSettings, StampedeSettings
from cacheguard.services import DistributedLockManager, StampedeGuardedCache


@pytest_asyncio.fixture
async def store():
    """Fresh in-memory store."""
    memory_store = InMemoryStore()
    yield memory_store
    await memory_store.close()


@pytest.fixture
def lock_manager(store):
    """Lock manager with fast retries for tests."""
    return DistributedLockManager(
        store,
        LockSettings(lease_seconds=10.0, retry_interval_seconds=0.01, max_attempts=5),
    )


@pytest.fixture
def cache_manager(store):
    return CacheManager(store)


@pytest.fixture
def make_guard(cache_manager, lock_manager):
    """Factory building a StampedeGuardedCache with overridable settings."""
    def _make(bloom_filter=None, circuit_breaker=None, **overrides):
        return StampedeGuardedCache(
            cache_manager,
            lock_manager,
            StampedeSettings(**overrides),
            bloom_filter=bloom_filter,
            circuit_breaker=circuit_breaker,
        )
    return _make
