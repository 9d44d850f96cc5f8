"""
Storage layer for cacheguard.

This module contains Valkey client configuration, the key-value store
backends, the cache manager, and key/TTL utilities.
"""

from .config import ValkeyConfig, LockSettings, StampedeSettings
from .client import ValkeyClient
from .store import KeyValueStore, ValkeyStore, InMemoryStore
from .utils import CacheKeyPrefix, CacheKeyBuilder, TTLCalculator, TokenGenerator
from .manager import CacheManager, CacheLookup, CacheStats

__all__ = [
    # Configuration
    "ValkeyConfig",
    "LockSettings",
    "StampedeSettings",

    # Client and stores
    "ValkeyClient",
    "KeyValueStore",
    "ValkeyStore",
    "InMemoryStore",

    # Manager
    "CacheManager",
    "CacheLookup",
    "CacheStats",

    # Utilities
    "CacheKeyPrefix",
    "CacheKeyBuilder",
    "TTLCalculator",
    "TokenGenerator",
]
