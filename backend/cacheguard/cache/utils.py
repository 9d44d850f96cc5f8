"""
Cache utilities for key naming conventions, TTL jitter and lock tokens.

This module provides utilities for consistent key generation, TTL
calculation with jitter, and the random tokens that prove lock ownership.
"""

import random
import secrets
import time
from enum import Enum
from typing import Any, Union


class CacheKeyPrefix(str, Enum):
    """Standard key prefixes for the keys this library writes."""

    CACHE = "cache"
    LOCK = "lock"
    BLOOM = "bloom"
    RATE_LIMIT_FIXED = "ratelimit:fixed"
    RATE_LIMIT_SLIDING = "ratelimit:sliding"


class CacheKeyBuilder:
    """
    Builder class for generating consistent cache keys.

    Provides methods for creating namespaced keys from a prefix, positional
    parts and sorted keyword parameters.
    """

    @staticmethod
    def build_key(prefix: Union[CacheKeyPrefix, str], *parts: Any, **params: Any) -> str:
        """
        Build a key with prefix, parts, and parameters.

        Args:
            prefix: Key prefix (CacheKeyPrefix enum or string)
            *parts: Key parts to join with colons
            **params: Additional parameters to include in key

        Returns:
            str: Generated key

        Example:
            build_key("product", 42, locale="en")
            # Returns: "product:42:locale=en"
        """
        prefix_str = prefix.value if isinstance(prefix, CacheKeyPrefix) else str(prefix)
        key_parts = [prefix_str]

        for part in parts:
            if part is not None:
                key_parts.append(str(part))

        if params:
            for key, value in sorted(params.items()):
                if value is not None:
                    key_parts.append(f"{key}={value}")

        return ":".join(key_parts)

    @staticmethod
    def lock_key(resource_key: str) -> str:
        """
        Map a resource to the key its lock lives under.

        The prefix is always added, so a resource named ``lock:x`` gets its
        own lock at ``lock:lock:x``.
        """
        return f"{CacheKeyPrefix.LOCK.value}:{resource_key}"


class TTLCalculator:
    """
    Utility class for TTL calculation with jitter.

    Spreading expiries around a base TTL keeps keys written together from
    expiring together.
    """

    @staticmethod
    def calculate_ttl_with_jitter(
        base_ttl: int,
        jitter_percent: float = 0.1,
        min_ttl: int = 1
    ) -> int:
        """
        Calculate TTL with random jitter to prevent expiration clustering.

        Args:
            base_ttl: Base TTL in seconds
            jitter_percent: Jitter as percentage of base TTL (0.0 to 1.0)
            min_ttl: Minimum TTL to ensure

        Returns:
            int: TTL with jitter applied

        Example:
            calculate_ttl_with_jitter(3600, 0.1)  # 3600 +/- 10% (3240-3960 seconds)
        """
        base_seconds = int(base_ttl)
        jitter_range = int(base_seconds * jitter_percent)

        jitter = random.randint(-jitter_range, jitter_range)
        final_ttl = base_seconds + jitter

        return max(final_ttl, min_ttl)

    @staticmethod
    def renewal_interval(lease_seconds: float) -> float:
        """Interval between lease renewals: a third of the lease."""
        return lease_seconds / 3.0


class TokenGenerator:
    """Generates the opaque ownership tokens stored as lock values."""

    TOKEN_BYTES = 16

    @classmethod
    def generate(cls) -> str:
        """Return 32 hex characters from 16 cryptographically random bytes."""
        return secrets.token_hex(cls.TOKEN_BYTES)

    @staticmethod
    def request_member(now_ms: int) -> str:
        """Unique sorted-set member for one rate limited request."""
        return f"{now_ms}-{secrets.token_hex(6)}"


def now_ms() -> int:
    """Wall clock time in milliseconds, shared across processes."""
    return int(time.time() * 1000)

