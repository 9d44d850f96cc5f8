"""
Bloom filter over a store bitmap.

Registers the keys that have a real value behind them so lookups for keys
that never existed can be turned away before they reach the loader. False
positives are possible, false negatives are not.
"""

import hashlib
import logging
from typing import List

from ..cache.store import KeyValueStore
from ..cache.utils import CacheKeyPrefix

logger = logging.getLogger(__name__)


class BloomFilter:
    """
    Double-hashed bloom filter stored as one bitmap key.

    Bit positions are ``(h1 + i * h2) % size_bits`` for ``i`` in
    ``range(hash_functions)``, where h1 and h2 are the two halves of the
    SHA-256 digest of the key. The defaults give about a 1% false positive
    rate at one million keys.
    """

    def __init__(
        self,
        store: KeyValueStore,
        name: str = "cache",
        size_bits: int = 9_585_059,
        hash_functions: int = 7
    ):
        if not name:
            raise ValueError("name must be a non-empty string")
        if size_bits < 1:
            raise ValueError("size_bits must be positive")
        if hash_functions < 1:
            raise ValueError("hash_functions must be at least 1")

        self.store = store
        self.size_bits = size_bits
        self.hash_functions = hash_functions
        self.bitmap_key = f"{CacheKeyPrefix.BLOOM.value}:{name}"

    def offsets(self, key: str) -> List[int]:
        """Bit positions for ``key``."""
        digest = hashlib.sha256(key.encode()).digest()
        h1 = int.from_bytes(digest[:8], "big")
        h2 = int.from_bytes(digest[8:16], "big") | 1
        return [(h1 + i * h2) % self.size_bits for i in range(self.hash_functions)]

    async def add(self, key: str) -> None:
        await self.store.set_bits(self.bitmap_key, self.offsets(key))
        logger.debug(f"Registered {key} in {self.bitmap_key}")

    async def might_contain(self, key: str) -> bool:
        """False means ``key`` was never added."""
        bits = await self.store.get_bits(self.bitmap_key, self.offsets(key))
        return all(bits)

    async def clear(self) -> bool:
        return await self.store.delete(self.bitmap_key)
