"""
Tests for the store-backed bloom filter.
"""

import pytest

from cacheguard.services import BloomFilter


class TestBloomFilter:

    @pytest.mark.asyncio
    async def test_added_keys_are_found(self, store):
        bloom = BloomFilter(store, size_bits=8192, hash_functions=4)
        keys = [f"product:{i}" for i in range(50)]
        for key in keys:
            await bloom.add(key)

        for key in keys:
            assert await bloom.might_contain(key)

    @pytest.mark.asyncio
    async def test_empty_filter_contains_nothing(self, store):
        bloom = BloomFilter(store, size_bits=8192, hash_functions=4)
        assert not await bloom.might_contain("product:1")

    @pytest.mark.asyncio
    async def test_false_positive_rate_is_low(self, store):
        bloom = BloomFilter(store, size_bits=20_000, hash_functions=7)
        for i in range(1000):
            await bloom.add(f"user:{i}")

        false_positives = 0
        for i in range(1000, 3000):
            if await bloom.might_contain(f"user:{i}"):
                false_positives += 1
        assert false_positives < 100

    @pytest.mark.asyncio
    async def test_clear(self, store):
        bloom = BloomFilter(store, size_bits=1024)
        await bloom.add("k")
        assert await bloom.clear() is True
        assert not await bloom.might_contain("k")

    def test_offsets_are_stable_and_in_range(self):
        bloom = BloomFilter(store=None, name="orders", size_bits=1000, hash_functions=5)
        offsets = bloom.offsets("order:42")

        assert offsets == bloom.offsets("order:42")
        assert len(offsets) == 5
        assert all(0 <= offset < 1000 for offset in offsets)
        assert bloom.bitmap_key == "bloom:orders"

    def test_invalid_arguments(self):
        with pytest.raises(ValueError):
            BloomFilter(store=None, size_bits=0)
        with pytest.raises(ValueError):
            BloomFilter(store=None, hash_functions=0)
        with pytest.raises(ValueError):
            BloomFilter(store=None, name="")
