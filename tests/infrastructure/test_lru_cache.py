"""Unit tests for LRUCache."""

import pytest

from src.infrastructure.lru_cache import LRUCache


class TestLRUCache:
    """Test suite for LRUCache."""

    def test_evicts_least_recently_used(self):
        evicted = []
        cache = LRUCache(2, on_evict=evicted.append)
        cache.put("a", 1)
        cache.put("b", 2)
        cache.get("a")
        cache.put("c", 3)

        assert evicted == ["b"]
        assert cache.keys() == ["a", "c"]
        assert "b" not in cache

    def test_values_are_copied(self):
        cache = LRUCache(2)
        original = {"patientInfo": {"age": 40}}
        cache.put("a", original)
        original["patientInfo"]["age"] = 41

        returned = cache.get("a")
        returned["patientInfo"]["age"] = 99

        assert cache.get("a") == {"patientInfo": {"age": 40}}

    def test_zero_capacity_disables_caching(self):
        cache = LRUCache(0)
        cache.put("a", 1)
        assert len(cache) == 0
        assert cache.get("a") is None

    def test_negative_capacity(self):
        with pytest.raises(ValueError):
            LRUCache(-1)

    def test_pop_and_clear(self):
        cache = LRUCache(3)
        cache.put("a", 1)
        cache.put("b", 2)
        assert cache.pop("a") == 1
        assert cache.pop("a") is None
        cache.clear()
        assert len(cache) == 0

    def test_statistics(self):
        cache = LRUCache(1)
        cache.put("a", 1)
        cache.get("a")
        cache.get("missing")
        cache.put("b", 2)

        assert cache.get_statistics() == {
            'capacity': 1,
            'size': 1,
            'hits': 1,
            'misses': 1,
            'evictions': 1,
        }
