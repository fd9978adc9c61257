"""Tests for the bounded LRU cache."""

import pytest

from chat_session_storage.cache import BoundedCache


class TestBoundedCache:
    """Tests for LRU eviction and TTL expiry."""

    def test_basic_get_put(self):
        cache = BoundedCache(max_entries=10)
        cache.put("key", "value")
        assert cache.get("key") == "value"

    def test_cache_miss_returns_default(self):
        cache = BoundedCache(max_entries=10)
        assert cache.get("missing") is None
        assert cache.get("missing", "fallback") == "fallback"

    def test_lru_eviction(self):
        cache = BoundedCache(max_entries=3)
        cache.put("a", 1)
        cache.put("b", 2)
        cache.put("c", 3)

        cache.put("d", 4)

        assert len(cache) == 3
        assert cache.get("a") is None  # Evicted
        assert cache.get("d") == 4

    def test_access_refreshes_recency(self):
        cache = BoundedCache(max_entries=3)
        cache.put("a", 1)
        cache.put("b", 2)
        cache.put("c", 3)

        cache.get("a")
        cache.put("d", 4)

        assert cache.get("a") == 1
        assert cache.get("b") is None

    def test_ttl_expiry(self, clock):
        cache = BoundedCache(max_entries=10, ttl_seconds=300, clock=clock)
        cache.put("secret", "value")

        clock.advance(299)
        assert cache.get("secret") == "value"

        clock.advance(1)
        assert cache.get("secret") is None
        assert "secret" not in cache

    def test_add_is_set_like(self):
        cache = BoundedCache(max_entries=2)
        assert cache.add("warned") is True
        assert cache.add("warned") is False
        assert "warned" in cache

    def test_add_stays_bounded(self):
        cache = BoundedCache(max_entries=2)
        for key in ("a", "b", "c", "d"):
            cache.add(key)
        assert len(cache) == 2
        assert cache.add("a") is True  # long since evicted

    def test_pop_and_clear(self):
        cache = BoundedCache(max_entries=10)
        cache.put("a", 1)
        cache.put("b", 2)

        assert cache.pop("a") == 1
        assert cache.pop("a") is None

        cache.clear()
        assert len(cache) == 0

    def test_stats(self):
        cache = BoundedCache(max_entries=4, ttl_seconds=60)
        cache.put("a", 1)
        stats = cache.stats()
        assert stats["size"] == 1
        assert stats["max_entries"] == 4
        assert stats["ttl_seconds"] == 60
        assert stats["utilization"] == 0.25

    def test_invalid_arguments(self):
        with pytest.raises(ValueError):
            BoundedCache(max_entries=0)
        with pytest.raises(ValueError):
            BoundedCache(ttl_seconds=0)
