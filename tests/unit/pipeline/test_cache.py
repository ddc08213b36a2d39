"""
Unit tests for the cache layer and its backends.

Tests:
- Round trip with TTL expiry (memory backend, controlled clock)
- Negative caching through get_or_compute
- Prefix invalidation: key index vs full-group flush
- Expired keys are pruned from the index; the Redis index lives outside
  the value namespace
- Backend failures degrade to misses
"""

from unittest.mock import MagicMock, call

import pytest

from formsync.cache import (
    CacheLayer,
    CacheTTL,
    MemoryCacheBackend,
    RedisCacheBackend,
    form_fields_key,
    log_stats_key,
    settings_key,
)
from formsync_client.models import LogFilters


class TestRoundTrip:
    def test_set_then_get_until_ttl_elapses(self, cache, clock):
        assert cache.set("k", {"v": 1}, 60) is True

        assert cache.get("k") == ({"v": 1}, True)

        clock.advance(61)
        value, found = cache.get("k")
        assert found is False
        assert value is None

    def test_expired_and_never_set_look_the_same(self, cache, clock):
        cache.set("a", "x", 1)
        clock.advance(2)

        assert cache.get("a") == cache.get("never-set")

    def test_zero_ttl_never_expires(self, cache, clock):
        cache.set("k", 5, 0)
        clock.advance(10**6)

        assert cache.get("k") == (5, True)

    def test_delete(self, cache):
        cache.set("k", 1, 60)

        assert cache.delete("k") is True
        assert cache.get("k") == (None, False)

    def test_stats_count_hits_and_misses(self, cache):
        cache.set("k", 1, 60)
        cache.get("k")
        cache.get("nope")

        stats = cache.stats()
        assert (stats.hits, stats.misses, stats.sets) == (1, 1, 1)
        assert stats.hit_rate == 0.5


class TestGetOrCompute:
    def test_computes_once_while_cached(self, cache):
        fn = MagicMock(return_value=[1, 2])

        assert cache.get_or_compute("k", 60, fn) == [1, 2]
        assert cache.get_or_compute("k", 60, fn) == [1, 2]
        assert fn.call_count == 1

    def test_none_is_cached_for_negative_ttl(self, cache, clock):
        fn = MagicMock(return_value=None)

        assert cache.get_or_compute("missing", 3600, fn, negative_ttl=1800) is None
        assert cache.get_or_compute("missing", 3600, fn, negative_ttl=1800) is None
        assert fn.call_count == 1
        assert cache.get("missing") == (None, True)

        clock.advance(1801)
        cache.get_or_compute("missing", 3600, fn, negative_ttl=1800)
        assert fn.call_count == 2

    def test_none_not_cached_without_negative_ttl(self, cache):
        fn = MagicMock(return_value=None)

        cache.get_or_compute("missing", 60, fn)
        cache.get_or_compute("missing", 60, fn)

        assert fn.call_count == 2


class TestPrefixInvalidation:
    def test_index_strategy_deletes_only_matching_keys(self, memory_backend):
        cache = CacheLayer(memory_backend, group="g", invalidation="index")
        cache.set("log_stats_a", 1, 60)
        cache.set("log_stats_b", 2, 60)
        cache.set("settings_mailchimp", {"x": 1}, 60)

        assert cache.delete_by_prefix("log_stats_") is True

        assert cache.get("log_stats_a")[1] is False
        assert cache.get("log_stats_b")[1] is False
        assert cache.get("settings_mailchimp") == ({"x": 1}, True)
        assert memory_backend.tracked("g") == {"settings_mailchimp"}

    def test_flush_strategy_evicts_whole_group(self, memory_backend):
        cache = CacheLayer(memory_backend, group="g", invalidation="flush")
        other = CacheLayer(memory_backend, group="other", invalidation="flush")
        cache.set("log_stats_a", 1, 60)
        cache.set("settings_mailchimp", {"x": 1}, 60)
        other.set("settings_mailchimp", "kept", 60)

        assert cache.delete_by_prefix("log_stats_") is True

        assert cache.get("log_stats_a")[1] is False
        # unrelated values in the same group are evicted too
        assert cache.get("settings_mailchimp")[1] is False
        assert other.get("settings_mailchimp") == ("kept", True)
        assert memory_backend.tracked("g") == set()

    def test_expired_keys_pruned_from_index(self, memory_backend, clock):
        cache = CacheLayer(memory_backend, group="g", invalidation="index")
        cache.set("logs_short", 1, 10)
        cache.set("settings_mailchimp", {"x": 1}, 3600)
        clock.advance(11)

        assert cache.delete_by_prefix("log_stats_") is True

        assert memory_backend.tracked("g") == {"settings_mailchimp"}
        assert cache.get("settings_mailchimp") == ({"x": 1}, True)

    def test_memory_prune_counts_only_expired(self, memory_backend, clock):
        memory_backend.set("g", "a", "1", 5)
        memory_backend.set("g", "b", "1", 0)
        memory_backend.track("g", "a")
        memory_backend.track("g", "b")
        memory_backend.track("g", "deleted-elsewhere")
        clock.advance(6)

        assert memory_backend.prune("g") == 2
        assert memory_backend.tracked("g") == {"b"}
        assert memory_backend.prune("g") == 0

    def test_unknown_strategy_rejected(self, memory_backend):
        with pytest.raises(ValueError):
            CacheLayer(memory_backend, invalidation="wildcard")


class TestBackendFailures:
    @pytest.fixture
    def broken(self):
        backend = MagicMock()
        for op in ("get", "set", "delete", "flush", "tracked", "prune", "ping"):
            getattr(backend, op).side_effect = ConnectionError("cache down")
        return CacheLayer(backend, group="g")

    def test_get_is_a_miss(self, broken):
        assert broken.get("k") == (None, False)
        assert broken.stats().errors == 1

    def test_writes_report_false(self, broken):
        assert broken.set("k", 1, 60) is False
        assert broken.delete("k") is False
        assert broken.delete_by_prefix("k") is False
        assert broken.flush() is False

    def test_get_or_compute_falls_through(self, broken):
        assert broken.get_or_compute("k", 60, lambda: "from-store") == "from-store"

    def test_unhealthy(self, broken):
        assert broken.healthy() is False

    def test_undecodable_entry_is_a_miss(self):
        backend = MagicMock()
        backend.get.return_value = "not-json"
        cache = CacheLayer(backend, group="g")

        assert cache.get("k") == (None, False)


class TestRedisBackend:
    @pytest.fixture
    def client(self):
        return MagicMock()

    def test_set_with_ttl_uses_setex(self, client):
        RedisCacheBackend(client, key_prefix="fs:").set("g", "k", "v", 60)

        client.setex.assert_called_once_with("fs:g:k", 60, "v")

    def test_set_without_ttl(self, client):
        RedisCacheBackend(client, key_prefix="fs:").set("g", "k", "v", 0)

        client.set.assert_called_once_with("fs:g:k", "v")

    def test_get_decodes_bytes(self, client):
        client.get.return_value = b'{"v": 1}'

        assert RedisCacheBackend(client).get("g", "k") == '{"v": 1}'

    def test_index_is_a_set(self, client):
        client.smembers.return_value = {b"a", "b"}
        backend = RedisCacheBackend(client, key_prefix="fs:")

        backend.track("g", "a")
        backend.untrack("g", "c")

        client.sadd.assert_called_once_with("fs:g#index", "a")
        client.srem.assert_called_once_with("fs:g#index", "c")
        assert backend.tracked("g") == {"a", "b"}

    def test_flush_scans_group(self, client):
        client.scan_iter.return_value = iter(["fs:g:a", "fs:g:b"])
        client.delete.return_value = 2

        assert RedisCacheBackend(client, key_prefix="fs:").flush("g") == 2
        client.scan_iter.assert_called_once_with(match="fs:g:*")
        assert client.delete.call_args_list == [call("fs:g:a", "fs:g:b"), call("fs:g#index")]

    def test_index_key_cannot_collide_with_a_value_key(self, client):
        backend = RedisCacheBackend(client, key_prefix="fs:")

        backend.set("g", "__keys__", "v", 60)
        backend.track("g", "__keys__")

        client.setex.assert_called_once_with("fs:g:__keys__", 60, "v")
        client.sadd.assert_called_once_with("fs:g#index", "__keys__")

    def test_prune_drops_members_whose_value_expired(self, client):
        client.smembers.return_value = {"a", "b", "c"}
        pipe = client.pipeline.return_value
        pipe.execute.return_value = [1, 0, 0]

        assert RedisCacheBackend(client, key_prefix="fs:").prune("g") == 2

        assert [c.args for c in pipe.exists.call_args_list] == [
            ("fs:g:a",),
            ("fs:g:b",),
            ("fs:g:c",),
        ]
        client.srem.assert_called_once_with("fs:g#index", "b", "c")

    def test_prune_empty_index(self, client):
        client.smembers.return_value = set()

        assert RedisCacheBackend(client).prune("g") == 0
        client.pipeline.assert_not_called()

    def test_layer_over_redis_round_trip(self, client):
        store = {}
        client.setex.side_effect = lambda k, ttl, v: store.__setitem__(k, v)
        client.get.side_effect = lambda k: store.get(k)
        cache = CacheLayer(RedisCacheBackend(client), group="g")

        cache.set("settings_1", {"api": "x"}, CacheTTL.SETTINGS)

        assert cache.get("settings_1") == ({"api": "x"}, True)


def test_memory_backend_len(clock):
    backend = MemoryCacheBackend(clock=clock)
    backend.set("g", "a", "1", 10)
    backend.set("h", "a", "1", 10)

    assert len(backend) == 2
    assert backend.flush("g") == 1
    assert len(backend) == 1


def test_key_convention():
    assert settings_key("mailchimp") == "settings_mailchimp"
    assert form_fields_key(12) == "form_fields_12"
    assert log_stats_key(LogFilters(status="error")).startswith("log_stats_")
    assert log_stats_key(LogFilters(status="error")) != log_stats_key(None)
