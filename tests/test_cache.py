"""Tests for the LRU + TTL query cache."""

import time
from collections import OrderedDict

import pytest
from structlog.testing import capture_logs

from bitbucket_dc_mcp.semantic.cache import QueryCache


class FakeClock:
    """Manually advanced monotonic clock."""

    def __init__(self):
        self.now = 1000.0

    def __call__(self):
        return self.now

    def advance(self, seconds: float):
        self.now += seconds


class ExplodingStore(OrderedDict):
    """Store whose writes fail, to drive the cache into its failed state."""

    def __setitem__(self, key, value):
        raise RuntimeError("store is broken")


# ---------------------------------------------------------------------------
# Construction
# ---------------------------------------------------------------------------

def test_rejects_non_positive_size():
    with pytest.raises(ValueError):
        QueryCache(0, 60)


def test_rejects_non_positive_ttl():
    with pytest.raises(ValueError):
        QueryCache(10, 0)


# ---------------------------------------------------------------------------
# LRU behaviour
# ---------------------------------------------------------------------------

def test_get_returns_stored_value():
    cache = QueryCache(10, 60)
    cache.set("a", [1, 2, 3])
    assert cache.get("a") == [1, 2, 3]


def test_get_missing_returns_none():
    cache = QueryCache(10, 60)
    assert cache.get("nope") is None


def test_evicts_least_recently_accessed_not_first_inserted():
    cache = QueryCache(3, 60)
    cache.set("a", 1)
    cache.set("b", 2)
    cache.set("c", 3)

    # Touch "a" so "b" becomes the LRU entry
    assert cache.get("a") == 1
    cache.set("d", 4)

    assert cache.get("b") is None
    assert cache.get("a") == 1
    assert cache.get("c") == 3
    assert cache.get("d") == 4
    assert len(cache) == 3


def test_insert_beyond_capacity_evicts_exactly_one():
    cache = QueryCache(2, 60)
    cache.set("a", 1)
    cache.set("b", 2)
    cache.set("c", 3)
    assert len(cache) == 2
    assert cache.get("a") is None


def test_replacing_key_refreshes_position():
    cache = QueryCache(2, 60)
    cache.set("a", 1)
    cache.set("b", 2)
    cache.set("a", 10)
    cache.set("c", 3)

    assert cache.get("a") == 10
    assert cache.get("b") is None


def test_delete_and_clear():
    cache = QueryCache(10, 60)
    cache.set("a", 1)
    cache.set("b", 2)
    cache.delete("a")
    assert cache.get("a") is None
    assert cache.get("b") == 2

    cache.clear()
    assert len(cache) == 0


# ---------------------------------------------------------------------------
# TTL
# ---------------------------------------------------------------------------

def test_entry_expires_after_ttl():
    cache = QueryCache(10, ttl=0.01)
    cache.set("q", ["result"])
    time.sleep(0.02)
    assert cache.get("q") is None


def test_expired_entry_logged_as_miss_with_reason():
    clock = FakeClock()
    cache = QueryCache(10, ttl=5, clock=clock)
    cache.set("q", ["result"])
    clock.advance(6)

    with capture_logs() as logs:
        assert cache.get("q") is None

    misses = [e for e in logs if e["event"] == "cache.miss"]
    assert misses and misses[0]["reason"] == "expired"
    assert cache.get_stats()["misses"] == 1
    assert len(cache) == 0


def test_entry_still_valid_before_ttl():
    clock = FakeClock()
    cache = QueryCache(10, ttl=5, clock=clock)
    cache.set("q", "v")
    clock.advance(4.9)
    assert cache.get("q") == "v"


# ---------------------------------------------------------------------------
# Fail-open behaviour
# ---------------------------------------------------------------------------

def test_store_error_on_set_disables_cache():
    cache = QueryCache(10, 60)
    cache._store = ExplodingStore()

    cache.set("a", 1)  # must not raise
    assert cache.get_is_available() is False
    assert cache.is_available is False

    # Subsequent operations are silent no-ops
    assert cache.get("a") is None
    cache.set("b", 2)
    cache.delete("a")
    cache.clear()
    assert cache.get_is_available() is False


def test_failed_cache_stays_failed_with_healthy_store():
    cache = QueryCache(10, 60)
    cache._store = ExplodingStore()
    cache.set("a", 1)

    cache._store = OrderedDict()
    cache.set("a", 1)
    assert cache.get("a") is None
    assert len(cache) == 0


def test_disable_is_logged():
    cache = QueryCache(10, 60)
    cache._store = ExplodingStore()
    with capture_logs() as logs:
        cache.set("a", 1)
    assert any(e["event"] == "cache.disabled" and e["operation"] == "set" for e in logs)


def test_health_check_ok():
    cache = QueryCache(10, 60)
    assert cache.health_check() is True
    assert len(cache) == 0


def test_health_check_failure_disables_cache():
    cache = QueryCache(10, 60)
    cache._store = ExplodingStore()
    assert cache.health_check() is False
    assert cache.is_available is False


# ---------------------------------------------------------------------------
# Stats
# ---------------------------------------------------------------------------

def test_stats_empty():
    cache = QueryCache(10, 60)
    assert cache.get_stats() == {"hits": 0, "misses": 0, "size": 0, "hit_rate": 0.0}


def test_stats_track_hits_and_misses():
    cache = QueryCache(10, 60)
    cache.set("a", 1)
    cache.get("a")
    cache.get("a")
    cache.get("b")

    stats = cache.get_stats()
    assert stats["hits"] == 2
    assert stats["misses"] == 1
    assert stats["size"] == 1
    assert stats["hit_rate"] == pytest.approx(2 / 3)


def test_hit_and_miss_events():
    cache = QueryCache(10, 60)
    cache.set("a", 1)
    with capture_logs() as logs:
        cache.get("a")
        cache.get("b")
    events = [e["event"] for e in logs]
    assert events == ["cache.hit", "cache.miss"]


def test_log_stats_event():
    cache = QueryCache(10, 60)
    cache.set("a", 1)
    cache.get("a")
    with capture_logs() as logs:
        cache.log_stats()
    assert logs == [{
        "event": "cache.stats",
        "log_level": "info",
        "cache_size": 1,
        "cache_hits": 1,
        "cache_misses": 0,
        "hit_rate": "1.00",
    }]
