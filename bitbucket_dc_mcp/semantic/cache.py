"""Bounded LRU + TTL cache for search result sets.

Entries live in an OrderedDict whose order is the recency order: a hit
moves the entry to the end, eviction pops from the front. Any exception
raised by the store flips the cache into a permanent unavailable state in
which every operation is a silent no-op, so a broken cache degrades the
search pipeline to "always miss" instead of failing it.
"""

from __future__ import annotations

import time
from collections import OrderedDict
from dataclasses import dataclass
from typing import Any, Callable, Generic, Optional, TypeVar

import structlog

log = structlog.get_logger()

T = TypeVar("T")

HEALTH_CHECK_KEY = "__health_check__"


@dataclass(frozen=True)
class CacheEntry(Generic[T]):
    value: T
    expires_at: float


class QueryCache(Generic[T]):
    """In-memory LRU cache with per-entry TTL and fail-open behaviour.

    Args:
        max_size: Maximum number of entries kept; must be > 0.
        ttl: Entry lifetime in seconds; must be > 0.
        logger: structlog logger (defaults to the module logger).
        clock: Monotonic time source, injectable for tests.
    """

    def __init__(
        self,
        max_size: int,
        ttl: float,
        logger: Any = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        if max_size <= 0:
            raise ValueError("QueryCache max_size must be greater than zero")
        if ttl <= 0:
            raise ValueError("QueryCache ttl must be greater than zero")

        self._max_size = max_size
        self._ttl = ttl
        self._log = logger or log
        self._clock = clock

        self._store: OrderedDict[str, CacheEntry[T]] = OrderedDict()
        self._available = True
        self._hits = 0
        self._misses = 0

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def get(self, key: str) -> Optional[T]:
        if not self._available:
            self._log.debug("cache.unavailable", operation="get", cache_key=key)
            return None

        try:
            entry = self._store.get(key)
            if entry is None:
                self._misses += 1
                self._log.debug("cache.miss", cache_key=key)
                return None

            if entry.expires_at <= self._clock():
                del self._store[key]
                self._misses += 1
                self._log.debug("cache.miss", cache_key=key, reason="expired")
                return None

            self._hits += 1
            self._log.debug("cache.hit", cache_key=key)
            self._store.move_to_end(key)
            return entry.value
        except Exception as e:
            self._disable("get", e)
            return None

    def set(self, key: str, value: T) -> None:
        if not self._available:
            self._log.debug("cache.unavailable", operation="set", cache_key=key)
            return

        try:
            self._store[key] = CacheEntry(value, self._clock() + self._ttl)
            self._store.move_to_end(key)

            if len(self._store) > self._max_size:
                evicted, _ = self._store.popitem(last=False)
                self._log.debug("cache.evict", cache_key=evicted)
        except Exception as e:
            self._disable("set", e)

    def delete(self, key: str) -> None:
        if not self._available:
            self._log.debug("cache.unavailable", operation="delete", cache_key=key)
            return

        try:
            self._store.pop(key, None)
        except Exception as e:
            self._disable("delete", e)

    def clear(self) -> None:
        if not self._available:
            self._log.debug("cache.unavailable", operation="clear")
            return

        try:
            self._store.clear()
        except Exception as e:
            self._disable("clear", e)

    def health_check(self) -> bool:
        """Run a synthetic set/get/delete cycle against the store."""
        if not self._available:
            return False

        try:
            self._store[HEALTH_CHECK_KEY] = CacheEntry(None, self._clock() + 1.0)
            retrieved = self._store.get(HEALTH_CHECK_KEY)
            del self._store[HEALTH_CHECK_KEY]
            return retrieved is not None
        except Exception as e:
            self._log.warning("cache.health_check_failed", error=repr(e))
            self._available = False
            return False

    @property
    def is_available(self) -> bool:
        return self._available

    def get_is_available(self) -> bool:
        return self._available

    # ------------------------------------------------------------------
    # Observability
    # ------------------------------------------------------------------

    def get_stats(self) -> dict:
        """Return hits, misses, live size and hit rate."""
        total = self._hits + self._misses
        return {
            "hits": self._hits,
            "misses": self._misses,
            "size": len(self._store),
            "hit_rate": self._hits / total if total > 0 else 0.0,
        }

    def log_stats(self) -> None:
        stats = self.get_stats()
        self._log.info(
            "cache.stats",
            cache_size=stats["size"],
            cache_hits=stats["hits"],
            cache_misses=stats["misses"],
            hit_rate=f"{stats['hit_rate']:.2f}",
        )

    def __len__(self) -> int:
        return len(self._store)

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _disable(self, operation: str, error: Exception) -> None:
        self._log.warning(
            "cache.disabled",
            operation=operation,
            error=repr(error),
        )
        self._available = False
