from __future__ import annotations

import os
import threading
from typing import Any, Callable

from cachetools import TTLCache


RESULTS_PREFIX = "PERIOD_RESULTS:"
LEADERBOARD_KEY = "LEADERBOARD:GRANTS"


def results_key(period_id: str) -> str:
    return f"{RESULTS_PREFIX}{str(period_id or '').strip()}"


class _ReadModelCache:
    """
    TTL cache for read views that only change when a period closes.

    Closed-period results are write-once, so their entries only age out. The
    leaderboard is dropped on every close and otherwise bounded by the TTL.
    """

    def __init__(self):
        ttl = int(os.getenv("CACHE_TTL_SECONDS", "300") or "300")
        max_items = int(os.getenv("CACHE_MAX_ITEMS", "2000") or "2000")
        self._cache = TTLCache(maxsize=max(16, min(100_000, max_items)), ttl=max(1, min(86_400, ttl)))
        self._lock = threading.RLock()
        self._hits = 0
        self._misses = 0

    def get_or_set(self, key: str, factory: Callable[[], Any]) -> Any:
        with self._lock:
            val = self._cache.get(key)
            if val is not None:
                self._hits += 1
                return val
            self._misses += 1
        computed = factory()
        with self._lock:
            if key in self._cache:
                return self._cache[key]
            self._cache[key] = computed
        return computed

    def invalidate(self, *keys: str) -> int:
        removed = 0
        with self._lock:
            for k in keys:
                if self._cache.pop(k, None) is not None:
                    removed += 1
        return removed

    def clear(self) -> None:
        with self._lock:
            self._cache.clear()
            self._hits = 0
            self._misses = 0

    def stats(self) -> dict[str, Any]:
        with self._lock:
            total = self._hits + self._misses
            return {
                "size": len(self._cache),
                "maxsize": self._cache.maxsize,
                "hits": self._hits,
                "misses": self._misses,
                "hit_rate": round((self._hits / total * 100) if total else 0.0, 2),
            }


_cache = _ReadModelCache()


def cache_get_or_set(key: str, factory: Callable[[], Any]) -> Any:
    return _cache.get_or_set(key, factory)


def invalidate_period_views(period_id: str) -> int:
    return _cache.invalidate(results_key(period_id), LEADERBOARD_KEY)


def cache_clear() -> None:
    _cache.clear()


def cache_stats() -> dict[str, Any]:
    return _cache.stats()
