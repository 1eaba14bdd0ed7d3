from __future__ import annotations

import threading
import time
from typing import Any, Callable, Dict, Hashable, Optional, Tuple, TypeVar

from cachetools import TLRUCache

T = TypeVar("T")


class _Flight:
    __slots__ = ("lock", "waiters")

    def __init__(self) -> None:
        self.lock = threading.Lock()
        self.waiters = 0


class SingleFlightCache:
    """Thread-safe TTL cache with at most one in-flight computation per key.

    Concurrent callers for the same missing key block on a per-key lock; the
    first computes, the rest read its result. Each entry carries the TTL it
    was stored with and the cache is bounded to `maxsize` entries (least
    recently used evicted first). Exceptions are never cached.
    """

    def __init__(self, maxsize: int = 2000, timer: Callable[[], float] = time.monotonic) -> None:
        self._cache: TLRUCache = TLRUCache(
            maxsize=maxsize,
            ttu=lambda _key, entry, now: now + entry[1],
            timer=timer,
        )
        self._lock = threading.Lock()
        self._flights: Dict[Hashable, _Flight] = {}
        self.hits = 0
        self.misses = 0

    def _lookup(self, key: Hashable) -> Tuple[bool, Any]:
        with self._lock:
            entry = self._cache.get(key)
            if entry is None:
                return False, None
            self.hits += 1
            return True, entry[0]

    def get(self, key: Hashable) -> Optional[Any]:
        return self._lookup(key)[1]

    def set(self, key: Hashable, value: Any, ttl: float) -> None:
        if ttl <= 0:
            return
        with self._lock:
            self._cache[key] = (value, ttl)

    def get_or_compute(self, key: Hashable, ttl: float, fn: Callable[[], T],
                       cache_if: Optional[Callable[[T], bool]] = None) -> T:
        found, value = self._lookup(key)
        if found:
            return value

        with self._lock:
            flight = self._flights.setdefault(key, _Flight())
            flight.waiters += 1
        try:
            with flight.lock:
                found, value = self._lookup(key)
                if found:
                    return value
                with self._lock:
                    self.misses += 1
                value = fn()
                if cache_if is None or cache_if(value):
                    self.set(key, value, ttl)
                return value
        finally:
            with self._lock:
                flight.waiters -= 1
                if flight.waiters == 0:
                    self._flights.pop(key, None)

    def delete(self, key: Hashable) -> bool:
        with self._lock:
            return self._cache.pop(key, None) is not None

    def invalidate(self, predicate: Callable[[Hashable], bool]) -> int:
        with self._lock:
            doomed = [k for k in list(self._cache.keys()) if predicate(k)]
            for k in doomed:
                self._cache.pop(k, None)
            return len(doomed)

    def clear(self) -> int:
        with self._lock:
            count = len(self._cache)
            self._cache.clear()
            return count

    def stats(self) -> dict:
        with self._lock:
            self._cache.expire()
            return {
                "backend": "in-memory",
                "entries": len(self._cache),
                "max_size": self._cache.maxsize,
                "hits": self.hits,
                "misses": self.misses,
                "in_flight": len(self._flights),
            }
