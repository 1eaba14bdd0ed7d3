import threading
import time

import pytest

from fusionrec.services.cache import SingleFlightCache


class FakeTimer:
    def __init__(self):
        self.now = 0.0

    def __call__(self):
        return self.now


def test_get_or_compute_caches_value():
    cache = SingleFlightCache()
    calls = []
    first = cache.get_or_compute("k", 60, lambda: calls.append(1) or "value")
    second = cache.get_or_compute("k", 60, lambda: calls.append(1) or "other")
    assert first == second == "value"
    assert len(calls) == 1
    assert cache.stats()["hits"] == 1
    assert cache.stats()["misses"] == 1


def test_concurrent_callers_share_one_computation():
    cache = SingleFlightCache()
    calls = 0
    lock = threading.Lock()
    barrier = threading.Barrier(8)
    results = []

    def slow():
        nonlocal calls
        with lock:
            calls += 1
        time.sleep(0.1)
        return object()

    def worker():
        barrier.wait()
        results.append(cache.get_or_compute("shared", 60, slow))

    threads = [threading.Thread(target=worker) for _ in range(8)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert calls == 1
    assert len(results) == 8
    assert all(r is results[0] for r in results)
    assert cache.stats()["in_flight"] == 0


def test_entries_expire_after_ttl():
    timer = FakeTimer()
    cache = SingleFlightCache(timer=timer)
    cache.set("k", "v", ttl=10)
    timer.now = 9.0
    assert cache.get("k") == "v"
    timer.now = 11.0
    assert cache.get("k") is None
    assert cache.get_or_compute("k", 10, lambda: "fresh") == "fresh"


def test_each_entry_keeps_its_own_ttl():
    timer = FakeTimer()
    cache = SingleFlightCache(timer=timer)
    cache.set("short", 1, ttl=5)
    cache.set("long", 2, ttl=50)
    timer.now = 6.0
    assert cache.get("short") is None
    assert cache.get("long") == 2


def test_exceptions_are_not_cached():
    cache = SingleFlightCache()

    def boom():
        raise RuntimeError("backend down")

    with pytest.raises(RuntimeError):
        cache.get_or_compute("k", 60, boom)
    assert cache.get_or_compute("k", 60, lambda: 42) == 42
    assert cache.stats()["in_flight"] == 0


def test_cache_if_skips_storage():
    cache = SingleFlightCache()
    assert cache.get_or_compute("k", 60, lambda: [], cache_if=bool) == []
    assert cache.get("k") is None
    assert cache.get_or_compute("k", 60, lambda: [1], cache_if=bool) == [1]
    assert cache.get("k") == [1]


def test_bounded_size():
    cache = SingleFlightCache(maxsize=2)
    for key in ("a", "b", "c"):
        cache.set(key, key, ttl=60)
    assert cache.stats()["entries"] == 2
    assert cache.get("c") == "c"


def test_non_positive_ttl_is_not_stored():
    cache = SingleFlightCache()
    cache.set("k", "v", ttl=0)
    assert cache.get("k") is None


def test_delete_invalidate_and_clear():
    cache = SingleFlightCache()
    for key in [("recs", "alice", 5), ("recs", "alice", 10), ("recs", "bob", 5)]:
        cache.set(key, "x", ttl=60)
    assert cache.invalidate(lambda key: key[1] == "alice") == 2
    assert cache.get(("recs", "bob", 5)) == "x"
    assert cache.delete(("recs", "bob", 5))
    assert not cache.delete(("recs", "bob", 5))
    cache.set("k", 1, ttl=60)
    assert cache.clear() == 1
    assert cache.stats()["entries"] == 0
