import threading
import time

import pytest

from dynamic_grid.services.cache import MetadataCache


class FakeClock:
    def __init__(self):
        self.now = 1000.0

    def __call__(self):
        return self.now


def test_hit_does_not_call_loader_again():
    cache = MetadataCache()
    calls = []

    def loader():
        calls.append(1)
        return {"procedure": "sp_Grid_Buses"}

    assert cache.get_or_load("k", loader) == {"procedure": "sp_Grid_Buses"}
    assert cache.get_or_load("k", loader) == {"procedure": "sp_Grid_Buses"}
    assert len(calls) == 1
    assert "k" in cache


def test_concurrent_misses_load_once():
    cache = MetadataCache()
    calls = []
    started = threading.Event()
    release = threading.Event()

    def loader():
        calls.append(1)
        started.set()
        release.wait(timeout=5)
        return "loaded"

    results = []

    def reader():
        results.append(cache.get_or_load("k", loader))

    threads = [threading.Thread(target=reader) for _ in range(8)]
    for t in threads:
        t.start()
    assert started.wait(timeout=5)
    # Give the other readers a chance to queue up behind the loader.
    time.sleep(0.05)
    release.set()
    for t in threads:
        t.join(timeout=5)

    assert len(calls) == 1
    assert results == ["loaded"] * 8


def test_ttl_expiry_reloads():
    clock = FakeClock()
    cache = MetadataCache(ttl_seconds=60, clock=clock)
    values = iter(["v1", "v2"])

    assert cache.get_or_load("k", lambda: next(values)) == "v1"
    clock.now += 59
    assert cache.get_or_load("k", lambda: next(values)) == "v1"
    clock.now += 2
    assert cache.get("k") is None
    assert cache.get_or_load("k", lambda: next(values)) == "v2"


def test_zero_ttl_never_expires():
    clock = FakeClock()
    cache = MetadataCache(ttl_seconds=0, clock=clock)
    cache.get_or_load("k", lambda: "v")
    clock.now += 10 ** 6
    assert cache.get("k") == "v"


def test_stale_value_served_while_another_thread_refreshes():
    clock = FakeClock()
    cache = MetadataCache(ttl_seconds=10, clock=clock)
    cache.get_or_load("k", lambda: "old")
    clock.now += 11

    refreshing = threading.Event()
    release = threading.Event()

    def slow_loader():
        refreshing.set()
        release.wait(timeout=5)
        return "new"

    result = {}
    refresher = threading.Thread(target=lambda: result.setdefault("refresher", cache.get_or_load("k", slow_loader)))
    refresher.start()
    assert refreshing.wait(timeout=5)

    # The key is being refreshed: a second reader gets the stale value without blocking.
    assert cache.get_or_load("k", lambda: "unexpected") == "old"

    release.set()
    refresher.join(timeout=5)
    assert result["refresher"] == "new"
    assert cache.get("k") == "new"


def test_invalidation_during_load_discards_result():
    cache = MetadataCache()
    loading = threading.Event()
    release = threading.Event()

    def loader():
        loading.set()
        release.wait(timeout=5)
        return "outdated"

    result = {}
    t = threading.Thread(target=lambda: result.setdefault("value", cache.get_or_load("k", loader)))
    t.start()
    assert loading.wait(timeout=5)
    cache.invalidate("k")
    release.set()
    t.join(timeout=5)

    # The caller still gets its value, but it is not cached.
    assert result["value"] == "outdated"
    assert cache.get("k") is None
    assert cache.get_or_load("k", lambda: "fresh") == "fresh"


def test_full_invalidation_during_first_load_discards_result():
    cache = MetadataCache()
    loading = threading.Event()
    release = threading.Event()

    def loader():
        loading.set()
        release.wait(timeout=5)
        return "outdated"

    t = threading.Thread(target=lambda: cache.get_or_load("k", loader))
    t.start()
    assert loading.wait(timeout=5)
    cache.invalidate()
    release.set()
    t.join(timeout=5)

    assert len(cache) == 0


def test_invalidate_single_key_keeps_others():
    cache = MetadataCache()
    cache.get_or_load("a", lambda: 1)
    cache.get_or_load("b", lambda: 2)

    cache.invalidate("a")

    assert "a" not in cache
    assert cache.get("b") == 2


def test_loader_failure_propagates_and_is_not_cached():
    cache = MetadataCache()

    def failing():
        raise RuntimeError("registry unavailable")

    with pytest.raises(RuntimeError, match="registry unavailable"):
        cache.get_or_load("k", failing)

    assert cache.get_or_load("k", lambda: "ok") == "ok"


def test_none_can_be_left_uncached():
    cache = MetadataCache()
    calls = []

    def loader():
        calls.append(1)
        return None

    assert cache.get_or_load("missing", loader, cache_none=False) is None
    assert cache.get_or_load("missing", loader, cache_none=False) is None
    assert len(calls) == 2
    assert len(cache) == 0

    assert cache.get_or_load("missing", loader) is None
    assert cache.get_or_load("missing", loader) is None
    assert len(calls) == 3


def test_key_locks_are_released_after_loads():
    cache = MetadataCache()

    threads = [
        threading.Thread(target=cache.get_or_load, args=(f"k{i % 4}", lambda: "v")) for i in range(16)
    ]
    for t in threads:
        t.start()
    for t in threads:
        t.join(timeout=5)

    assert len(cache) == 4
    assert cache._key_locks == {}
