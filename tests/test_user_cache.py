"""Unit tests for cache/store.py -- UserCache and ProjectCache.

Covers:
- UserCache loads once per id and serves later reads from memory
- invalidate() forces the next read back to the loader
- missing users are not cached
- ProjectCache loads lazily, returns copies, and reloads after invalidate()
"""

from cache.store import ProjectCache, UserCache


class _CountingLoader:
    def __init__(self, rows: dict) -> None:
        self.rows = rows
        self.calls = 0

    def __call__(self, key):
        self.calls += 1
        return self.rows.get(key)


class TestUserCache:
    def test_second_read_is_served_from_memory(self) -> None:
        loader = _CountingLoader({1: "alice"})
        cache = UserCache(loader)
        assert cache.get(1) == "alice"
        assert cache.get(1) == "alice"
        assert loader.calls == 1, f"loader called {loader.calls} times, expected 1"

    def test_invalidate_forces_reload(self) -> None:
        loader = _CountingLoader({1: "alice"})
        cache = UserCache(loader)
        cache.get(1)
        loader.rows[1] = "alice-updated"
        cache.invalidate(1)
        assert cache.get(1) == "alice-updated"
        assert loader.calls == 2

    def test_missing_user_is_not_cached(self) -> None:
        loader = _CountingLoader({})
        cache = UserCache(loader)
        assert cache.get(7) is None
        assert 7 not in cache
        loader.rows[7] = "late"
        assert cache.get(7) == "late"

    def test_put_primes_without_loading(self) -> None:
        loader = _CountingLoader({})
        cache = UserCache(loader)
        cache.put(3, "carol")
        assert cache.get(3) == "carol"
        assert loader.calls == 0

    def test_invalidate_unknown_id_is_a_no_op(self) -> None:
        cache = UserCache(_CountingLoader({}))
        cache.invalidate(99)
        assert len(cache) == 0

    def test_clear_drops_everything(self) -> None:
        cache = UserCache(_CountingLoader({1: "a", 2: "b"}))
        cache.get(1)
        cache.get(2)
        cache.clear()
        assert len(cache) == 0


class TestProjectCache:
    def test_lazy_single_load(self) -> None:
        calls = []

        def load():
            calls.append(1)
            return ["p1", "p2"]

        cache = ProjectCache(load)
        assert not cache.loaded
        assert cache.all() == ["p1", "p2"]
        assert cache.all() == ["p1", "p2"]
        assert cache.loaded
        assert len(calls) == 1

    def test_returns_a_copy(self) -> None:
        cache = ProjectCache(lambda: ["p1"])
        cache.all().append("mutated")
        assert cache.all() == ["p1"]

    def test_invalidate_reloads(self) -> None:
        rows = ["p1"]
        cache = ProjectCache(lambda: list(rows))
        cache.all()
        rows.append("p2")
        assert cache.all() == ["p1"]
        cache.invalidate()
        assert cache.all() == ["p1", "p2"]
