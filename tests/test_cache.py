import asyncio

import pytest

from vaults_yield.cache import DiskCache, MemoryCache, ResultCache, cache_key, get_cache_dir


class FakeClock:
    def __init__(self, now: float = 1_000.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now


def test_cache_key_is_deterministic():
    assert cache_key("risk", "0xabc", "aave-v3", 5) == cache_key("risk", "0xabc", "aave-v3", 5)
    assert cache_key("risk", "0xabc") != cache_key("yield_estimate", "0xabc")
    assert len(cache_key("x")) == 64


def test_get_cache_dir_honours_xdg(monkeypatch, tmp_path):
    monkeypatch.setenv("XDG_CACHE_HOME", str(tmp_path))
    cache_dir = get_cache_dir()
    assert cache_dir == tmp_path / ".vaults_yield_cache"
    assert cache_dir.is_dir()


def test_memory_cache_expires_entries():
    clock = FakeClock()
    cache = MemoryCache(clock=clock)
    cache.set("k", {"v": 1}, ttl_seconds=10)
    assert cache.get("k") == {"v": 1}
    clock.now += 10
    assert cache.get("k") is None
    assert len(cache) == 0


def test_disk_cache_roundtrip_expiry_and_clear(tmp_path):
    clock = FakeClock()
    cache = DiskCache(tmp_path / "c", clock=clock)
    cache.set("k", {"apy": 0.05, "items": [1, 2]}, ttl_seconds=60)
    assert cache.get("k") == {"apy": 0.05, "items": [1, 2]}
    assert cache.get("missing") is None
    clock.now += 61
    assert cache.get("k") is None
    cache.clear()
    assert not (tmp_path / "c").exists()


def test_disk_cache_treats_corrupted_file_as_miss(tmp_path):
    cache = DiskCache(tmp_path)
    cache.set("k", 1, ttl_seconds=60)
    (tmp_path / "k.json").write_text("{not json", encoding="utf-8")
    assert cache.get("k") is None


def test_concurrent_misses_share_one_computation():
    cache = ResultCache()
    calls = 0

    async def compute():
        nonlocal calls
        calls += 1
        await asyncio.sleep(0.01)
        return {"answer": 42}

    async def main():
        results = await asyncio.gather(
            *(cache.get_or_compute("ns", ("same",), compute, ttl_seconds=60) for _ in range(50))
        )
        return results

    results = asyncio.run(main())
    assert calls == 1
    assert all(r == {"answer": 42} for r in results)
    assert cache.in_flight_count() == 0


def test_failed_computation_is_not_cached_and_clears_in_flight():
    cache = ResultCache()
    attempts = 0

    async def flaky():
        nonlocal attempts
        attempts += 1
        await asyncio.sleep(0)
        if attempts == 1:
            raise RuntimeError("upstream down")
        return "ok"

    async def main():
        outcomes = await asyncio.gather(
            *(cache.get_or_compute("ns", ("k",), flaky, ttl_seconds=60) for _ in range(5)),
            return_exceptions=True,
        )
        assert all(isinstance(o, RuntimeError) for o in outcomes)
        assert cache.in_flight_count() == 0
        return await cache.get_or_compute("ns", ("k",), flaky, ttl_seconds=60)

    assert asyncio.run(main()) == "ok"
    assert attempts == 2


def test_ttl_expiry_triggers_recompute():
    clock = FakeClock()
    cache = ResultCache(MemoryCache(clock=clock))
    calls = []

    async def compute():
        calls.append(clock.now)
        return len(calls)

    assert asyncio.run(cache.get_or_compute("ns", (1,), compute, ttl_seconds=300)) == 1
    clock.now += 299
    assert asyncio.run(cache.get_or_compute("ns", (1,), compute, ttl_seconds=300)) == 1
    clock.now += 1
    assert asyncio.run(cache.get_or_compute("ns", (1,), compute, ttl_seconds=300)) == 2


def test_none_results_are_not_stored():
    cache = ResultCache()
    calls = 0

    async def compute():
        nonlocal calls
        calls += 1

    asyncio.run(cache.get_or_compute("ns", (), compute, ttl_seconds=60))
    asyncio.run(cache.get_or_compute("ns", (), compute, ttl_seconds=60))
    assert calls == 2


def test_disabled_cache_always_computes():
    cache = ResultCache(enabled=False)
    calls = 0

    async def compute():
        nonlocal calls
        calls += 1
        return calls

    asyncio.run(cache.get_or_compute("ns", (), compute, ttl_seconds=60))
    asyncio.run(cache.get_or_compute("ns", (), compute, ttl_seconds=60))
    assert calls == 2


def test_encode_and_decode_wrap_stored_values():
    backend = MemoryCache()
    cache = ResultCache(backend)

    async def compute():
        return (1, 2)

    first = asyncio.run(cache.get_or_compute("ns", (), compute, ttl_seconds=60, encode=list, decode=tuple))
    second = asyncio.run(cache.get_or_compute("ns", (), compute, ttl_seconds=60, encode=list, decode=tuple))
    assert first == second == (1, 2)
    assert backend.get(cache_key("ns")) == [1, 2]


class BrokenBackend:
    def get(self, key):
        raise OSError("disk gone")

    def set(self, key, value, ttl_seconds):
        raise OSError("disk gone")

    def clear(self):
        pass


@pytest.mark.parametrize("operation", ["read", "write"])
def test_backend_failure_falls_back_to_memory(operation):
    cache = ResultCache(BrokenBackend())
    if operation == "read":
        assert cache.read("k") is None
    else:
        cache.write("k", 1, ttl_seconds=60)
        assert cache.read("k") == 1
    assert isinstance(cache.backend, MemoryCache)
