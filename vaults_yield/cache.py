"""Result caching with TTLs and in-flight request deduplication."""

import asyncio
import hashlib
import json
import logging
import os
import shutil
import sys
import time
from collections.abc import Awaitable, Callable
from pathlib import Path
from typing import Any, Protocol

from vaults_yield.constants import CACHE_DIR_NAME, CACHE_VERSION

logger = logging.getLogger(__name__)


def get_cache_dir() -> Path:
    """Get the cache directory path. Uses XDG_CACHE_HOME if available, otherwise ~/.cache."""
    cache_home = os.getenv("XDG_CACHE_HOME")
    if cache_home:
        base = Path(cache_home)
    else:
        base = Path.home() / ".cache"
    cache_dir = base / CACHE_DIR_NAME
    cache_dir.mkdir(parents=True, exist_ok=True)
    return cache_dir


def clear_cache() -> None:
    """Clear all cached data."""
    cache_dir = get_cache_dir()
    if cache_dir.exists():
        shutil.rmtree(cache_dir)
        print("✅ Cache cleared successfully.", file=sys.stderr)
    else:
        print("ℹ️  Cache directory does not exist (nothing to clear).", file=sys.stderr)


def cache_key(prefix: str, *parts: Any) -> str:
    """Generate a deterministic cache key from prefix and parts."""
    key_str = f"{prefix}:{CACHE_VERSION}:" + ":".join(str(p) for p in parts)
    return hashlib.sha256(key_str.encode()).hexdigest()


class CacheBackend(Protocol):
    """Key/value store with per-entry TTL. `get` returns None for missing or expired keys."""

    def get(self, key: str) -> Any | None: ...

    def set(self, key: str, value: Any, ttl_seconds: float) -> None: ...

    def clear(self) -> None: ...


class MemoryCache:
    """In-process cache backend."""

    def __init__(self, clock: Callable[[], float] = time.time) -> None:
        self._clock = clock
        self._entries: dict[str, tuple[float, Any]] = {}

    def get(self, key: str) -> Any | None:
        entry = self._entries.get(key)
        if entry is None:
            return None
        expires_at, value = entry
        if expires_at <= self._clock():
            del self._entries[key]
            return None
        return value

    def set(self, key: str, value: Any, ttl_seconds: float) -> None:
        self._entries[key] = (self._clock() + ttl_seconds, value)

    def clear(self) -> None:
        self._entries.clear()

    def __len__(self) -> int:
        return len(self._entries)


class DiskCache:
    """JSON-file cache backend under the user cache directory.

    Corrupted entries read as misses. Write failures propagate so the owner can
    switch to an in-memory fallback.
    """

    def __init__(self, cache_dir: Path | None = None, clock: Callable[[], float] = time.time) -> None:
        self._cache_dir = cache_dir
        self._clock = clock

    @property
    def cache_dir(self) -> Path:
        if self._cache_dir is None:
            self._cache_dir = get_cache_dir()
        else:
            self._cache_dir.mkdir(parents=True, exist_ok=True)
        return self._cache_dir

    def _path(self, key: str) -> Path:
        return self.cache_dir / f"{key}.json"

    def get(self, key: str) -> Any | None:
        cache_file = self._path(key)
        if not cache_file.exists():
            return None
        try:
            with cache_file.open("r", encoding="utf-8") as f:
                entry = json.load(f)
        except (OSError, ValueError):
            # If cache file is corrupted, ignore it
            return None
        if not isinstance(entry, dict) or entry.get("expires_at", 0) <= self._clock():
            return None
        return entry.get("value")

    def set(self, key: str, value: Any, ttl_seconds: float) -> None:
        entry = {"expires_at": self._clock() + ttl_seconds, "value": value}
        with self._path(key).open("w", encoding="utf-8") as f:
            json.dump(entry, f, ensure_ascii=False, indent=None, separators=(",", ":"))

    def clear(self) -> None:
        shutil.rmtree(self.cache_dir, ignore_errors=True)


class ResultCache:
    """Memoizes expensive async steps.

    Concurrent misses for the same key share one in-flight task, so the upstream
    computation runs once and every waiter receives its result. When the backend
    fails, the cache switches to an in-memory backend for the rest of its life.
    """

    def __init__(self, backend: CacheBackend | None = None, *, enabled: bool = True) -> None:
        self._backend: CacheBackend = backend if backend is not None else MemoryCache()
        self._enabled = enabled
        self._in_flight: dict[str, asyncio.Task] = {}

    @property
    def backend(self) -> CacheBackend:
        return self._backend

    @property
    def enabled(self) -> bool:
        return self._enabled

    def _use_fallback(self, ex: Exception) -> None:
        if isinstance(self._backend, MemoryCache):
            return
        logger.warning("⚠️  Cache backend failed (%s); falling back to in-memory cache", ex)
        self._backend = MemoryCache()

    def read(self, key: str) -> Any | None:
        if not self._enabled:
            return None
        try:
            return self._backend.get(key)
        except Exception as ex:  # pylint: disable=broad-exception-caught
            self._use_fallback(ex)
            return self._backend.get(key)

    def write(self, key: str, value: Any, ttl_seconds: float) -> None:
        if not self._enabled:
            return
        try:
            self._backend.set(key, value, ttl_seconds)
        except Exception as ex:  # pylint: disable=broad-exception-caught
            self._use_fallback(ex)
            self._backend.set(key, value, ttl_seconds)

    async def get_or_compute(
        self,
        namespace: str,
        parts: tuple[Any, ...],
        compute: Callable[[], Awaitable[Any]],
        *,
        ttl_seconds: float,
        encode: Callable[[Any], Any] | None = None,
        decode: Callable[[Any], Any] | None = None,
    ) -> Any:
        """Return the cached value for (namespace, parts) or compute, store and return it.

        `encode`/`decode` convert between the computed value and its JSON form.
        A computed None is returned but not stored.
        """
        key = cache_key(namespace, *parts)
        cached = self.read(key)
        if cached is not None:
            return decode(cached) if decode else cached

        task = self._in_flight.get(key)
        if task is None:
            task = asyncio.ensure_future(self._compute_and_store(key, compute, ttl_seconds, encode))
            self._in_flight[key] = task
            task.add_done_callback(lambda t, k=key: self._forget(k, t))
        return await asyncio.shield(task)

    def _forget(self, key: str, task: asyncio.Task) -> None:
        if self._in_flight.get(key) is task:
            del self._in_flight[key]

    async def _compute_and_store(
        self,
        key: str,
        compute: Callable[[], Awaitable[Any]],
        ttl_seconds: float,
        encode: Callable[[Any], Any] | None,
    ) -> Any:
        value = await compute()
        if value is not None:
            self.write(key, encode(value) if encode else value, ttl_seconds)
        return value

    def in_flight_count(self) -> int:
        return len(self._in_flight)
