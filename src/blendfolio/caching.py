"""In-memory TTL cache injected into the `Portfolio` facade.

The engine never caches by itself; the facade memoizes whole reports under
keys that include the caller's local "today", so a day rollover misses.
"""

from __future__ import annotations

import threading
import time
from collections import OrderedDict
from collections.abc import Awaitable, Callable
from typing import Any, Protocol, TypeVar, runtime_checkable

from blendfolio.core.config import CacheConfig

T = TypeVar("T")


@runtime_checkable
class ICache(Protocol):
    def get(self, key: str) -> Any | None: ...

    def set(self, key: str, value: Any, ttl: float) -> None: ...

    def clear(self) -> None: ...


def cache_key(*parts: object) -> str:
    """Join key parts with ':'; None renders as an empty segment."""
    return ":".join("" if p is None else str(p) for p in parts)


class TTLCache:
    """Thread-safe TTL cache with a bounded number of entries (oldest evicted)."""

    def __init__(self, config: CacheConfig | None = None, clock: Callable[[], float] = time.monotonic) -> None:
        self.config = config or CacheConfig()
        self._clock = clock
        self._data: OrderedDict[str, tuple[Any, float]] = OrderedDict()
        self._lock = threading.Lock()
        self.hits = 0
        self.misses = 0

    def get(self, key: str) -> Any | None:
        with self._lock:
            entry = self._data.get(key)
            if entry is None:
                self.misses += 1
                return None
            value, expires_at = entry
            if self._clock() >= expires_at:
                del self._data[key]
                self.misses += 1
                return None
            self.hits += 1
            return value

    def set(self, key: str, value: Any, ttl: float) -> None:
        with self._lock:
            self._data[key] = (value, self._clock() + ttl)
            self._data.move_to_end(key)
            while len(self._data) > self.config.max_entries:
                self._data.popitem(last=False)

    def invalidate(self, key: str) -> None:
        with self._lock:
            self._data.pop(key, None)

    def invalidate_prefix(self, prefix: str) -> None:
        with self._lock:
            for k in [k for k in self._data if k.startswith(prefix)]:
                del self._data[k]

    def clear(self) -> None:
        with self._lock:
            self._data.clear()

    def __len__(self) -> int:
        return len(self._data)


async def get_or_set(cache: ICache | None, key: str, ttl: float, compute: Callable[[], Awaitable[T]]) -> T:
    """Return the cached value for `key` or compute, store and return it."""
    if cache is None:
        return await compute()
    hit = cache.get(key)
    if hit is not None:
        return hit
    value = await compute()
    cache.set(key, value, ttl)
    return value
