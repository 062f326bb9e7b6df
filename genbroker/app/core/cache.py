"""Bounded in-process key/value store with TTL eviction."""

from __future__ import annotations

import threading
import time
from collections import OrderedDict
from typing import Callable, Generic, Iterator, TypeVar

K = TypeVar("K")
V = TypeVar("V")


class TTLCache(Generic[K, V]):
    """Thread-safe map that forgets entries after ``ttl_seconds`` and keeps at most ``max_entries``.

    Oldest entries are evicted first when the size bound is hit.
    """

    def __init__(
        self,
        *,
        ttl_seconds: float,
        max_entries: int,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if ttl_seconds <= 0:
            raise ValueError("ttl_seconds must be positive")
        if max_entries <= 0:
            raise ValueError("max_entries must be positive")
        self.ttl_seconds = ttl_seconds
        self.max_entries = max_entries
        self._clock = clock
        self._data: OrderedDict[K, tuple[float, V]] = OrderedDict()
        self._lock = threading.Lock()

    def set(self, key: K, value: V) -> None:
        with self._lock:
            self._data.pop(key, None)
            self._data[key] = (self._clock() + self.ttl_seconds, value)
            self._evict_locked()

    def get(self, key: K, default: V | None = None) -> V | None:
        with self._lock:
            entry = self._data.get(key)
            if entry is None:
                return default
            expires_at, value = entry
            if expires_at <= self._clock():
                del self._data[key]
                return default
            return value

    def pop(self, key: K, default: V | None = None) -> V | None:
        with self._lock:
            entry = self._data.pop(key, None)
        if entry is None or entry[0] <= self._clock():
            return default
        return entry[1]

    def values(self) -> list[V]:
        with self._lock:
            self._evict_locked()
            return [value for _, value in self._data.values()]

    def __contains__(self, key: object) -> bool:
        return self.get(key) is not None  # type: ignore[arg-type]

    def __len__(self) -> int:
        with self._lock:
            self._evict_locked()
            return len(self._data)

    def __iter__(self) -> Iterator[K]:
        with self._lock:
            self._evict_locked()
            return iter(list(self._data.keys()))

    def _evict_locked(self) -> None:
        now = self._clock()
        expired = [key for key, (expires_at, _) in self._data.items() if expires_at <= now]
        for key in expired:
            del self._data[key]
        while len(self._data) > self.max_entries:
            self._data.popitem(last=False)
