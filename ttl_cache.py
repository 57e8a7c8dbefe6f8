"""Bounded key/value cache with per-entry expiry."""

from __future__ import annotations

import time
from collections.abc import Callable, Iterator
from dataclasses import dataclass
from typing import Generic, TypeVar

T = TypeVar("T")


@dataclass(frozen=True, slots=True)
class CacheEntry(Generic[T]):
    key: str
    value: T
    timestamp: float


class TTLCache(Generic[T]):
    """Insertion-ordered cache with a fixed capacity and a time-to-live.

    An entry is visible while ``now - timestamp < ttl_seconds``. Reading an
    expired entry is a miss and removes it. Inserting a new key at capacity
    evicts the oldest-inserted entry; re-setting an existing key refreshes
    its timestamp and moves it to the newest position.
    """

    def __init__(
        self,
        ttl_seconds: float,
        capacity: int,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if capacity < 1:
            raise ValueError("capacity must be at least 1")
        self.ttl_seconds = ttl_seconds
        self.capacity = capacity
        self._clock = clock
        self._entries: dict[str, CacheEntry[T]] = {}

    def get(self, key: str) -> T | None:
        entry = self._entries.get(key)
        if entry is None:
            return None
        if self._expired(entry):
            del self._entries[key]
            return None
        return entry.value

    def set(self, key: str, value: T, timestamp: float | None = None) -> None:
        if key in self._entries:
            del self._entries[key]
        elif len(self._entries) >= self.capacity:
            oldest = next(iter(self._entries))
            del self._entries[oldest]

        stamp = self._clock() if timestamp is None else timestamp
        self._entries[key] = CacheEntry(key=key, value=value, timestamp=stamp)

    def has(self, key: str) -> bool:
        return self.get(key) is not None

    def delete(self, key: str) -> None:
        self._entries.pop(key, None)

    def clear(self) -> None:
        self._entries.clear()

    def entries(self) -> Iterator[CacheEntry[T]]:
        """Yield live entries, oldest first."""
        for entry in list(self._entries.values()):
            if not self._expired(entry):
                yield entry

    def stats(self) -> dict[str, int]:
        """Live entry count; expired entries not yet evicted are left out."""
        return {"size": sum(1 for _ in self.entries()), "capacity": self.capacity}

    def __len__(self) -> int:
        return len(self._entries)

    def _expired(self, entry: CacheEntry[T]) -> bool:
        return self._clock() - entry.timestamp >= self.ttl_seconds
