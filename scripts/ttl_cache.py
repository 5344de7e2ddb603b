"""Single-slot TTL cache used for the last-result and prefetch caches."""

from __future__ import annotations

import threading
import time
from collections.abc import Callable, Sequence
from dataclasses import dataclass
from typing import Generic, TypeVar

T = TypeVar("T")

__all__ = ["CacheEntry", "SingleSlotCache"]


@dataclass(frozen=True)
class CacheEntry(Generic[T]):
    query: str
    results: tuple[T, ...]
    created_at: float


class SingleSlotCache(Generic[T]):
    """Holds at most one ``(query, results, created_at)`` entry.

    ``get`` hits only when the query matches exactly and the entry is younger
    than the TTL. ``put`` always overwrites. Results are stored as a tuple and
    handed back as a fresh list, so a reader never observes a half-written
    entry nor mutates the cached one.

    Args:
        ttl_ms: Time-to-live in milliseconds. 0 disables caching.
        clock: Monotonic clock in seconds; injectable for tests.
        name: Label used in stats.
    """

    def __init__(self, ttl_ms: int, clock: Callable[[], float] = time.monotonic,
                 name: str = "cache"):
        self.name = name
        self._ttl = ttl_ms / 1000.0
        self._clock = clock
        self._entry: CacheEntry[T] | None = None
        self._lock = threading.Lock()

    @property
    def ttl_ms(self) -> int:
        return int(round(self._ttl * 1000))

    def set_ttl(self, ttl_ms: int) -> None:
        self._ttl = ttl_ms / 1000.0

    def get(self, query: str) -> list[T] | None:
        with self._lock:
            entry = self._entry
        if entry is None or entry.query != query:
            return None
        if self._clock() - entry.created_at >= self._ttl:
            return None
        return list(entry.results)

    def put(self, query: str, results: Sequence[T]) -> None:
        entry = CacheEntry(query, tuple(results), self._clock())
        with self._lock:
            self._entry = entry

    def clear(self) -> None:
        with self._lock:
            self._entry = None

    def peek(self) -> CacheEntry[T] | None:
        """Current entry regardless of freshness."""
        with self._lock:
            return self._entry

    def stats(self) -> dict:
        entry = self.peek()
        if entry is None:
            return {"name": self.name, "occupied": False, "ttl_ms": self.ttl_ms}
        age_ms = (self._clock() - entry.created_at) * 1000
        return {
            "name": self.name,
            "occupied": True,
            "query": entry.query,
            "size": len(entry.results),
            "age_ms": round(age_ms, 1),
            "fresh": age_ms < self.ttl_ms,
            "ttl_ms": self.ttl_ms,
        }
