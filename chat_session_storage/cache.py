"""
Bounded LRU cache with optional per-entry TTL.

Used for secret values (short TTL) and for "already warned" markers,
which must not grow without bound in a long-lived process.
"""

from __future__ import annotations

import time
from collections import OrderedDict
from collections.abc import Callable, Hashable
from typing import Any, Generic, TypeVar

V = TypeVar("V")

_MISSING = object()


class BoundedCache(Generic[V]):
    """
    LRU cache with size control and optional expiry.

    Features:
    - Least Recently Used eviction policy
    - Configurable max entries
    - Optional time-to-live applied to every entry
    """

    def __init__(
        self,
        max_entries: int = 1000,
        ttl_seconds: float | None = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        """
        Initialize the cache.

        Args:
            max_entries: Maximum number of entries kept
            ttl_seconds: Entries older than this are treated as missing (None = never expire)
            clock: Monotonic time source (injectable for tests)
        """
        if max_entries < 1:
            raise ValueError(f"max_entries must be >= 1, got {max_entries}")
        if ttl_seconds is not None and ttl_seconds <= 0:
            raise ValueError(f"ttl_seconds must be > 0, got {ttl_seconds}")

        self.max_entries = max_entries
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._cache: OrderedDict[Hashable, tuple[float, V]] = OrderedDict()

    def _expired(self, stored_at: float) -> bool:
        if self.ttl_seconds is None:
            return False
        return self._clock() - stored_at >= self.ttl_seconds

    def get(self, key: Hashable, default: Any = None) -> V | Any:
        """Return the cached value, or ``default`` if missing or expired."""
        entry = self._cache.get(key, _MISSING)
        if entry is _MISSING:
            return default

        stored_at, value = entry  # type: ignore[misc]
        if self._expired(stored_at):
            del self._cache[key]
            return default

        self._cache.move_to_end(key)
        return value

    def put(self, key: Hashable, value: V) -> None:
        """Store a value, evicting the least recently used entry when full."""
        if key in self._cache:
            del self._cache[key]

        self._cache[key] = (self._clock(), value)

        if len(self._cache) > self.max_entries:
            self._cache.popitem(last=False)

    def add(self, key: Hashable) -> bool:
        """Set-like insert. Returns True if the key was not already present."""
        if key in self:
            self._cache.move_to_end(key)
            return False
        self.put(key, True)  # type: ignore[arg-type]
        return True

    def pop(self, key: Hashable, default: Any = None) -> V | Any:
        entry = self._cache.pop(key, _MISSING)
        if entry is _MISSING:
            return default
        return entry[1]  # type: ignore[index]

    def __contains__(self, key: Hashable) -> bool:
        return self.get(key, _MISSING) is not _MISSING

    def __len__(self) -> int:
        return len(self._cache)

    def clear(self) -> None:
        """Clear all entries."""
        self._cache.clear()

    def stats(self) -> dict[str, Any]:
        return {
            "size": len(self._cache),
            "max_entries": self.max_entries,
            "ttl_seconds": self.ttl_seconds,
            "utilization": len(self._cache) / self.max_entries,
        }
