"""In-process LRU cache with per-entry TTL (first cache tier)."""

import fnmatch
import time
from collections import OrderedDict
from dataclasses import dataclass
from typing import Any, Callable


@dataclass
class _Entry:
    value: Any
    expires_at: float | None  # monotonic deadline, None = no expiry


class LocalCache:
    """Bounded LRU map.

    Reads move the key to the most-recently-used end; writes beyond
    ``max_keys`` evict from the least-recently-used end. Expired entries are
    dropped lazily on access.
    """

    def __init__(
        self,
        max_keys: int = 1000,
        default_ttl: float = 3600,
        clock: Callable[[], float] = time.monotonic,
    ):
        if max_keys <= 0:
            raise ValueError("max_keys must be positive")
        self.max_keys = max_keys
        self.default_ttl = default_ttl
        self._clock = clock
        self._data: OrderedDict[str, _Entry] = OrderedDict()
        self.hits = 0
        self.misses = 0

    def _live(self, key: str) -> _Entry | None:
        entry = self._data.get(key)
        if entry is None:
            return None
        if entry.expires_at is not None and entry.expires_at <= self._clock():
            del self._data[key]
            return None
        return entry

    def get(self, key: str) -> Any | None:
        entry = self._live(key)
        if entry is None:
            self.misses += 1
            return None
        self._data.move_to_end(key)
        self.hits += 1
        return entry.value

    def set(self, key: str, value: Any, ttl: float | None = None) -> None:
        """Store a value; ``ttl`` <= 0 means no expiry."""
        ttl = self.default_ttl if ttl is None else ttl
        expires_at = self._clock() + ttl if ttl and ttl > 0 else None
        self._data[key] = _Entry(value=value, expires_at=expires_at)
        self._data.move_to_end(key)
        while len(self._data) > self.max_keys:
            self._data.popitem(last=False)

    def delete(self, key: str) -> bool:
        return self._data.pop(key, None) is not None

    def delete_pattern(self, pattern: str) -> int:
        """Delete keys matching a glob pattern (``video:*``)."""
        matched = [k for k in self._data if fnmatch.fnmatchcase(k, pattern)]
        for key in matched:
            del self._data[key]
        return len(matched)

    def ttl(self, key: str) -> float | None:
        """Remaining seconds, -1 for no expiry, None if missing."""
        entry = self._live(key)
        if entry is None:
            return None
        if entry.expires_at is None:
            return -1
        return max(0.0, entry.expires_at - self._clock())

    def clear(self) -> None:
        self._data.clear()

    def keys(self) -> list[str]:
        return [k for k in list(self._data) if self._live(k) is not None]

    def __len__(self) -> int:
        return len(self._data)

    def stats(self) -> dict[str, Any]:
        total = self.hits + self.misses
        return {
            "keys": len(self._data),
            "max_keys": self.max_keys,
            "hits": self.hits,
            "misses": self.misses,
            "hit_rate": self.hits / total if total else 0.0,
        }
