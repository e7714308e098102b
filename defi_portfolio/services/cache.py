"""TTL cache backing the resilient fetch wrapper.

Entries carry an absolute expiry instant and are replaced wholesale on
refresh; a value is never mutated in place once stored.
"""

from __future__ import annotations

import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, Generic, TypeVar

T = TypeVar("T")

# Sentinel for lookups where None is a legitimate cached value
MISSING: Any = object()


def make_key(operation: str, *parts: Any) -> str:
    """Build a composite cache key such as ``balance:ethereum:0xabc:0xdef``."""
    return ":".join([operation, *(str(p).lower() for p in parts if p is not None)])


@dataclass(frozen=True)
class CacheEntry(Generic[T]):
    value: T
    expires_at: float  # Absolute, on the cache's clock

    def is_live(self, now: float) -> bool:
        return now < self.expires_at


class TTLCache(Generic[T]):
    """In-process store whose entries expire after a time to live.

    Expired entries are dropped when looked up, or in bulk by
    ``cleanup_expired``. The clock is injectable so expiry can be tested
    without sleeping.
    """

    def __init__(
        self,
        default_ttl_seconds: float = 300.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._entries: Dict[str, CacheEntry[T]] = {}
        self._ttl = default_ttl_seconds
        self._clock = clock
        self._hits = 0
        self._misses = 0

    def get(self, key: str, default: Any = None) -> T | Any:
        """Live value for ``key``, or ``default`` when absent or expired."""
        entry = self._entries.get(key)
        if entry is not None and entry.is_live(self._clock()):
            self._hits += 1
            return entry.value
        if entry is not None:
            self._entries.pop(key, None)
        self._misses += 1
        return default

    def set(self, key: str, value: T, ttl_seconds: float | None = None) -> None:
        ttl = self._ttl if ttl_seconds is None else ttl_seconds
        self._entries[key] = CacheEntry(value=value, expires_at=self._clock() + ttl)

    def delete(self, key: str) -> bool:
        return self._entries.pop(key, MISSING) is not MISSING

    def clear(self) -> int:
        removed = len(self._entries)
        self._entries = {}
        return removed

    def cleanup_expired(self) -> int:
        """Drop every expired entry and return how many were dropped."""
        now = self._clock()
        live = {key: entry for key, entry in self._entries.items() if entry.is_live(now)}
        removed = len(self._entries) - len(live)
        self._entries = live
        return removed

    def __len__(self) -> int:
        return len(self._entries)

    def get_stats(self) -> Dict[str, Any]:
        lookups = self._hits + self._misses
        return {
            "entries": len(self._entries),
            "hits": self._hits,
            "misses": self._misses,
            "hit_rate_percent": round(self._hits / lookups * 100, 2) if lookups else 0.0,
        }
