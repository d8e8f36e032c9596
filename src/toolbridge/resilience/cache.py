"""Result cache for idempotent tools.

Keys hash (server_id, tool_name, canonical params) so equal parameter maps
hit regardless of key order. Expiry is checked under the lock on every read,
so an entry is never served past ``expires_at``.
"""

from __future__ import annotations

import hashlib
import threading
import time
from dataclasses import dataclass
from typing import Any, Callable, Final

import orjson

DEFAULT_TTL: Final[float] = 300.0


class _Miss:
    __slots__ = ()

    def __repr__(self) -> str:
        return "MISS"

    def __bool__(self) -> bool:
        return False


MISS: Final = _Miss()


@dataclass(slots=True, frozen=True)
class CacheEntry:
    """A cached tool result with expiration tracking."""
    key: str
    value: Any
    expires_at: float


def make_key(server_id: str, tool_name: str, params: Any) -> str:
    """SHA-256 over the canonical (sorted-key) JSON of the call identity."""
    canonical = orjson.dumps([server_id, tool_name, params], option=orjson.OPT_SORT_KEYS, default=str)
    return hashlib.sha256(canonical).hexdigest()


class ResultCache:
    """Thread-safe in-memory cache with per-entry TTL.

    Automatic eviction when capacity is reached: expired entries first,
    then the soonest-to-expire quarter.

    Example:
        >>> cache = ResultCache(default_ttl=60)
        >>> key = make_key("jira", "get_task", {"id": 7})
        >>> cache.set(key, {"title": "Fix login"})
        >>> cache.get(key)
        {'title': 'Fix login'}
    """

    __slots__ = ("_entries", "_default_ttl", "_max_entries", "_lock", "_clock", "hits", "misses")

    def __init__(
        self,
        default_ttl: float = DEFAULT_TTL,
        max_entries: int = 1000,
        *,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._entries: dict[str, CacheEntry] = {}
        self._default_ttl = default_ttl
        self._max_entries = max_entries
        self._lock = threading.RLock()  # RLock allows reentrant calls (e.g. set -> _evict)
        self._clock = clock
        self.hits = 0
        self.misses = 0

    def get(self, key: str) -> Any:
        """Cached value, or ``MISS``. Cached values may themselves be None."""
        with self._lock:
            entry = self._entries.get(key)
            if entry is not None and self._clock() >= entry.expires_at:
                del self._entries[key]
                entry = None
            if entry is None:
                self.misses += 1
                return MISS
            self.hits += 1
            return entry.value

    def set(self, key: str, value: Any, ttl: float | None = None) -> None:
        with self._lock:
            if key not in self._entries and len(self._entries) >= self._max_entries:
                self._evict_unlocked()
            self._entries[key] = CacheEntry(key, value, self._clock() + (ttl or self._default_ttl))

    def invalidate(self, key: str) -> bool:
        with self._lock:
            return self._entries.pop(key, None) is not None

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def _evict_unlocked(self) -> None:
        """Remove expired entries, then soonest-expiring if still over capacity. Caller must hold lock."""
        now = self._clock()
        for key in [k for k, e in self._entries.items() if now >= e.expires_at]:
            del self._entries[key]
        if len(self._entries) >= self._max_entries:
            by_expiry = sorted(self._entries.values(), key=lambda e: e.expires_at)
            for entry in by_expiry[: max(1, self._max_entries // 4)]:
                del self._entries[entry.key]

    @property
    def size(self) -> int:
        with self._lock:
            return len(self._entries)

    def stats(self) -> dict[str, object]:
        with self._lock:
            now = self._clock()
            expired = sum(1 for e in self._entries.values() if now >= e.expires_at)
            return {
                "total_entries": len(self._entries),
                "active_entries": len(self._entries) - expired,
                "hits": self.hits,
                "misses": self.misses,
                "default_ttl": self._default_ttl,
                "max_entries": self._max_entries,
            }
