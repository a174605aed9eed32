"""In-memory key/value cache with per-entry TTL."""

from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Generic, Optional, TypeVar

V = TypeVar("V")


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class CacheEntry(Generic[V]):
    """Cached value with the moment it was stored and its lifetime."""

    value: V
    created_at: datetime
    ttl: timedelta

    def is_expired(self, now: datetime) -> bool:
        return now - self.created_at >= self.ttl


class TTLCache(Generic[V]):
    """Key/value store whose entries expire a fixed time after insertion.

    Expired entries are evicted lazily when read; nothing sweeps the cache
    in the background. Concurrent lookups for the same key may each fill
    it, the last write wins.
    """

    def __init__(
        self,
        ttl_seconds: float,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        """Initialize cache.

        Args:
            ttl_seconds: Default time-to-live for new entries
            clock: Source of the current time (timezone-aware)
        """
        self._entries: dict[str, CacheEntry[V]] = {}
        self._ttl = timedelta(seconds=ttl_seconds)
        self._clock = clock

    @property
    def ttl(self) -> timedelta:
        return self._ttl

    def get(self, key: str) -> Optional[V]:
        """Get a cached value if present and not expired.

        Args:
            key: Cache key

        Returns:
            Cached value or None if expired/missing
        """
        entry = self._entries.get(key)
        if entry is None:
            return None

        if entry.is_expired(self._clock()):
            del self._entries[key]
            return None

        return entry.value

    def set(self, key: str, value: V, ttl_seconds: Optional[float] = None) -> None:
        """Store a value, optionally overriding the default TTL."""
        ttl = self._ttl if ttl_seconds is None else timedelta(seconds=ttl_seconds)
        self._entries[key] = CacheEntry(value=value, created_at=self._clock(), ttl=ttl)

    def delete(self, key: str) -> bool:
        """Remove one entry. Returns True if it existed."""
        return self._entries.pop(key, None) is not None

    def delete_prefix(self, prefix: str) -> int:
        """Remove every entry whose key starts with prefix."""
        keys = [key for key in self._entries if key.startswith(prefix)]
        for key in keys:
            del self._entries[key]
        return len(keys)

    def clear(self) -> None:
        """Clear all cached entries."""
        self._entries.clear()

    def __contains__(self, key: Any) -> bool:
        return self.get(key) is not None

    def __len__(self) -> int:
        return len(self._entries)
