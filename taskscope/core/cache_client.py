"""In-memory cache with TTL support, used to memoise aggregate counts."""

import logging
import threading
import time
from dataclasses import dataclass
from typing import Any, Protocol


logger = logging.getLogger(__name__)


class CacheClient(Protocol):
    """Generic get/set facility the filter engine can memoise counts in."""

    async def get(self, key: str) -> str | None: ...

    async def set(self, key: str, value: str, ttl_seconds: int) -> bool: ...

    async def delete(self, *keys: str) -> bool: ...


@dataclass
class _CacheEntry:
    value: str
    expires_at: float | None  # None never expires

    def expired(self, now: float) -> bool:
        return self.expires_at is not None and self.expires_at < now


class InMemoryCache:
    """Thread-safe in-memory cache with TTL support.

    Expired entries are evicted lazily, on the read that finds them.
    """

    def __init__(self) -> None:
        self._entries: dict[str, _CacheEntry] = {}
        self._lock = threading.Lock()
        self._hits = 0
        self._misses = 0
        self._writes = 0

    def get_health_status(self) -> dict[str, Any]:
        """Counters for diagnostics."""
        with self._lock:
            return {
                "enabled": True,
                "entries": len(self._entries),
                "hits": self._hits,
                "misses": self._misses,
                "writes": self._writes,
            }

    def _live_entry(self, key: str, now: float) -> _CacheEntry | None:
        entry = self._entries.get(key)
        if entry is not None and entry.expired(now):
            del self._entries[key]
            return None
        return entry

    async def get(self, key: str) -> str | None:
        """Get value from cache, or None if missing or expired."""
        with self._lock:
            entry = self._live_entry(key, time.time())
            if entry is None:
                self._misses += 1
                return None
            self._hits += 1
            logger.debug("Cache hit", extra={"key": key})
            return entry.value

    async def set(self, key: str, value: str, ttl_seconds: int) -> bool:
        """Set value in cache with TTL (0 means no expiry)."""
        expires_at = time.time() + ttl_seconds if ttl_seconds > 0 else None
        with self._lock:
            self._entries[key] = _CacheEntry(value, expires_at)
            self._writes += 1
        logger.debug("Cached value", extra={"key": key, "ttl_seconds": ttl_seconds})
        return True

    async def delete(self, *keys: str) -> bool:
        """Delete one or more keys; False if no keys were given."""
        if not keys:
            return False
        with self._lock:
            for key in keys:
                self._entries.pop(key, None)
        logger.debug("Deleted cache keys", extra={"count": len(keys)})
        return True
