"""
In-process TTL cache used for claims, memberships and organization id mappings.

The cache is a best-effort accelerator: correctness never depends on it being
current because every snapshot it holds is also persisted and nulled on
invalidation. Values are deep-copied on the way in and out so a caller can
never mutate cached state in place.
"""
from __future__ import annotations

import asyncio
import copy
import fnmatch
import time
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from authz.utils import get_logger


log = get_logger(__name__)

_PATTERN_CHARS = ("*", "?", "[")


@dataclass
class CacheEntry:
    """Stored cache entry metadata."""

    value: Any
    expires_at: Optional[float]

    def expired(self, now: float) -> bool:
        return self.expires_at is not None and self.expires_at <= now


class MemoryCache:
    """String-keyed async cache with per-entry TTL and glob deletes.

    Usage:
        cache = MemoryCache()
        await cache.set("user:1:claims", claims, ttl=3600)
        await cache.delete("user:*:claims")
    """

    def __init__(self, prefix: str = "", default_ttl: Optional[float] = None) -> None:
        self.prefix = prefix
        self.default_ttl = default_ttl
        self._data: Dict[str, CacheEntry] = {}
        self._lock = asyncio.Lock()

    def _key(self, key: str) -> str:
        return f"{self.prefix}{key}"

    def _purge(self, now: float) -> None:
        expired = [key for key, entry in self._data.items() if entry.expired(now)]
        for key in expired:
            self._data.pop(key, None)

    async def get(self, key: str) -> Any:
        """Return a copy of the cached value, or None on miss/expiry."""
        async with self._lock:
            entry = self._data.get(self._key(key))
            if entry is None:
                return None
            if entry.expired(time.monotonic()):
                self._data.pop(self._key(key), None)
                return None
            return copy.deepcopy(entry.value)

    async def set(self, key: str, value: Any, ttl: Optional[float] = None) -> None:
        """Store a value. A ttl of None falls back to the default; 0 means no expiry."""
        ttl = self.default_ttl if ttl is None else ttl
        expires_at = time.monotonic() + ttl if ttl else None
        async with self._lock:
            self._data[self._key(key)] = CacheEntry(value=copy.deepcopy(value), expires_at=expires_at)

    async def delete(self, key: str) -> int:
        """Delete one key, or every key matching a glob pattern such as ``user:*:claims``."""
        full_key = self._key(key)
        async with self._lock:
            if not any(char in key for char in _PATTERN_CHARS):
                return 1 if self._data.pop(full_key, None) is not None else 0
            matched = [k for k in self._data if fnmatch.fnmatchcase(k, full_key)]
            for k in matched:
                self._data.pop(k, None)
        log.debug("Deleted %d cache keys matching %s", len(matched), key)
        return len(matched)

    async def keys(self, pattern: str = "*") -> List[str]:
        """List live keys (without prefix) matching a glob pattern."""
        async with self._lock:
            self._purge(time.monotonic())
            full_pattern = self._key(pattern)
            return [
                k[len(self.prefix):]
                for k in self._data
                if fnmatch.fnmatchcase(k, full_pattern)
            ]

    async def clear(self) -> None:
        """Remove all entries from the cache."""
        async with self._lock:
            self._data.clear()

    def __len__(self) -> int:
        return len(self._data)
