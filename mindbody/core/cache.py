"""Pluggable key-value cache with per-entry TTL."""

from __future__ import annotations

import time
from typing import Any, Callable, Dict, Optional, Protocol, Tuple


class CacheStore(Protocol):
    def get(self, key: str) -> Any: ...

    def set(self, key: str, value: Any, ttl: Optional[float] = None) -> None: ...

    def delete(self, key: str) -> None: ...


class InMemoryCache:
    """Process-local cache. Expired entries are dropped on read and swept on every write."""

    def __init__(self, clock: Callable[[], float] = time.time):
        self._clock = clock
        self._entries: Dict[str, Tuple[Any, Optional[float]]] = {}

    def get(self, key: str) -> Any:
        entry = self._entries.get(key)
        if entry is None:
            return None
        value, expires_at = entry
        if expires_at is not None and self._clock() >= expires_at:
            self._entries.pop(key, None)
            return None
        return value

    def set(self, key: str, value: Any, ttl: Optional[float] = None) -> None:
        now = self._clock()
        self.purge_expired(now)
        self._entries[key] = (value, now + ttl if ttl is not None else None)

    def purge_expired(self, now: Optional[float] = None) -> int:
        """Drop every expired entry; returns how many were removed."""
        now = self._clock() if now is None else now
        expired = [k for k, (_, expires_at) in self._entries.items() if expires_at is not None and now >= expires_at]
        for key in expired:
            del self._entries[key]
        return len(expired)

    def delete(self, key: str) -> None:
        self._entries.pop(key, None)

    def clear(self) -> None:
        self._entries.clear()

    def __contains__(self, key: str) -> bool:
        return self.get(key) is not None

    def __len__(self) -> int:
        return len(self._entries)
