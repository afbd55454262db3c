from __future__ import annotations

import time
from dataclasses import dataclass
from typing import Callable, Dict, Generic, Optional, TypeVar

V = TypeVar("V")


@dataclass
class CacheEntry(Generic[V]):
    value: V
    expires_at: float  # wall-clock seconds, used for Expires headers

    def ttl_remaining(self, now: float) -> float:
        return max(self.expires_at - now, 0.0)


class KeyedTTLCache(Generic[V]):
    """In-process TTL cache keyed by string. No locking; event-loop only."""

    def __init__(
        self,
        ttl: float,
        *,
        max_keys: int = 1000,
        clock: Optional[Callable[[], float]] = None,
    ) -> None:
        self.ttl = ttl
        self.max_keys = max_keys
        self._clock = clock or time.time
        self._store: Dict[str, CacheEntry[V]] = {}

    def now(self) -> float:
        return self._clock()

    def get(self, key: str) -> Optional[CacheEntry[V]]:
        """Return the live entry for ``key`` or None if missing or expired."""
        entry = self._store.get(key)
        if entry is None:
            return None
        if self._clock() >= entry.expires_at:
            del self._store[key]
            return None
        return entry

    def set(self, key: str, value: V) -> CacheEntry[V]:
        if len(self._store) >= self.max_keys and key not in self._store:
            self._evict_expired()
            if len(self._store) >= self.max_keys:
                # Drop the entry closest to expiry
                oldest = min(self._store, key=lambda k: self._store[k].expires_at)
                del self._store[oldest]
        entry = CacheEntry(value=value, expires_at=self._clock() + self.ttl)
        self._store[key] = entry
        return entry

    def clear(self) -> None:
        self._store.clear()

    def __len__(self) -> int:
        return len(self._store)

    def _evict_expired(self) -> None:
        now = self._clock()
        expired = [k for k, entry in self._store.items() if now >= entry.expires_at]
        for k in expired:
            del self._store[k]


__all__ = ["CacheEntry", "KeyedTTLCache"]
