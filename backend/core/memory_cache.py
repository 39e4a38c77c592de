"""
Local in-memory TTL cache.

Instances are created by whoever owns the cached data and passed into
the services that use them; there is no module-level cache.
"""

import time
import asyncio
from typing import Any, Optional, Dict, Callable, Tuple
from collections import OrderedDict


class TTLCache:
    """Async-safe LRU cache with per-entry expiry."""

    def __init__(
        self,
        ttl_seconds: int = 3600,
        max_size: int = 1000,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.ttl_seconds = ttl_seconds
        self.max_size = max_size
        self._clock = clock
        self._entries: "OrderedDict[str, Tuple[Any, float]]" = OrderedDict()
        self._lock = asyncio.Lock()
        self.hits = 0
        self.misses = 0

    async def get(self, key: str) -> Optional[Any]:
        async with self._lock:
            entry = self._entries.get(key)
            if entry is None or self._clock() >= entry[1]:
                self._entries.pop(key, None)
                self.misses += 1
                return None

            self._entries.move_to_end(key)
            self.hits += 1
            return entry[0]

    async def set(self, key: str, value: Any, ttl: Optional[int] = None) -> None:
        """Store ``value``; the least recently read entry goes first when full."""
        expires_at = self._clock() + (self.ttl_seconds if ttl is None else ttl)
        async with self._lock:
            self._entries.pop(key, None)
            while len(self._entries) >= self.max_size:
                self._entries.popitem(last=False)
            self._entries[key] = (value, expires_at)

    async def invalidate(self, key: str) -> bool:
        """Drop a single key. Returns True if it was present."""
        async with self._lock:
            return self._entries.pop(key, None) is not None

    def get_stats(self) -> Dict[str, Any]:
        return {"hits": self.hits, "misses": self.misses, "size": len(self._entries)}
