"""
TTL cache for chain reads.

Keys are tuples (e.g. ``("rent_exempt", 0)`` or ``("pool", network, address)``)
so one cache can serve several lookups without string-mangling.
"""
import asyncio
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, Hashable, Optional, Tuple


CacheKey = Tuple[Hashable, ...]


@dataclass
class CacheEntry:
    """A cached value and when it was stored."""
    value: Any
    stored_at: float


class TtlCache:
    """In-memory cache with per-instance time-to-live."""

    def __init__(self, ttl_seconds: float = 60.0, clock: Callable[[], float] = time.monotonic):
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._entries: Dict[CacheKey, CacheEntry] = {}
        self._lock = asyncio.Lock()
        self.hits = 0
        self.misses = 0

    def _is_fresh(self, entry: CacheEntry) -> bool:
        return (self._clock() - entry.stored_at) < self.ttl_seconds

    def get(self, key: CacheKey) -> Optional[Any]:
        entry = self._entries.get(key)
        if entry is None:
            self.misses += 1
            return None
        if not self._is_fresh(entry):
            del self._entries[key]
            self.misses += 1
            return None
        self.hits += 1
        return entry.value

    def put(self, key: CacheKey, value: Any) -> None:
        self._entries[key] = CacheEntry(value=value, stored_at=self._clock())

    def invalidate(self, key: Optional[CacheKey] = None) -> None:
        """Drop one key, or everything when ``key`` is None."""
        if key is None:
            self._entries.clear()
        else:
            self._entries.pop(key, None)

    async def get_or_load(
        self,
        key: CacheKey,
        loader: Callable[[], Awaitable[Any]],
        force_refresh: bool = False,
    ) -> Any:
        if not force_refresh:
            cached = self.get(key)
            if cached is not None:
                return cached

        async with self._lock:
            # Another task may have filled it while we waited
            if not force_refresh:
                cached = self.get(key)
                if cached is not None:
                    return cached
            value = await loader()
            self.put(key, value)
            return value

    def __len__(self) -> int:
        return len(self._entries)
