"""
Keyed TTL cache for expensive lookup results, owned by a collector instance.
"""

import logging
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, Optional


@dataclass
class CacheEntry:
    data: Any
    timestamp: float  # milliseconds since the epoch
    ttl_ms: int

    def age_ms(self, now_ms: float) -> float:
        return now_ms - self.timestamp

    def is_fresh(self, now_ms: float) -> bool:
        return self.age_ms(now_ms) < self.ttl_ms


class TTLCache:
    """
    Memoizes coroutine results per key.

    A disabled cache always calls through. None results are never stored;
    empty collections are.
    """

    def __init__(self, default_ttl_ms: int = 60000, disabled: bool = False,
                 clock: Callable[[], float] = time.time, logger: logging.Logger = None):
        self.default_ttl_ms = default_ttl_ms
        self.disabled = disabled
        self._clock = clock
        self._entries: Dict[str, CacheEntry] = {}
        self.logger = logger or logging.getLogger('collector.cache')

    def _now_ms(self) -> float:
        return self._clock() * 1000

    async def get_or_fetch(self, key: str, fetch: Callable[[], Awaitable[Any]],
                           ttl_ms: Optional[int] = None) -> Any:
        """Return the cached value for key, or await fetch() and store its result"""
        if self.disabled:
            return await fetch()

        ttl = self.default_ttl_ms if ttl_ms is None else ttl_ms
        now = self._now_ms()
        entry = self._entries.get(key)
        if entry and entry.is_fresh(now):
            self.logger.debug(f"Cache hit for {key} (age {entry.age_ms(now) / 1000:.1f}s)")
            return entry.data

        data = await fetch()
        if data is not None:
            self._entries[key] = CacheEntry(data=data, timestamp=self._now_ms(), ttl_ms=ttl)
            self.logger.debug(f"Cached {key} for {ttl / 1000:.0f}s")
        return data

    def get(self, key: str) -> Any:
        """Fresh cached value or None"""
        entry = self._entries.get(key)
        if entry and entry.is_fresh(self._now_ms()):
            return entry.data
        return None

    def clear(self, key: str) -> bool:
        removed = self._entries.pop(key, None) is not None
        if removed:
            self.logger.debug(f"Cleared cache for {key}")
        return removed

    def clear_all(self):
        count = len(self._entries)
        self._entries.clear()
        self.logger.debug(f"Cleared {count} cache entries")

    def status(self) -> Dict[str, Dict[str, Any]]:
        """Age and freshness for every stored key"""
        now = self._now_ms()
        return {
            key: {
                'age_seconds': round(entry.age_ms(now) / 1000, 1),
                'ttl_seconds': entry.ttl_ms / 1000,
                'fresh': entry.is_fresh(now),
            }
            for key, entry in self._entries.items()
        }

    def __contains__(self, key: str) -> bool:
        return self.get(key) is not None

    def __len__(self) -> int:
        return len(self._entries)
