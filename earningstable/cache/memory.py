"""In-process TTL cache with read-through single-flight population."""

from __future__ import annotations

import asyncio
import time
from collections.abc import Awaitable, Callable
from typing import Any, Generic, TypeVar

from earningstable.core.logging import get_logger


logger = get_logger("cache")

T = TypeVar("T")

# TTLs in seconds
SNAPSHOT_TTL = 2 * 60
REFERENCE_TTL = 24 * 60 * 60
PREVIOUS_CLOSE_TTL = 24 * 60 * 60
CORPORATE_ACTION_TTL = 6 * 60 * 60


class TTLCache(Generic[T]):
    """Typed in-memory cache; entries expire after ``ttl`` seconds.

    ``None`` is never cached, so a failed or empty lookup is retried on the
    next read.
    """

    def __init__(
        self,
        name: str,
        ttl: float,
        max_entries: int = 10_000,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.name = name
        self.ttl = ttl
        self.max_entries = max_entries
        self._clock = clock
        self._entries: dict[str, tuple[float, T]] = {}
        self._locks: dict[str, asyncio.Lock] = {}
        self._callers: dict[str, int] = {}
        self.hits = 0
        self.misses = 0

    def get(self, key: str) -> T | None:
        entry = self._entries.get(key)
        if entry is None:
            self.misses += 1
            return None
        expires_at, value = entry
        if self._clock() >= expires_at:
            del self._entries[key]
            self.misses += 1
            return None
        self.hits += 1
        return value

    def set(self, key: str, value: T, ttl: float | None = None) -> None:
        if len(self._entries) >= self.max_entries and key not in self._entries:
            self._evict()
        self._entries[key] = (self._clock() + (ttl or self.ttl), value)

    def delete(self, key: str) -> None:
        self._entries.pop(key, None)

    def clear(self) -> None:
        self._entries.clear()

    def _evict(self) -> None:
        now = self._clock()
        expired = [k for k, (exp, _) in self._entries.items() if exp <= now]
        for key in expired:
            del self._entries[key]
        if len(self._entries) >= self.max_entries:
            oldest = min(self._entries, key=lambda k: self._entries[k][0])
            del self._entries[oldest]

    async def get_or_set(
        self,
        key: str,
        factory: Callable[[], Awaitable[T | None]],
        ttl: float | None = None,
    ) -> T | None:
        """Get from cache or compute and cache value (cache-aside pattern).

        Concurrent misses for the same key run ``factory`` once. A key's lock
        lives only while some caller is inside.
        """
        value = self.get(key)
        if value is not None:
            return value

        lock = self._locks.setdefault(key, asyncio.Lock())
        self._callers[key] = self._callers.get(key, 0) + 1
        try:
            async with lock:
                value = self.get(key)
                if value is not None:
                    return value
                value = await factory()
                if value is not None:
                    self.set(key, value, ttl)
                    logger.debug(f"[{self.name}] cached {key}")
                return value
        finally:
            self._callers[key] -= 1
            if not self._callers[key]:
                del self._callers[key]
                del self._locks[key]

    def __len__(self) -> int:
        return len(self._entries)

    def stats(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "entries": len(self._entries),
            "ttl": self.ttl,
            "hits": self.hits,
            "misses": self.misses,
            "locks": len(self._locks),
        }
