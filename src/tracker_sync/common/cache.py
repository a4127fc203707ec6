"""In-memory TTL cache for idempotent read results."""

import logging
import time
from typing import Any, Callable

from pydantic import BaseModel

from .sweeper import PeriodicSweeper

logger = logging.getLogger("tracker_sync.cache")


class CacheEntry(BaseModel):
    """A stored value and the time it stops being valid."""

    value: Any
    expires_at: float


class ResponseCache:
    """
    TTL cache keyed by opaque strings.

    Expired entries are evicted lazily on read; a periodic sweep removes the
    rest so keys that are never read again do not accumulate.
    """

    def __init__(
        self,
        default_ttl_seconds: float = 300.0,
        clock: Callable[[], float] = time.time,
    ):
        self._default_ttl = default_ttl_seconds
        self._clock = clock
        self._entries: dict[str, CacheEntry] = {}
        self._sweeper: PeriodicSweeper | None = None

    @property
    def default_ttl_seconds(self) -> float:
        return self._default_ttl

    def get(self, key: str) -> Any | None:
        entry = self._entries.get(key)
        if entry is None:
            return None
        if self._clock() > entry.expires_at:
            del self._entries[key]
            return None
        return entry.value

    def set(self, key: str, value: Any, ttl_seconds: float | None = None) -> None:
        ttl = self._default_ttl if ttl_seconds is None else ttl_seconds
        self._entries[key] = CacheEntry(value=value, expires_at=self._clock() + ttl)

    def invalidate_prefix(self, prefix: str) -> int:
        """Remove every entry whose key starts with ``prefix``."""
        keys = [key for key in self._entries if key.startswith(prefix)]
        for key in keys:
            del self._entries[key]
        return len(keys)

    def clear(self) -> None:
        self._entries.clear()
        logger.info("Response cache cleared")

    def cleanup(self) -> int:
        """Remove all expired entries."""
        now = self._clock()
        expired = [key for key, entry in self._entries.items() if now > entry.expires_at]
        for key in expired:
            del self._entries[key]
        return len(expired)

    def start_sweeper(self, interval_seconds: float) -> None:
        if self._sweeper is None:
            self._sweeper = PeriodicSweeper("response-cache", interval_seconds, self.cleanup)
        self._sweeper.start()

    async def stop_sweeper(self) -> None:
        if self._sweeper is not None:
            await self._sweeper.stop()

    def __contains__(self, key: str) -> bool:
        return key in self._entries

    def __len__(self) -> int:
        return len(self._entries)
