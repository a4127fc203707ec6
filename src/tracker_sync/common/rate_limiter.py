"""Fixed-window request rate limiter keyed by an arbitrary string."""

import logging
import math
import time
from datetime import datetime, timezone
from typing import Callable

from pydantic import BaseModel

from .sweeper import PeriodicSweeper

logger = logging.getLogger("tracker_sync.rate_limiter")


class RateLimitTracker(BaseModel):
    """Request count for one key within the current window."""

    count: int = 0
    reset_at: float


class RateLimitDecision(BaseModel):
    """Outcome of a rate limit check."""

    allowed: bool
    reset_at: float | None = None

    def retry_after(self, now: float) -> int:
        """Whole seconds until the window resets (60 when unknown)."""
        if self.reset_at is None:
            return 60
        return max(0, math.ceil(self.reset_at - now))


class RateLimiter:
    """
    Fixed-window counter.

    Each key gets a tracker on its first check. Once the current time passes
    the tracker's reset time, the tracker is replaced by a fresh one rather
    than decremented. ``check`` never awaits, so the check-then-increment
    pair for a key cannot be interleaved by another task.
    """

    def __init__(
        self,
        max_requests: int,
        window_seconds: float,
        clock: Callable[[], float] = time.time,
    ):
        if max_requests < 1:
            raise ValueError("max_requests must be at least 1")
        self._max_requests = max_requests
        self._window = window_seconds
        self._clock = clock
        self._trackers: dict[str, RateLimitTracker] = {}
        self._sweeper: PeriodicSweeper | None = None

    @property
    def max_requests(self) -> int:
        return self._max_requests

    @property
    def window_seconds(self) -> float:
        return self._window

    def now(self) -> float:
        return self._clock()

    def check(self, key: str) -> RateLimitDecision:
        """Admit or reject one request for ``key``."""
        now = self._clock()
        tracker = self._trackers.get(key)

        if tracker is None or now >= tracker.reset_at:
            tracker = RateLimitTracker(count=0, reset_at=now + self._window)
            self._trackers[key] = tracker

        if tracker.count >= self._max_requests:
            reset = datetime.fromtimestamp(tracker.reset_at, timezone.utc).isoformat()
            logger.warning(
                f"Rate limit exceeded for key {key!r} "
                f"(count={tracker.count}, max={self._max_requests}, reset_at={reset})"
            )
            return RateLimitDecision(allowed=False, reset_at=tracker.reset_at)

        tracker.count += 1
        return RateLimitDecision(allowed=True)

    def get_tracker(self, key: str) -> RateLimitTracker | None:
        return self._trackers.get(key)

    def cleanup(self) -> int:
        """Drop trackers whose window has already elapsed."""
        now = self._clock()
        expired = [key for key, tracker in self._trackers.items() if now >= tracker.reset_at]
        for key in expired:
            del self._trackers[key]
        return len(expired)

    def start_sweeper(self, interval_seconds: float) -> None:
        if self._sweeper is None:
            self._sweeper = PeriodicSweeper("rate-limiter", interval_seconds, self.cleanup)
        self._sweeper.start()

    async def stop_sweeper(self) -> None:
        if self._sweeper is not None:
            await self._sweeper.stop()

    def __len__(self) -> int:
        return len(self._trackers)
