"""Shared process-wide stores for Tracker Sync."""

from .cache import CacheEntry, ResponseCache
from .rate_limiter import RateLimitDecision, RateLimiter, RateLimitTracker
from .sweeper import PeriodicSweeper

__all__ = [
    "CacheEntry",
    "ResponseCache",
    "RateLimitDecision",
    "RateLimiter",
    "RateLimitTracker",
    "PeriodicSweeper",
]
