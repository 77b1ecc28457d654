"""
Sliding-window rate limiting.

A SlidingWindowRateLimiter owns its window store; callers get one injected
rather than sharing module-level state, so tests can drive it with a fake
clock and separate endpoint classes never share counts.

The store is process-local. Multi-instance deployments get per-instance
limits, which is acceptable for abuse protection (quotas are the durable,
cross-instance ceiling).
"""

from __future__ import annotations

import math
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass
from enum import Enum

from cachetools import TTLCache

from storyloom.config import (
    RATE_LIMIT_AI_PER_MINUTE,
    RATE_LIMIT_AUTH_PER_MINUTE,
    RATE_LIMIT_MAX_KEYS,
    RATE_LIMIT_MEDIA_PER_MINUTE,
    RATE_LIMIT_WINDOW_SECONDS,
)
from storyloom.observability.logging import get_logger

logger = get_logger(__name__)

Clock = Callable[[], float]


class EndpointClass(str, Enum):
    """Rate-limited endpoint families."""

    AUTH = "auth"  # keyed by client IP
    AI = "ai"  # keyed by user id
    MEDIA = "media"  # keyed by user id


@dataclass(frozen=True)
class RateLimitDecision:
    allowed: bool
    limit: int
    remaining: int
    retry_after: int  # whole seconds; 0 when allowed
    reset_at: float  # epoch seconds when the oldest counted request leaves the window


class SlidingWindowRateLimiter:
    """
    Allow at most `limit` hits per key in any `window_seconds` span.

    Expired timestamps are pruned lazily on every hit; sweep() drops keys
    whose windows have fully expired and should run periodically.
    """

    def __init__(
        self,
        limit: int,
        window_seconds: float = RATE_LIMIT_WINDOW_SECONDS,
        clock: Clock = time.time,
        max_keys: int = RATE_LIMIT_MAX_KEYS,
    ) -> None:
        if limit < 1:
            raise ValueError("limit must be at least 1")
        self.limit = limit
        self.window_seconds = window_seconds
        self._clock = clock
        # TTL is a backstop for keys that are never swept; it must outlive the window
        self._windows: TTLCache[str, list[float]] = TTLCache(
            maxsize=max_keys, ttl=window_seconds * 2, timer=clock
        )
        self._lock = threading.Lock()

    def _prune(self, timestamps: list[float], now: float) -> list[float]:
        cutoff = now - self.window_seconds
        return [ts for ts in timestamps if ts > cutoff]

    def hit(self, key: str) -> RateLimitDecision:
        """Record a request for key if it fits in the window."""
        now = self._clock()
        with self._lock:
            timestamps = self._prune(self._windows.get(key, []), now)

            if len(timestamps) >= self.limit:
                oldest = timestamps[0]
                reset_at = oldest + self.window_seconds
                retry_after = max(1, min(math.ceil(reset_at - now), math.ceil(self.window_seconds)))
                self._windows[key] = timestamps
                return RateLimitDecision(
                    allowed=False,
                    limit=self.limit,
                    remaining=0,
                    retry_after=retry_after,
                    reset_at=reset_at,
                )

            timestamps.append(now)
            self._windows[key] = timestamps
            return RateLimitDecision(
                allowed=True,
                limit=self.limit,
                remaining=self.limit - len(timestamps),
                retry_after=0,
                reset_at=timestamps[0] + self.window_seconds,
            )

    def sweep(self) -> int:
        """Drop keys whose every timestamp has left the window. Returns the count removed."""
        now = self._clock()
        removed = 0
        with self._lock:
            for key in list(self._windows.keys()):
                timestamps = self._prune(self._windows.get(key, []), now)
                if timestamps:
                    self._windows[key] = timestamps
                else:
                    self._windows.pop(key, None)
                    removed += 1
        if removed:
            logger.debug("Rate limiter sweep removed %d idle keys", removed)
        return removed

    def tracked_keys(self) -> int:
        return len(self._windows)

    def reset(self) -> None:
        with self._lock:
            self._windows.clear()


DEFAULT_LIMITS: dict[EndpointClass, int] = {
    EndpointClass.AUTH: RATE_LIMIT_AUTH_PER_MINUTE,
    EndpointClass.AI: RATE_LIMIT_AI_PER_MINUTE,
    EndpointClass.MEDIA: RATE_LIMIT_MEDIA_PER_MINUTE,
}


def build_limiters(
    limits: dict[EndpointClass, int] | None = None,
    window_seconds: float = RATE_LIMIT_WINDOW_SECONDS,
    clock: Clock = time.time,
) -> dict[EndpointClass, SlidingWindowRateLimiter]:
    """One independent limiter per endpoint class."""
    merged = {**DEFAULT_LIMITS, **(limits or {})}
    return {
        endpoint_class: SlidingWindowRateLimiter(limit, window_seconds=window_seconds, clock=clock)
        for endpoint_class, limit in merged.items()
    }
