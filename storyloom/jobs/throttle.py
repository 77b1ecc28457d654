"""
Worker throughput cap: at most N provider image calls per window across all
worker processes.

With Redis the window is a sorted set shared by every worker; without it the
cap falls back to an in-process sliding window.
"""

from __future__ import annotations

import time
import uuid
from collections.abc import Callable

from redis import Redis

from storyloom.config import JOB_THROUGHPUT_MAX, JOB_THROUGHPUT_WINDOW_SECONDS
from storyloom.governance.rate_limit import SlidingWindowRateLimiter
from storyloom.observability.logging import get_logger
from storyloom.observability.telemetry import counter

logger = get_logger(__name__)

THROUGHPUT_KEY = "storyloom:throughput:image-generation"
_MIN_WAIT_SECONDS = 0.05


class ThroughputLimiter:
    def __init__(
        self,
        connection: Redis | None = None,
        max_calls: int = JOB_THROUGHPUT_MAX,
        window_seconds: float = JOB_THROUGHPUT_WINDOW_SECONDS,
        key: str = THROUGHPUT_KEY,
        clock: Callable[[], float] = time.time,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.connection = connection
        self.max_calls = max_calls
        self.window_seconds = window_seconds
        self.key = key
        self._clock = clock
        self._sleep = sleep
        self._local = SlidingWindowRateLimiter(max_calls, window_seconds=window_seconds, clock=clock)

    def try_acquire(self) -> float:
        """Take a slot if one is free. Returns 0.0 on success, else seconds to wait."""
        if self.connection is None:
            decision = self._local.hit(self.key)
            return 0.0 if decision.allowed else float(decision.retry_after)
        return self._try_acquire_shared()

    def _try_acquire_shared(self) -> float:
        now = self._clock()
        member = f"{now:.6f}:{uuid.uuid4().hex}"

        pipe = self.connection.pipeline()
        pipe.zremrangebyscore(self.key, 0, now - self.window_seconds)
        pipe.zadd(self.key, {member: now})
        pipe.zrank(self.key, member)
        pipe.zrange(self.key, 0, 0, withscores=True)
        pipe.expire(self.key, int(self.window_seconds * 2) + 1)
        _, _, rank, oldest, _ = pipe.execute()

        if rank is not None and rank < self.max_calls:
            return 0.0

        # Over the cap: give the slot back and wait for the oldest call to age out
        self.connection.zrem(self.key, member)
        oldest_score = float(oldest[0][1]) if oldest else now
        return max(_MIN_WAIT_SECONDS, oldest_score + self.window_seconds - now)

    def acquire(self, timeout: float | None = None) -> bool:
        """Block until a slot is free. False if timeout elapses first."""
        started = self._clock()
        waited = False
        while True:
            wait = self.try_acquire()
            if wait <= 0:
                if waited:
                    counter("jobs.throughput.delayed")
                return True
            if timeout is not None:
                remaining = timeout - (self._clock() - started)
                if remaining <= 0:
                    counter("jobs.throughput.timeout")
                    return False
                wait = min(wait, remaining)
            logger.info("Image throughput cap reached, waiting %.2fs", wait)
            waited = True
            self._sleep(wait)
