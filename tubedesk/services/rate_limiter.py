from __future__ import annotations

import math
from collections.abc import Callable
from dataclasses import dataclass
from threading import Lock
from time import monotonic

YOUTUBE_SYNC_LIMITER_KEY = "youtube-sync"


@dataclass(frozen=True)
class RateLimitDecision:
    key: str
    limited: bool
    limit: int
    remaining: int
    retry_after_seconds: int
    reset_after_seconds: int


class FixedWindowRateLimiter:
    """Request gate over a fixed window.

    Checking and counting are separate calls: callers check before dispatching and count only
    once the dispatch succeeded. One limiter instance is owned by one purpose key.
    """

    def __init__(
        self,
        key: str,
        *,
        max_requests: int,
        window_seconds: float,
        clock: Callable[[], float] = monotonic,
    ) -> None:
        self._key = key
        self._max_requests = max(1, max_requests)
        self._window_seconds = max(0.001, window_seconds)
        self._clock = clock
        self._lock = Lock()
        self._window_start = clock()
        self._count = 0

    @property
    def key(self) -> str:
        return self._key

    @property
    def max_requests(self) -> int:
        return self._max_requests

    def check_limit(self) -> bool:
        with self._lock:
            self._roll_window()
            return self._count >= self._max_requests

    def increment_count(self) -> None:
        with self._lock:
            self._roll_window()
            self._count += 1

    def remaining(self) -> int:
        with self._lock:
            self._roll_window()
            return max(self._max_requests - self._count, 0)

    def remaining_time_seconds(self) -> float:
        with self._lock:
            self._roll_window()
            return max(0.0, (self._window_start + self._window_seconds) - self._clock())

    def decision(self) -> RateLimitDecision:
        with self._lock:
            self._roll_window()
            limited = self._count >= self._max_requests
            reset_after = max(
                0,
                math.ceil((self._window_start + self._window_seconds) - self._clock()),
            )
            return RateLimitDecision(
                key=self._key,
                limited=limited,
                limit=self._max_requests,
                remaining=max(self._max_requests - self._count, 0),
                retry_after_seconds=reset_after if limited else 0,
                reset_after_seconds=reset_after,
            )

    def _roll_window(self) -> None:
        now = self._clock()
        if now >= self._window_start + self._window_seconds:
            self._window_start = now
            self._count = 0


class RateLimiterRegistry:
    def __init__(
        self,
        limits: dict[str, tuple[int, float]],
        *,
        clock: Callable[[], float] = monotonic,
    ) -> None:
        self._limits = dict(limits)
        self._clock = clock
        self._lock = Lock()
        self._limiters: dict[str, FixedWindowRateLimiter] = {}

    def get(self, key: str) -> FixedWindowRateLimiter:
        with self._lock:
            limiter = self._limiters.get(key)
            if limiter is not None:
                return limiter
            if key not in self._limits:
                raise KeyError(f"No rate limit configured for key {key!r}")
            max_requests, window_seconds = self._limits[key]
            limiter = FixedWindowRateLimiter(
                key,
                max_requests=max_requests,
                window_seconds=window_seconds,
                clock=self._clock,
            )
            self._limiters[key] = limiter
            return limiter
