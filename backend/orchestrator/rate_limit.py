"""
Session-wide rate limiter for AI requests (analysis and chat).

Two rules, both enforced on every reservation:
- Sliding window: at most `max_requests` reservations per `window_s`
- Minimum spacing: at least `min_spacing_ms` between reservations

This module contains NO timers and NO async. Callers ask for a slot and
receive either "go" (0.0) or the number of seconds to wait before asking
again; re-arming is the scheduler's job.
"""

from __future__ import annotations

import time
from collections import deque
from typing import Callable, Deque

from spec import (
    AI_MIN_REQUEST_SPACING_MS,
    AI_RATE_LIMIT_PER_MINUTE,
    AI_RATE_LIMIT_WINDOW_S,
)


class SlidingWindowRateLimiter:
    """
    Sliding-window request limiter.

    Invariant:
    - Within any window_s interval, at most max_requests reservations succeed
    """

    def __init__(
        self,
        *,
        max_requests: int = AI_RATE_LIMIT_PER_MINUTE,
        window_s: float = AI_RATE_LIMIT_WINDOW_S,
        min_spacing_ms: int = AI_MIN_REQUEST_SPACING_MS,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if max_requests < 1:
            raise ValueError("max_requests must be >= 1")
        if window_s <= 0:
            raise ValueError("window_s must be > 0")

        self._max_requests = max_requests
        self._window_s = window_s
        self._min_spacing_s = max(0, min_spacing_ms) / 1000.0
        self._clock = clock
        self._timestamps: Deque[float] = deque()

    def reserve(self) -> float:
        """
        Try to take a request slot.

        Returns:
            0.0 if the slot was taken (the request may proceed now),
            otherwise seconds until a slot may be available.
        """
        wait_s = self.time_until_available()
        if wait_s > 0:
            return wait_s

        self._timestamps.append(self._clock())
        return 0.0

    def time_until_available(self) -> float:
        """Seconds until reserve() would succeed (0.0 if now)."""
        now = self._clock()
        self._evict_expired(now)

        wait_s = 0.0
        if len(self._timestamps) >= self._max_requests:
            wait_s = self._timestamps[0] + self._window_s - now

        if self._timestamps:
            wait_s = max(wait_s, self._timestamps[-1] + self._min_spacing_s - now)

        return max(0.0, wait_s)

    def in_window(self) -> int:
        """Number of reservations inside the current window."""
        self._evict_expired(self._clock())
        return len(self._timestamps)

    def _evict_expired(self, now: float) -> None:
        while self._timestamps and now - self._timestamps[0] >= self._window_s:
            self._timestamps.popleft()
