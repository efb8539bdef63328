"""Sliding-window limiter on job starts."""

from __future__ import annotations

import threading
import time
from collections import deque
from collections.abc import Callable


class SlidingWindowRateLimiter:
    """Allow at most ``max_starts`` starts within any ``window_seconds`` span."""

    def __init__(
        self,
        *,
        max_starts: int,
        window_seconds: float,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if max_starts < 1:
            raise ValueError("max_starts must be >= 1")
        if window_seconds <= 0:
            raise ValueError("window_seconds must be > 0")
        self.max_starts = max_starts
        self.window_seconds = window_seconds
        self._clock = clock
        self._starts: deque[float] = deque()
        self._lock = threading.Lock()

    def seconds_until_available(self) -> float:
        """Zero when a start is allowed now, otherwise the wait until the oldest expires."""

        with self._lock:
            now = self._clock()
            self._expire(now)
            if len(self._starts) < self.max_starts:
                return 0.0
            return max(0.0, self._starts[0] + self.window_seconds - now)

    def record_start(self) -> None:
        with self._lock:
            now = self._clock()
            self._expire(now)
            self._starts.append(now)

    def _expire(self, now: float) -> None:
        while self._starts and self._starts[0] + self.window_seconds <= now:
            self._starts.popleft()
