"""In-process rate limiting for the credential endpoints."""

from __future__ import annotations

import threading
import time
from collections import deque
from typing import Callable, Deque, Dict


class InMemoryRateLimiter:
    """
    Sliding-window limiter keyed by caller (IP, identifier).

    Per-process only: with several API workers each one enforces its own
    window.
    """

    MAX_KEYS = 100_000

    def __init__(self, clock: Callable[[], float] = time.monotonic) -> None:
        self._lock = threading.Lock()
        self._clock = clock
        self._windows: Dict[str, Deque[float]] = {}

    def _trim(self, key: str, cutoff: float) -> Deque[float]:
        window = self._windows.setdefault(key, deque())
        while window and window[0] <= cutoff:
            window.popleft()
        return window

    def _evict_idle(self) -> None:
        if len(self._windows) < self.MAX_KEYS:
            return
        for key in [k for k, window in self._windows.items() if not window]:
            del self._windows[key]

    def allow(self, key: str, limit: int, window_seconds: int) -> bool:
        now = self._clock()

        with self._lock:
            self._evict_idle()
            window = self._trim(key, now - window_seconds)
            if len(window) >= limit:
                return False
            window.append(now)
            return True

    def remaining(self, key: str, limit: int, window_seconds: int) -> int:
        now = self._clock()
        with self._lock:
            window = self._trim(key, now - window_seconds)
            return max(0, limit - len(window))

    def reset(self) -> None:
        with self._lock:
            self._windows.clear()


rate_limiter = InMemoryRateLimiter()
