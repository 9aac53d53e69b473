"""
Time sources for the rate limiter.
"""

import threading
import time


class Clock:
    """Source of the current time in Unix seconds."""

    def now(self) -> float:
        raise NotImplementedError


class SystemClock(Clock):
    """Wall clock. Reset timestamps are published to clients as Unix time."""

    def now(self) -> float:
        return time.time()


class ManualClock(Clock):
    """Clock that only moves when told to."""

    def __init__(self, start: float = 1_700_000_000.0):
        self._now = float(start)
        self._lock = threading.Lock()

    def now(self) -> float:
        with self._lock:
            return self._now

    def advance(self, seconds: float) -> float:
        with self._lock:
            self._now += seconds
            return self._now

    def set(self, timestamp: float) -> None:
        with self._lock:
            self._now = float(timestamp)
