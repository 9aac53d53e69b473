"""
Counter stores for fixed-window rate limiting.

A store exposes one atomic primitive: increment the counter for a key and
return its count and window start, opening a fresh window (count 1) when the
previous one has elapsed. Stores never decide allow/deny; an unreachable
backend raises ``StoreUnavailableError`` and the admission gate applies the
configured failure mode.
"""

import asyncio
import threading
from abc import ABC, abstractmethod
from contextlib import suppress
from typing import Dict, List, Optional, Sequence, Tuple

from shared.logging import get_logger

from .clock import Clock, SystemClock
from .models import CounterSnapshot


class CounterStore(ABC):
    """Key -> (count, window_start) store with atomic increment-and-fetch."""

    backend = "abstract"

    @abstractmethod
    async def increment(self, key: str, window: float, now: float) -> CounterSnapshot:
        """Count one request for ``key`` and return the counter after the increment."""

    async def increment_many(self, requests: Sequence[Tuple[str, float]], now: float) -> List[CounterSnapshot]:
        """Increment several ``(key, window)`` counters, results in request order."""
        return [await self.increment(key, window, now) for key, window in requests]

    @abstractmethod
    async def peek(self, key: str, window: float, now: float) -> Optional[CounterSnapshot]:
        """Current counter for ``key`` without counting, ``None`` if no live window."""

    @abstractmethod
    async def reset(self, key: str) -> None:
        """Drop the counter for ``key``."""

    async def ping(self) -> bool:
        return True

    async def close(self) -> None:
        return None


class _Counter:
    __slots__ = ("lock", "count", "window_start", "expires_at", "dead")

    def __init__(self):
        self.lock = threading.Lock()
        self.count = 0
        self.window_start = 0.0
        self.expires_at = 0.0
        self.dead = False


class InMemoryCounterStore(CounterStore):
    """Process-local store for single-instance deployments.

    Every key owns a lock; there is no map-wide lock on the request path.
    Entries are created with ``dict.setdefault``, which is atomic, and an
    entry removed by the reaper or ``reset`` is flagged dead under its own
    lock so a caller still holding it retries the lookup instead of counting
    into a detached entry.
    """

    backend = "memory"

    def __init__(self, clock: Optional[Clock] = None):
        self.clock = clock or SystemClock()
        self.logger = get_logger("gateway.counter_store")
        self._counters: Dict[str, _Counter] = {}
        self._reaper_task: Optional[asyncio.Task] = None

    def __len__(self) -> int:
        return len(self._counters)

    def hit(self, key: str, window: float, now: float) -> CounterSnapshot:
        """Synchronous increment, safe to call from worker threads."""
        while True:
            counter = self._counters.get(key)
            if counter is None:
                counter = self._counters.setdefault(key, _Counter())

            with counter.lock:
                if counter.dead:
                    continue
                if counter.count == 0 or now >= counter.window_start + window:
                    counter.count = 1
                    counter.window_start = now
                else:
                    counter.count += 1
                counter.expires_at = counter.window_start + window
                return CounterSnapshot(count=counter.count, window_start=counter.window_start)

    async def increment(self, key: str, window: float, now: float) -> CounterSnapshot:
        return self.hit(key, window, now)

    async def peek(self, key: str, window: float, now: float) -> Optional[CounterSnapshot]:
        counter = self._counters.get(key)
        if counter is None:
            return None
        with counter.lock:
            if counter.dead or counter.count == 0 or now >= counter.window_start + window:
                return None
            return CounterSnapshot(count=counter.count, window_start=counter.window_start)

    async def reset(self, key: str) -> None:
        counter = self._counters.get(key)
        if counter is not None:
            self._evict(key, counter)

    def _evict(self, key: str, counter: _Counter) -> bool:
        with counter.lock:
            if counter.dead:
                return False
            counter.dead = True
            if self._counters.get(key) is counter:
                del self._counters[key]
            return True

    def reap(self, now: Optional[float] = None) -> int:
        """Remove counters whose window has elapsed. Returns the number removed."""
        now = self.clock.now() if now is None else now
        removed = 0
        for key, counter in self._counters.copy().items():
            with counter.lock:
                expired = not counter.dead and now >= counter.expires_at
                if expired:
                    counter.dead = True
                    if self._counters.get(key) is counter:
                        del self._counters[key]
                    removed += 1
        return removed

    async def reap_in_background(self, now: Optional[float] = None) -> int:
        """``reap`` on a worker thread so the sweep never stalls the event loop."""
        return await asyncio.to_thread(self.reap, now)

    def start_reaper(self, interval: float) -> asyncio.Task:
        """Sweep expired counters every ``interval`` seconds."""
        if self._reaper_task is None or self._reaper_task.done():
            self._reaper_task = asyncio.create_task(self._reap_forever(interval))
        return self._reaper_task

    async def _reap_forever(self, interval: float) -> None:
        while True:
            await asyncio.sleep(interval)
            removed = await self.reap_in_background()
            if removed:
                self.logger.debug("Reaped expired counters", removed=removed, active=len(self))

    async def close(self) -> None:
        if self._reaper_task is not None:
            self._reaper_task.cancel()
            with suppress(asyncio.CancelledError):
                await self._reaper_task
            self._reaper_task = None
