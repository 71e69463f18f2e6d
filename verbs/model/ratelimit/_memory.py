from __future__ import annotations
import asyncio
import time
from dataclasses import dataclass
from typing import Callable, Dict


@dataclass
class _Window:
    count: int
    reset_at: float


class MemoryRateLimiter:
    """
    Fixed-window counter per key, local to this process.
    State is lost on restart and not shared between workers; fine for
    abuse mitigation, not for quotas.
    """

    def __init__(self, limit: int, window_seconds: float,
                 clock: Callable[[], float] = time.time) -> None:
        self.limit = limit
        self.window = window_seconds
        self.clock = clock
        self._windows: Dict[str, _Window] = {}
        self._next_sweep = clock() + window_seconds
        self._lock = asyncio.Lock()

    def _sweep(self, now: float) -> None:
        # at most once per window, so a hit stays O(1) amortized
        if now < self._next_sweep:
            return
        self._windows = {
            k: w for k, w in self._windows.items() if now <= w.reset_at
        }
        self._next_sweep = now + self.window

    async def hit(self, key: str) -> bool:
        """Count one request for key. True if it is allowed."""
        async with self._lock:
            now = self.clock()
            self._sweep(now)
            w = self._windows.get(key)
            if w is None or now > w.reset_at:
                self._windows[key] = _Window(1, now + self.window)
                return True
            if w.count >= self.limit:
                return False
            w.count += 1
            return True
