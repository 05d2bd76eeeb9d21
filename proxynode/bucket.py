"""Token bucket rate limiter with quantum-based refills."""

from __future__ import annotations

import threading
import time
from collections.abc import Callable


class TokenBucket:
    """A bucket that refills by ``quantum`` tokens every ``fill_interval`` seconds.

    The bucket starts full and never holds more than ``capacity`` tokens.
    """

    def __init__(
        self,
        fill_interval: float,
        capacity: int,
        quantum: int,
        clock: Callable[[], float] | None = None,
    ) -> None:
        if fill_interval <= 0:
            raise ValueError("token bucket fill interval is not > 0")
        if capacity <= 0:
            raise ValueError("token bucket capacity is not > 0")
        if quantum <= 0:
            raise ValueError("token bucket quantum is not > 0")
        self.fill_interval = fill_interval
        self.capacity = capacity
        self.quantum = quantum
        self._clock = clock or time.monotonic
        self._start = self._clock()
        self._latest_tick = 0
        self._available = capacity
        self._lock = threading.Lock()

    def _current_tick(self, now: float) -> int:
        return int((now - self._start) // self.fill_interval)

    def _adjust(self, tick: int) -> None:
        last_tick = self._latest_tick
        self._latest_tick = tick
        if self._available >= self.capacity:
            return
        self._available = min(
            self.capacity, self._available + (tick - last_tick) * self.quantum
        )

    def available(self) -> int:
        """Return the number of tokens available now; may be negative after ``take``."""
        with self._lock:
            self._adjust(self._current_tick(self._clock()))
            return self._available

    def take_available(self, count: int) -> int:
        """Take up to ``count`` tokens without waiting and return how many were taken."""
        if count <= 0:
            return 0
        with self._lock:
            self._adjust(self._current_tick(self._clock()))
            if self._available <= 0:
                return 0
            taken = min(count, self._available)
            self._available -= taken
            return taken

    def take(self, count: int) -> float:
        """Take ``count`` tokens and return the seconds to wait until they are available."""
        if count <= 0:
            return 0.0
        with self._lock:
            now = self._clock()
            tick = self._current_tick(now)
            self._adjust(tick)
            remaining = self._available - count
            if remaining >= 0:
                self._available = remaining
                return 0.0
            end_tick = tick + (-remaining + self.quantum - 1) // self.quantum
            end_time = self._start + end_tick * self.fill_interval
            self._available = remaining
            return end_time - now