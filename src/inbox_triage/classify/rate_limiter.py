"""Process-wide sliding-window submission budget for the classification oracle."""

from __future__ import annotations

import logging
import threading
import time
from collections import deque
from collections.abc import Callable

logger = logging.getLogger(__name__)


class SlidingWindowLimiter:
    """Allows at most ``max_calls`` acquisitions in any ``period``-second window.

    Callers over budget block until the oldest submission leaves the window;
    nothing is rejected.
    """

    def __init__(
        self,
        max_calls: int = 100,
        period: float = 60.0,
        *,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        if max_calls <= 0:
            raise ValueError("max_calls must be positive")
        if period <= 0:
            raise ValueError("period must be positive")
        self._max_calls = max_calls
        self._period = period
        self._clock = clock
        self._sleep = sleep
        self._calls: deque[float] = deque()
        self._lock = threading.Lock()

    def acquire(self) -> float:
        """Take one submission slot, waiting if the window is full.

        Returns:
            Total seconds spent waiting.
        """
        waited = 0.0
        while True:
            with self._lock:
                now = self._clock()
                while self._calls and now - self._calls[0] >= self._period:
                    self._calls.popleft()
                if len(self._calls) < self._max_calls:
                    self._calls.append(now)
                    return waited
                wait = self._calls[0] + self._period - now

            logger.info("Oracle submission budget exhausted, waiting %.2fs", wait)
            self._sleep(wait)
            waited += wait

    def in_window(self) -> int:
        """Number of submissions currently counted against the window."""
        with self._lock:
            now = self._clock()
            return sum(1 for t in self._calls if now - t < self._period)
