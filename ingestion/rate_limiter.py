"""
Sliding-window rate limiting for marketplace API requests
"""

import asyncio
import time
from collections import deque
from typing import Callable, Awaitable, Deque, Dict, Optional
import logging

logger = logging.getLogger(__name__)


class SlidingWindowRateLimiter:
    """
    Async rate limiter with a bounded sliding window per key.

    One instance is created per upstream host and injected into every client
    that talks to it, so all stages share the same budget.

    Attributes:
        max_requests: Requests allowed inside one window
        window_seconds: Length of the sliding window
    """

    def __init__(
        self,
        max_requests: int,
        window_seconds: float,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep
    ):
        if max_requests < 1:
            raise ValueError("max_requests must be at least 1")
        if window_seconds <= 0:
            raise ValueError("window_seconds must be positive")

        self.max_requests = max_requests
        self.window_seconds = window_seconds
        self._clock = clock
        self._sleep = sleep
        self._windows: Dict[str, Deque[float]] = {}
        self._blocked_until: Dict[str, float] = {}
        self._lock = asyncio.Lock()

    def _window(self, key: str) -> Deque[float]:
        if key not in self._windows:
            self._windows[key] = deque(maxlen=self.max_requests)
        return self._windows[key]

    def _evict(self, window: Deque[float], now: float):
        while window and now - window[0] >= self.window_seconds:
            window.popleft()

    def _wait_time(self, key: str, now: float) -> float:
        window = self._window(key)
        self._evict(window, now)

        wait = max(0.0, self._blocked_until.get(key, 0.0) - now)
        if len(window) >= self.max_requests:
            wait = max(wait, self.window_seconds - (now - window[0]))
        return wait

    async def acquire(self, key: str = "default") -> float:
        """
        Wait until a request slot is free for `key`, then claim it.

        Returns:
            Seconds spent waiting
        """
        waited = 0.0

        async with self._lock:
            while True:
                now = self._clock()
                wait = self._wait_time(key, now)
                if wait <= 0:
                    self._window(key).append(now)
                    return waited

                logger.info(
                    f"Rate limit reached for {key} "
                    f"({len(self._window(key))}/{self.max_requests}). "
                    f"Sleeping for {wait:.2f} seconds"
                )
                await self._sleep(wait)
                waited += wait

    def penalize(self, key: str, seconds: float):
        """Block `key` for `seconds` after the upstream reported a rate limit"""
        until = self._clock() + seconds
        if until > self._blocked_until.get(key, 0.0):
            self._blocked_until[key] = until
            logger.warning(f"Rate limiter: {key} blocked for {seconds:.2f} seconds")

    def remaining(self, key: str = "default") -> int:
        """Requests still available in the current window"""
        window = self._window(key)
        self._evict(window, self._clock())
        return max(0, self.max_requests - len(window))

    def reset(self, key: Optional[str] = None):
        if key is None:
            self._windows.clear()
            self._blocked_until.clear()
        else:
            self._windows.pop(key, None)
            self._blocked_until.pop(key, None)

    def __str__(self) -> str:
        return (
            f"SlidingWindowRateLimiter(max_requests={self.max_requests}, "
            f"window_seconds={self.window_seconds}, keys={len(self._windows)})"
        )
