"""
Fixed-window rate limiter for device ingestion.

One counter per key (the device token).  The first request in a window
starts it with count 1; each later request increments the count, including
requests that end up denied, so retrying inside the window never frees
capacity.  Once a window has expired the next request replaces it.
"""

import threading
import time
from dataclasses import dataclass
from typing import Callable, Dict, Optional


def _now_ms() -> int:
    return int(time.monotonic() * 1000)


@dataclass
class _Window:
    count: int
    reset_at: int       # ms, same clock as the limiter


class FixedWindowRateLimiter:

    def __init__(
        self,
        limit: int = 30,
        window_ms: int = 60_000,
        clock: Callable[[], int] = _now_ms,
    ):
        if limit < 1 or window_ms < 1:
            raise ValueError("limit and window_ms must be positive")
        self.limit = limit
        self.window_ms = window_ms
        self._clock = clock
        self._windows: Dict[str, _Window] = {}
        self._lock = threading.Lock()

    def check(self, key: str) -> bool:
        """Count a request for *key*.  Returns True if it is allowed."""
        with self._lock:
            now = self._clock()
            window = self._windows.get(key)
            if window is None or window.reset_at < now:
                self._windows[key] = _Window(count=1, reset_at=now + self.window_ms)
                return True
            window.count += 1
            return window.count <= self.limit

    def reset(self, key: Optional[str] = None) -> None:
        with self._lock:
            if key is None:
                self._windows.clear()
            else:
                self._windows.pop(key, None)
