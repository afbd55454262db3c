"""
Fixed-window request limiter keyed by client IP (in-memory).

- Each key keeps the timestamps of its accepted requests.
- A check drops timestamps older than the window, rejects when the remaining
  count is at the limit, otherwise records the request and accepts.
- Keys idle for a whole window are swept out on the next check, so memory
  follows the set of recently active clients.
- Single process only; state is lost on restart.
"""

from __future__ import annotations

import math
import time
from typing import Callable, Dict, List, Optional

from errors import RateLimitError


class FixedWindowRateLimiter:
    def __init__(
        self,
        name: str,
        max_requests: int,
        window_s: float,
        *,
        clock: Optional[Callable[[], float]] = None,
    ):
        if max_requests < 1:
            raise ValueError("max_requests must be >= 1")
        if window_s <= 0:
            raise ValueError("window_s must be positive")
        self.name = name
        self.max_requests = max_requests
        self.window_s = window_s
        self._clock = clock or time.monotonic
        self._requests: Dict[str, List[float]] = {}
        self._last_sweep = self._clock()

    def check(self, key: str) -> bool:
        """Record a request for ``key``; False when it exceeds the limit."""
        now = self._clock()
        # At most one sweep per window keeps idle IPs from piling up
        if now - self._last_sweep >= self.window_s:
            self.sweep()
        recent = [ts for ts in self._requests.get(key, []) if now - ts < self.window_s]
        if len(recent) >= self.max_requests:
            self._requests[key] = recent
            return False
        recent.append(now)
        self._requests[key] = recent
        return True

    def enforce(self, key: str) -> None:
        """Like ``check`` but raises RateLimitError instead of returning False."""
        if not self.check(key):
            raise RateLimitError(retry_after=self.retry_after(key))

    def retry_after(self, key: str) -> int:
        timestamps = self._requests.get(key)
        if not timestamps:
            return 0
        remaining = timestamps[0] + self.window_s - self._clock()
        return max(int(math.ceil(remaining)), 1)

    def sweep(self) -> int:
        """Forget keys with no request inside the window. Returns keys removed."""
        now = self._clock()
        self._last_sweep = now
        stale = [
            key
            for key, timestamps in self._requests.items()
            if not any(now - ts < self.window_s for ts in timestamps)
        ]
        for key in stale:
            del self._requests[key]
        return len(stale)

    def __len__(self) -> int:
        return len(self._requests)


__all__ = ["FixedWindowRateLimiter"]
