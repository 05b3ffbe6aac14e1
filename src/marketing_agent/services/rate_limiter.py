"""Per-organization sliding-window limiter for content generation."""

from __future__ import annotations

import threading
import time
from collections import deque
from typing import Callable, Deque, Dict, Optional

from loguru import logger

from marketing_agent.errors import RateLimited


class SlidingWindowRateLimiter:
    """Allow at most ``max_requests`` per key within ``window_seconds``.

    State is process-local; losing it on restart only relaxes the limit.
    """

    def __init__(
        self,
        max_requests: int = 5,
        window_seconds: float = 60.0,
        clock: Optional[Callable[[], float]] = None,
    ):
        self.max_requests = max_requests
        self.window_seconds = window_seconds
        self._clock = clock or time.monotonic
        self._hits: Dict[str, Deque[float]] = {}
        self._lock = threading.Lock()

    def _evict(self, hits: Deque[float], now: float) -> None:
        while hits and now - hits[0] >= self.window_seconds:
            hits.popleft()

    def _drop_idle(self, now: float) -> int:
        idle = []
        for key, hits in self._hits.items():
            self._evict(hits, now)
            if not hits:
                idle.append(key)
        for key in idle:
            del self._hits[key]
        return len(idle)

    def check(self, key: str) -> None:
        """Record a request for ``key`` or raise RateLimited."""
        with self._lock:
            now = self._clock()
            self._drop_idle(now)
            hits = self._hits.setdefault(key, deque())

            if len(hits) >= self.max_requests:
                retry_after = max(0.0, self.window_seconds - (now - hits[0]))
                logger.warning(f"[GENERATE] Rate limit hit for {key}; retry after {retry_after:.1f}s")
                raise RateLimited(
                    f"Too many generation requests for organization {key}",
                    retry_after=retry_after,
                )
            hits.append(now)

    def remaining(self, key: str) -> int:
        with self._lock:
            hits = self._hits.get(key)
            if hits is None:
                return self.max_requests
            self._evict(hits, self._clock())
            if not hits:
                del self._hits[key]
            return max(0, self.max_requests - len(hits))

    def prune(self) -> int:
        """Forget keys with no hits left in the window. Returns how many were dropped."""
        with self._lock:
            return self._drop_idle(self._clock())

    def reset(self, key: Optional[str] = None) -> None:
        with self._lock:
            if key is None:
                self._hits.clear()
            else:
                self._hits.pop(key, None)
