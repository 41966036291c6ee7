"""In-memory sliding-window rate limiter for chat requests.

Per-process state only. Behind several workers each one enforces its own
window. Owners with no hits inside the window hold no state.
"""

from __future__ import annotations

import logging
import time
from collections import deque

from rememory.config import Settings

logger = logging.getLogger(__name__)


class SlidingWindowLimiter:
    def __init__(self, max_requests: int, window_seconds: float) -> None:
        self._max = max_requests
        self._window = window_seconds
        self._hits: dict[str, deque[float]] = {}

    @classmethod
    def from_settings(cls, settings: Settings) -> "SlidingWindowLimiter":
        return cls(settings.rate_limit_max_requests, settings.rate_limit_window_seconds)

    def allow(self, key: str, now: float | None = None) -> bool:
        """Record a hit for ``key``. False if the window is already full."""
        now = time.monotonic() if now is None else now
        cutoff = now - self._window

        hits = self._hits.get(key)
        if hits is None:
            self._evict_idle(cutoff)
            hits = self._hits[key] = deque()
        while hits and hits[0] <= cutoff:
            hits.popleft()

        if len(hits) >= self._max:
            logger.warning("Rate limit hit for %s (%d/%.0fs)", key, self._max, self._window)
            return False
        hits.append(now)
        return True

    def _evict_idle(self, cutoff: float) -> None:
        # Newest hit is last, so an owner is idle once it falls out of the window
        idle = [k for k, hits in self._hits.items() if not hits or hits[-1] <= cutoff]
        for k in idle:
            del self._hits[k]
