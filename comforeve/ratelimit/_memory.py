# ratelimit/_memory.py
from __future__ import annotations
import time
from typing import Dict, Tuple


class RateLimiter:
    """In-process fixed-window counters."""

    def __init__(self, clock=time.time) -> None:
        self.clock = clock
        # key -> (window start, count)
        self._hits: Dict[str, Tuple[int, int]] = {}

    def _purge(self, now: float) -> None:
        stale = [k for k, (w, _) in self._hits.items() if w < int(now) - 3600]
        for k in stale:
            del self._hits[k]

    async def hit(
        self, scope: str, identity: str, limit: int, window: int
    ) -> Tuple[bool, int]:
        """Count one request. Returns (allowed, retry_after_seconds)."""
        now = self.clock()
        idx = int(now // window)
        key = f"rl:{scope}:{identity}:{idx}"
        _, count = self._hits.get(key, (0, 0))
        count += 1
        self._hits[key] = (idx * window, count)
        if len(self._hits) > 10_000:
            self._purge(now)
        if count > limit:
            return False, max(1, int((idx + 1) * window - now))
        return True, 0

    async def reset(self) -> None:
        self._hits.clear()
