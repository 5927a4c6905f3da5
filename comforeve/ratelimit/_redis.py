# ratelimit/_redis.py
from __future__ import annotations
import time
from typing import Tuple

import redis.asyncio as redis


# ---- keys
def k_hits(scope: str, identity: str, idx: int) -> str:
    return f"rl:{scope}:{identity}:{idx}"


class RateLimiter:
    """Fixed-window counters shared by every instance through Redis."""

    def __init__(self, r: redis.Redis) -> None:
        self.r = r

    async def hit(
        self, scope: str, identity: str, limit: int, window: int
    ) -> Tuple[bool, int]:
        now = time.time()
        idx = int(now // window)
        key = k_hits(scope, identity, idx)
        pipe = self.r.pipeline(transaction=True)
        pipe.incr(key)
        pipe.expire(key, window + 1)
        count, _ = await pipe.execute()
        if int(count) > limit:
            return False, max(1, int((idx + 1) * window - now))
        return True, 0

    async def reset(self) -> None:
        async for key in self.r.scan_iter(match="rl:*"):
            await self.r.delete(key)
