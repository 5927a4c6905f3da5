# ratelimit/__init__.py
"""
Request throttling. Fixed windows keyed by scope, identity and window index.

Throttling only: nothing that guards money or tickets may depend on these
counters. The memory backend is per process and resets on restart; use
redis when more than one instance serves traffic.
"""
import os
from typing import Optional

import redis.asyncio as redis

from ._memory import RateLimiter as MemoryRateLimiter
from ._redis import RateLimiter as RedisRateLimiter
from .dep import RateLimit

BACKEND = os.getenv("RATELIMIT_BACKEND", "memory").lower()  # memory | redis


# Factory keeps server.py simple and constructor-agnostic:
def new_limiter(backend: str = BACKEND, *, r: Optional[redis.Redis] = None):
    if backend == "redis":
        if r is None:
            raise RuntimeError("RateLimiter(redis) requires r=redis.Redis")
        return RedisRateLimiter(r=r)
    if backend == "memory":
        return MemoryRateLimiter()
    raise RuntimeError(f"unknown RATELIMIT_BACKEND: {backend}")


__all__ = [
    "MemoryRateLimiter", "RedisRateLimiter", "RateLimit", "new_limiter",
    "BACKEND",
]
