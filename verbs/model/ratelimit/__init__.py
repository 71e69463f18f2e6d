# model/ratelimit/__init__.py
from typing import Callable, Optional
import time
import redis.asyncio as redis

from ._memory import MemoryRateLimiter
from ._redis import RedisRateLimiter

RateLimiter = MemoryRateLimiter | RedisRateLimiter


# server.py picks the backend by name from Settings
def new_limiter(backend: str, *,
                limit: int,
                window_seconds: int,
                r: Optional[redis.Redis] = None,
                clock: Callable[[], float] = time.time) -> RateLimiter:
    if backend == "redis":
        if r is None:
            raise RuntimeError(
                "RateLimiter(redis) requires r=redis.Redis"
            )
        return RedisRateLimiter(r=r, limit=limit,
                                window_seconds=window_seconds)
    if backend == "memory":
        return MemoryRateLimiter(limit=limit, window_seconds=window_seconds,
                                 clock=clock)
    raise ValueError(f"unknown rate limit backend: {backend!r}")


__all__ = ["RateLimiter", "MemoryRateLimiter", "RedisRateLimiter",
           "new_limiter"]
