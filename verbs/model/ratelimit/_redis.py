from __future__ import annotations
import redis.asyncio as redis


# ---- keys
def k_rl(key: str) -> str: return f"rl:{key}"


class RedisRateLimiter:
    """
    Fixed-window counter shared by every worker pointing at the same Redis.
    INCR and EXPIRE NX go out in one MULTI, so the first hit of a window
    starts the clock and later hits never extend it.
    """

    def __init__(self, r: redis.Redis, limit: int,
                 window_seconds: int) -> None:
        self.r = r
        self.limit = limit
        self.window = int(window_seconds)

    async def hit(self, key: str) -> bool:
        pipe = self.r.pipeline(transaction=True)
        pipe.incr(k_rl(key))
        pipe.expire(k_rl(key), self.window, nx=True)
        count, _ = await pipe.execute()
        return int(count) <= self.limit
