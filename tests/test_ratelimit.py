import asyncio

import pytest

from verbs.model.ratelimit import (
    MemoryRateLimiter, RedisRateLimiter, new_limiter,
)


class FakeClock:
    def __init__(self, t=1000.0):
        self.t = t

    def __call__(self):
        return self.t


def hits(limiter, key, n):
    async def go():
        return [await limiter.hit(key) for _ in range(n)]
    return asyncio.run(go())


def test_sixth_hit_in_window_is_rejected():
    lim = MemoryRateLimiter(limit=5, window_seconds=3600, clock=FakeClock())
    assert hits(lim, "1.2.3.4", 6) == [True] * 5 + [False]


def test_keys_are_independent():
    lim = MemoryRateLimiter(limit=1, window_seconds=60, clock=FakeClock())
    assert hits(lim, "a", 2) == [True, False]
    assert hits(lim, "b", 1) == [True]


def test_window_expiry_resets_count():
    clock = FakeClock()
    lim = MemoryRateLimiter(limit=2, window_seconds=60, clock=clock)
    assert hits(lim, "ip", 3) == [True, True, False]
    clock.t += 59
    assert hits(lim, "ip", 1) == [False]
    clock.t += 2
    assert hits(lim, "ip", 3) == [True, True, False]


def test_expired_windows_are_evicted():
    clock = FakeClock()
    lim = MemoryRateLimiter(limit=1, window_seconds=60, clock=clock)
    for i in range(100):
        hits(lim, f"10.0.0.{i}", 1)
    assert len(lim._windows) == 100

    clock.t += 61
    assert hits(lim, "10.0.0.200", 1) == [True]
    assert len(lim._windows) == 1


def test_live_windows_survive_a_sweep():
    clock = FakeClock()
    lim = MemoryRateLimiter(limit=1, window_seconds=60, clock=clock)
    hits(lim, "old", 1)
    clock.t += 30
    hits(lim, "fresh", 1)
    clock.t += 31
    # "old" expired, "fresh" is still blocked
    assert hits(lim, "fresh", 1) == [False]
    assert len(lim._windows) == 1


def test_concurrent_hits_never_exceed_limit():
    lim = MemoryRateLimiter(limit=5, window_seconds=60, clock=FakeClock())

    async def go():
        return await asyncio.gather(*(lim.hit("ip") for _ in range(20)))

    assert sum(asyncio.run(go())) == 5


class FakePipeline:
    def __init__(self, store):
        self.store = store
        self.ops = []

    def incr(self, key):
        self.ops.append(("incr", key))

    def expire(self, key, seconds, nx=False):
        self.ops.append(("expire", key, seconds, nx))

    async def execute(self):
        out = []
        for op in self.ops:
            if op[0] == "incr":
                self.store.counts[op[1]] = self.store.counts.get(op[1], 0) + 1
                out.append(self.store.counts[op[1]])
            else:
                _, key, seconds, nx = op
                if nx and key in self.store.ttls:
                    out.append(False)
                else:
                    self.store.ttls[key] = seconds
                    out.append(True)
        return out


class FakeRedis:
    def __init__(self):
        self.counts = {}
        self.ttls = {}

    def pipeline(self, transaction=True):
        return FakePipeline(self)


def test_redis_limiter_counts_per_window():
    r = FakeRedis()
    lim = RedisRateLimiter(r=r, limit=2, window_seconds=3600)
    assert hits(lim, "ip", 3) == [True, True, False]
    assert r.counts == {"rl:ip": 3}
    assert r.ttls == {"rl:ip": 3600}


def test_factory():
    assert isinstance(new_limiter("memory", limit=1, window_seconds=1),
                      MemoryRateLimiter)
    assert isinstance(
        new_limiter("redis", limit=1, window_seconds=1, r=FakeRedis()),
        RedisRateLimiter,
    )
    with pytest.raises(RuntimeError):
        new_limiter("redis", limit=1, window_seconds=1)
    with pytest.raises(ValueError):
        new_limiter("carrier-pigeon", limit=1, window_seconds=1)
