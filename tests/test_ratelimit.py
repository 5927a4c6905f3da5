from types import SimpleNamespace

import pytest

from comforeve.ratelimit import (
    MemoryRateLimiter, RedisRateLimiter, new_limiter,
)
from comforeve.ratelimit.dep import client_ip


class Clock:
    def __init__(self, t=1_000.0):
        self.t = t

    def __call__(self):
        return self.t


async def test_fixed_window():
    clock = Clock(1_000.0)
    rl = MemoryRateLimiter(clock=clock)

    for _ in range(3):
        assert await rl.hit("verify", "1.2.3.4", 3, 60) == (True, 0)
    allowed, retry_after = await rl.hit("verify", "1.2.3.4", 3, 60)
    assert not allowed
    # window [960, 1020)
    assert retry_after == 20

    # other identities and scopes have their own counters
    assert (await rl.hit("verify", "5.6.7.8", 3, 60))[0]
    assert (await rl.hit("book_free", "1.2.3.4", 3, 60))[0]

    clock.t = 1_020.0
    assert (await rl.hit("verify", "1.2.3.4", 3, 60))[0]


async def test_reset():
    rl = MemoryRateLimiter(clock=Clock())
    assert (await rl.hit("payout", "org-1", 1, 300))[0]
    assert not (await rl.hit("payout", "org-1", 1, 300))[0]
    await rl.reset()
    assert (await rl.hit("payout", "org-1", 1, 300))[0]


def test_factory():
    assert isinstance(new_limiter("memory"), MemoryRateLimiter)
    with pytest.raises(RuntimeError):
        new_limiter("redis")
    with pytest.raises(RuntimeError):
        new_limiter("memcached")


class _FakePipeline:
    def __init__(self, store):
        self.store = store
        self.ops = []

    def incr(self, key):
        self.ops.append(("incr", key))

    def expire(self, key, seconds):
        self.ops.append(("expire", key, seconds))

    async def execute(self):
        out = []
        for op in self.ops:
            if op[0] == "incr":
                self.store[op[1]] = self.store.get(op[1], 0) + 1
                out.append(self.store[op[1]])
            else:
                out.append(True)
        return out


class _FakeRedis:
    def __init__(self):
        self.store = {}
        self.pipelines = []

    def pipeline(self, transaction=True):
        p = _FakePipeline(self.store)
        self.pipelines.append(p)
        return p


async def test_redis_backend_counts_in_one_pipeline():
    r = _FakeRedis()
    rl = new_limiter("redis", r=r)
    assert isinstance(rl, RedisRateLimiter)

    assert (await rl.hit("verify", "1.2.3.4", 2, 60))[0]
    assert (await rl.hit("verify", "1.2.3.4", 2, 60))[0]
    allowed, retry_after = await rl.hit("verify", "1.2.3.4", 2, 60)
    assert not allowed
    assert 1 <= retry_after <= 60

    (key,) = r.store
    assert key.startswith("rl:verify:1.2.3.4:")
    assert r.pipelines[0].ops[1] == ("expire", key, 61)


def _request(peer, forwarded=None, trusted=()):
    headers = {"x-forwarded-for": forwarded} if forwarded else {}
    return SimpleNamespace(
        client=SimpleNamespace(host=peer),
        headers=headers,
        app=SimpleNamespace(state=SimpleNamespace(
            settings=SimpleNamespace(trusted_proxies=trusted),
        )),
    )


@pytest.mark.parametrize("peer, forwarded, trusted, expected", [
    ("198.51.100.7", None, (), "198.51.100.7"),
    # untrusted peers cannot pick their own identity
    ("198.51.100.7", "1.1.1.1", (), "198.51.100.7"),
    ("10.0.0.2", "1.1.1.1, 2.2.2.2", ("10.0.0.2",), "2.2.2.2"),
    ("10.0.0.2", "1.1.1.1, 10.0.0.3", ("10.0.0.2", "10.0.0.3"), "1.1.1.1"),
])
def test_client_ip(peer, forwarded, trusted, expected):
    assert client_ip(_request(peer, forwarded, trusted)) == expected
