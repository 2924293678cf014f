import asyncio
import logging

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

from spark.infra.rate_limit import (
    CONNECT,
    SEND_MESSAGE,
    LocalRateLimiter,
    RateLimiter,
    RateRule,
)


class _Clock:
    def __init__(self, start=1_000_000.0):
        self.now = start

    def __call__(self):
        return self.now


class _BrokenRedis:
    def register_script(self, script):
        async def _run(keys=None, args=None):
            raise RedisConnectionError("connection refused")

        return _run


class _SlowRedis:
    def register_script(self, script):
        async def _run(keys=None, args=None):
            await asyncio.sleep(1)

        return _run


@pytest.fixture(params=["store", "local"])
def limiter_for(request, fake_redis):
    """Build a limiter over the shared store or over local buckets only."""

    def _build(clock, rules=None):
        redis = fake_redis if request.param == "store" else _BrokenRedis()
        return RateLimiter(redis, rules=rules, clock=clock, store_timeout=1.0)

    return _build


@pytest.mark.asyncio
async def test_send_message_budget_rejects_the_31st_hit_within_a_second(limiter_for):
    clock = _Clock()
    limiter = limiter_for(clock)
    for _ in range(30):
        clock.now += 0.01
        assert (await limiter.hit(SEND_MESSAGE, "u1")).allowed
    clock.now += 0.01
    decision = await limiter.hit(SEND_MESSAGE, "u1")
    assert not decision.allowed
    assert 0 < decision.retry_after_ms <= 2000


@pytest.mark.asyncio
async def test_drained_bucket_refills_over_time(limiter_for):
    clock = _Clock()
    limiter = limiter_for(clock)
    for _ in range(30):
        assert (await limiter.hit(SEND_MESSAGE, "u1")).allowed
    assert not (await limiter.hit(SEND_MESSAGE, "u1")).allowed
    clock.now += 10
    assert (await limiter.hit(SEND_MESSAGE, "u1")).allowed


@pytest.mark.asyncio
async def test_refill_is_capped_by_the_burst_allowance_per_window(limiter_for):
    clock = _Clock()
    limiter = limiter_for(clock)
    for _ in range(30):
        assert (await limiter.hit(SEND_MESSAGE, "u1")).allowed
    clock.now += 20
    accepted = 0
    for _ in range(10):
        if (await limiter.hit(SEND_MESSAGE, "u1")).allowed:
            accepted += 1
    assert accepted == 5
    blocked = await limiter.hit(SEND_MESSAGE, "u1")
    assert not blocked.allowed
    assert 39_000 <= blocked.retry_after_ms <= 40_001
    clock.now += 40.5
    assert (await limiter.hit(SEND_MESSAGE, "u1")).allowed


@pytest.mark.asyncio
async def test_retry_after_tracks_the_next_token(limiter_for):
    clock = _Clock()
    limiter = limiter_for(clock, {"act": RateRule(capacity=2, window_seconds=10, burst=2)})
    assert (await limiter.hit("act", "u1")).allowed
    assert (await limiter.hit("act", "u1")).allowed
    clock.now += 1
    blocked = await limiter.hit("act", "u1")
    assert not blocked.allowed
    assert 3000 <= blocked.retry_after_ms <= 4001
    clock.now += 4.5
    assert (await limiter.hit("act", "u1")).allowed


@pytest.mark.asyncio
async def test_subjects_are_limited_independently(fake_redis):
    limiter = RateLimiter(fake_redis, rules={CONNECT: RateRule(capacity=1)}, store_timeout=1.0)
    assert (await limiter.hit(CONNECT, "10.0.0.1")).allowed
    assert not (await limiter.hit(CONNECT, "10.0.0.1")).allowed
    assert (await limiter.hit(CONNECT, "10.0.0.2")).allowed


@pytest.mark.asyncio
async def test_store_decisions_are_not_degraded(fake_redis):
    limiter = RateLimiter(fake_redis, rules={"act": RateRule(capacity=3)}, store_timeout=1.0)
    decision = await limiter.hit("act", "u1")
    assert decision.allowed
    assert decision.remaining == 2
    assert not decision.degraded
    assert await fake_redis.exists("rl:act:u1", "rl:act:u1:log") == 2


@pytest.mark.asyncio
async def test_unreachable_store_falls_back_to_local_buckets(caplog):
    caplog.set_level(logging.WARNING, logger="spark.infra.rate_limit")
    limiter = RateLimiter(_BrokenRedis(), rules={"act": RateRule(capacity=1)})
    first = await limiter.hit("act", "u1")
    second = await limiter.hit("act", "u1")
    assert first.allowed and first.degraded
    assert not second.allowed and second.degraded
    assert any(record.getMessage() == "rate_limit.degraded" for record in caplog.records)


@pytest.mark.asyncio
async def test_slow_store_times_out_into_fallback():
    limiter = RateLimiter(_SlowRedis(), rules={"act": RateRule(capacity=5)}, store_timeout=0.01)
    decision = await limiter.hit("act", "u1")
    assert decision.allowed
    assert decision.degraded


def test_local_limiter_evicts_stale_keys():
    clock = _Clock()
    local = LocalRateLimiter(clock, max_keys=2)
    rule = RateRule(capacity=1, window_seconds=1)
    local.hit("a", rule)
    local.hit("b", rule)
    clock.now += 5
    assert local.hit("c", rule).allowed
    assert local.hit("a", rule).allowed
