from __future__ import annotations

import asyncio

from sqlalchemy import select

from flowguard.domain.models import RateLimitRejection, TrafficEvent
from flowguard.persistence.db import SessionLocal
from flowguard.persistence.repos.policies import upsert_policy
from flowguard.services.counter import CounterResult, RedisCounter
from flowguard.services.policy_cache import PolicyCache, PolicySnapshot
from flowguard.services.rate_limit import (
    ANONYMOUS_IDENTITY,
    DECISION_SOURCE_CACHE,
    DECISION_SOURCE_FAIL_OPEN,
    DECISION_SOURCE_STORE,
    RateLimiter,
    counter_key,
    effective_limits,
    evaluate_counter,
    resolve_caller_identity,
)
from flowguard.services.telemetry import counters_snapshot
from flowguard.services.traffic import TrafficRecorder
from flowguard.tests.utils.fake_redis import FailingRedis, FakeRedis
from flowguard.tests.utils.sessions import UnreachableSessionFactory


async def _seed_analyze_policy() -> None:
    async with SessionLocal() as session:
        await upsert_policy(
            session,
            endpoint="api/analyze",
            base_limit=30,
            burst_capacity=10,
            cooldown_seconds=60,
            tier_multipliers={"pro": 2.0, "free": 1.0},
        )
        await session.commit()


def _limiter(redis: FakeRedis, **kwargs) -> tuple[RateLimiter, TrafficRecorder]:  # noqa: ANN003
    recorder = TrafficRecorder(max_size=1000)
    limiter = RateLimiter(
        policy_cache=PolicyCache(),
        counter=RedisCounter(redis=redis, timeout_ms=200),
        recorder=recorder,
        **kwargs,
    )
    return limiter, recorder


def test_caller_identity_precedence() -> None:
    assert resolve_caller_identity("user-1", "10.0.0.1") == "user-1"
    assert resolve_caller_identity(None, "10.0.0.1") == "10.0.0.1"
    assert resolve_caller_identity(None, None) == ANONYMOUS_IDENTITY


def test_effective_limits_floor_with_tier_multiplier() -> None:
    policy = PolicySnapshot(
        endpoint="api/analyze",
        base_limit=30,
        burst_capacity=10,
        cooldown_seconds=60,
        tier_multipliers={"pro": 1.5, "trial": 0.05},
    )

    assert effective_limits(policy, None) == (30, 10)
    assert effective_limits(policy, "pro") == (45, 15)
    assert effective_limits(policy, "unlisted") == (30, 10)
    # No artificial floor: a tiny multiplier can shrink the burst to zero.
    assert effective_limits(policy, "trial") == (1, 0)


def test_counter_key_is_prefixed() -> None:
    assert counter_key("api/analyze", "u1") == "ratelimit:api/analyze:u1"


def test_window_rule_uses_count_before_increment() -> None:
    assert evaluate_counter(CounterResult(1, 60, True), capacity=0, window_seconds=60) == (True, 0)
    assert evaluate_counter(CounterResult(40, 30, False), capacity=40, window_seconds=60) == (True, 0)
    assert evaluate_counter(CounterResult(41, 30, False), capacity=40, window_seconds=60) == (False, 30)
    assert evaluate_counter(CounterResult(41, -2, False), capacity=40, window_seconds=60) == (False, 60)


async def test_forty_first_request_in_window_is_rejected() -> None:
    await _seed_analyze_policy()
    redis = FakeRedis()
    limiter, recorder = _limiter(redis)

    decisions = [await limiter.admit("api/analyze", "user-1") for _ in range(41)]

    assert all(decision.allowed for decision in decisions[:40])
    rejected = decisions[40]
    assert rejected.allowed is False
    assert rejected.source == DECISION_SOURCE_CACHE
    assert rejected.limit == 40
    assert rejected.count == 41
    assert 0 < rejected.retry_after_seconds <= 60

    await recorder.flush()
    async with SessionLocal() as session:
        events = (await session.execute(select(TrafficEvent))).scalars().all()
        rejections = (await session.execute(select(RateLimitRejection))).scalars().all()
    assert len(events) == 41
    assert sum(1 for event in events if event.outcome == "limited") == 1
    assert len(rejections) == 1
    assert rejections[0].request_count == 41
    assert rejections[0].endpoint == "api/analyze"
    assert rejections[0].identity == "user-1"
    assert counters_snapshot()["rate_limit_rejected_total"] == 1


async def test_concurrent_admits_never_exceed_capacity() -> None:
    await _seed_analyze_policy()
    limiter, recorder = _limiter(FakeRedis())
    await limiter.policy_cache.get_policy("api/analyze")

    decisions = await asyncio.gather(*(limiter.admit("api/analyze", "user-1") for _ in range(100)))

    assert sum(1 for decision in decisions if decision.allowed) == 40
    await recorder.flush()


async def test_identities_have_independent_windows() -> None:
    await _seed_analyze_policy()
    limiter, recorder = _limiter(FakeRedis())
    for _ in range(41):
        await limiter.admit("api/analyze", "user-1")

    decision = await limiter.admit("api/analyze", "user-2")

    assert decision.allowed is True
    await recorder.flush()


async def test_new_window_admits_again_after_ttl() -> None:
    await _seed_analyze_policy()
    redis = FakeRedis()
    limiter, recorder = _limiter(redis)
    for _ in range(41):
        await limiter.admit("api/analyze", "user-1")
    assert (await limiter.admit("api/analyze", "user-1")).allowed is False

    redis.advance(60)
    decision = await limiter.admit("api/analyze", "user-1")

    assert decision.allowed is True
    assert decision.count == 1
    await recorder.flush()


async def test_tier_multiplier_raises_capacity() -> None:
    await _seed_analyze_policy()
    limiter, recorder = _limiter(FakeRedis())

    decisions = [await limiter.admit("api/analyze", "user-pro", "pro") for _ in range(81)]

    assert sum(1 for decision in decisions if decision.allowed) == 80
    assert decisions[-1].limit == 80
    await recorder.flush()


async def test_cache_outage_falls_back_to_store_with_same_rule() -> None:
    await _seed_analyze_policy()
    limiter, recorder = _limiter(FailingRedis())

    decisions = [await limiter.admit("api/analyze", "user-1") for _ in range(41)]

    assert {decision.source for decision in decisions} == {DECISION_SOURCE_STORE}
    assert all(decision.allowed for decision in decisions[:40])
    assert decisions[40].allowed is False
    assert 0 < decisions[40].retry_after_seconds <= 60
    assert counters_snapshot()["rate_limit_cache_unavailable_total"] == 41
    await recorder.flush()


async def test_fails_open_when_cache_and_store_are_down() -> None:
    await _seed_analyze_policy()
    limiter, recorder = _limiter(FailingRedis(), session_factory=UnreachableSessionFactory())

    decision = await limiter.admit("api/analyze", "user-1")

    assert decision.allowed is True
    assert decision.source == DECISION_SOURCE_FAIL_OPEN
    assert decision.count is None
    assert decision.remaining is None
    assert counters_snapshot()["rate_limit_fail_open_total"] == 1
    await recorder.flush()


async def test_unknown_endpoint_uses_default_policy() -> None:
    limiter, recorder = _limiter(FakeRedis())

    decisions = [await limiter.admit("api/unknown", "user-1") for _ in range(71)]

    # Default policy: 60 + 10 burst.
    assert sum(1 for decision in decisions if decision.allowed) == 70
    await recorder.flush()
