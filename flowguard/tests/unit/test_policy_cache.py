from __future__ import annotations

from flowguard.domain.models import RateLimitPolicy
from flowguard.persistence.db import SessionLocal
from flowguard.persistence.repos.policies import upsert_policy
from flowguard.services.policy_cache import PolicyCache, default_policy, snapshot_from_row
from flowguard.tests.utils.sessions import UnreachableSessionFactory


class _Clock:
    def __init__(self) -> None:
        self.now = 1000.0

    def __call__(self) -> float:
        return self.now


async def _seed(endpoint: str, **overrides) -> None:  # noqa: ANN003
    values = {
        "base_limit": 30,
        "burst_capacity": 10,
        "cooldown_seconds": 60,
        "tier_multipliers": {"pro": 2.0},
    }
    values.update(overrides)
    async with SessionLocal() as session:
        await upsert_policy(session, endpoint=endpoint, **values)
        await session.commit()


async def test_loads_policy_row() -> None:
    await _seed("api/analyze")
    cache = PolicyCache(ttl_s=300)

    policy = await cache.get_policy("api/analyze")

    assert policy.base_limit == 30
    assert policy.burst_capacity == 10
    assert policy.cooldown_seconds == 60
    assert policy.multiplier_for("pro") == 2.0
    assert policy.multiplier_for("unknown") == 1.0
    assert policy.multiplier_for(None) == 1.0
    assert policy.is_default is False


async def test_entries_expire_after_ttl() -> None:
    await _seed("api/analyze")
    clock = _Clock()
    cache = PolicyCache(ttl_s=300, time_provider=clock)
    assert (await cache.get_policy("api/analyze")).base_limit == 30

    await _seed("api/analyze", base_limit=50)
    clock.now += 299
    assert (await cache.get_policy("api/analyze")).base_limit == 30

    clock.now += 1
    assert (await cache.get_policy("api/analyze")).base_limit == 50


async def test_missing_row_returns_cached_default() -> None:
    clock = _Clock()
    cache = PolicyCache(ttl_s=300, time_provider=clock)

    policy = await cache.get_policy("api/unknown")
    assert policy == default_policy("api/unknown")
    assert (policy.base_limit, policy.burst_capacity, policy.cooldown_seconds) == (60, 10, 60)

    # The absence was a successful read, so it is served from cache until expiry.
    await _seed("api/unknown", base_limit=5)
    assert (await cache.get_policy("api/unknown")).is_default is True

    cache.invalidate("api/unknown")
    assert (await cache.get_policy("api/unknown")).base_limit == 5


async def test_read_failure_returns_uncached_default() -> None:
    sessions = UnreachableSessionFactory()
    cache = PolicyCache(session_factory=sessions, ttl_s=300)

    first = await cache.get_policy("api/analyze")
    second = await cache.get_policy("api/analyze")

    assert first.is_default and second.is_default
    assert sessions.calls == 2


def test_invalid_multipliers_are_dropped() -> None:
    row = RateLimitPolicy(
        endpoint="api/analyze",
        base_limit=30,
        burst_capacity=10,
        cooldown_seconds=60,
        tier_multipliers={"pro": "2.5", "broken": "x", "negative": -1},
        adaptive_enabled=False,
    )

    snapshot = snapshot_from_row(row)

    assert snapshot.tier_multipliers == {"pro": 2.5}
