from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy import select
from sqlalchemy.exc import OperationalError

from flowguard.core.errors import StoreUnavailableError
from flowguard.domain.models import RegionWorkerPool, ScalingEvent, TrafficEvent
from flowguard.persistence.db import SessionLocal
from flowguard.persistence.repos import regions as regions_repo
from flowguard.persistence.repos.regions import apply_pool_target
from flowguard.services.autoscaling import (
    AutoscalingController,
    compute_ideal_workers,
    cooldown_active,
    is_significant_change,
)
from flowguard.services.locks import acquire_lock
from flowguard.services.telemetry import counters_snapshot
from flowguard.tests.utils.fake_redis import FailingRedis, FakeRedis
from flowguard.tests.utils.sessions import UnreachableSessionFactory


NOW = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)


def _controller(redis: FakeRedis | None = None, **overrides) -> AutoscalingController:  # noqa: ANN003
    options = {
        "regions": ["iad1"],
        "requests_per_worker": 500,
        "min_workers": 1,
        "max_workers": 10,
        "cooldown_seconds": 300,
        "hysteresis_ratio": 0.25,
        "traffic_window_s": 900,
    }
    options.update(overrides)
    return AutoscalingController(redis=redis or FakeRedis(), now_provider=lambda: NOW, **options)


async def _add_pool(region: str, *, active: int, last_scaled: datetime, min_workers: int = 1, max_workers: int = 10) -> None:
    async with SessionLocal() as session:
        session.add(
            RegionWorkerPool(
                region=region,
                active_workers=active,
                min_workers=min_workers,
                max_workers=max_workers,
                last_scaled=last_scaled,
            )
        )
        await session.commit()


async def _add_traffic(region: str, count: int, *, at: datetime) -> None:
    async with SessionLocal() as session:
        session.add_all(
            [
                TrafficEvent(
                    endpoint="api/analyze",
                    identity=f"user-{index % 50}",
                    region=region,
                    outcome="served",
                    latency_ms=1.0,
                    occurred_at=at,
                )
                for index in range(count)
            ]
        )
        await session.commit()


async def _pool(region: str) -> RegionWorkerPool:
    async with SessionLocal() as session:
        pool = (await session.execute(select(RegionWorkerPool).where(RegionWorkerPool.region == region))).scalar_one()
    return pool


async def _events(region: str | None = None) -> list[ScalingEvent]:
    async with SessionLocal() as session:
        stmt = select(ScalingEvent).order_by(ScalingEvent.created_at)
        if region:
            stmt = stmt.where(ScalingEvent.region == region)
        return list((await session.execute(stmt)).scalars().all())


def test_ideal_workers_is_clamped() -> None:
    assert compute_ideal_workers(0, requests_per_worker=500, min_workers=1, max_workers=10) == 1
    assert compute_ideal_workers(501, requests_per_worker=500, min_workers=1, max_workers=10) == 2
    assert compute_ideal_workers(3000, requests_per_worker=500, min_workers=1, max_workers=10) == 6
    assert compute_ideal_workers(10**6, requests_per_worker=500, min_workers=1, max_workers=10) == 10


def test_hysteresis_ignores_small_changes() -> None:
    assert is_significant_change(2, 6, hysteresis_ratio=0.25) is True
    assert is_significant_change(8, 7, hysteresis_ratio=0.25) is False
    assert is_significant_change(8, 6, hysteresis_ratio=0.25) is True
    assert is_significant_change(1, 1, hysteresis_ratio=0.25) is False
    assert is_significant_change(1, 2, hysteresis_ratio=0.25) is True


def test_cooldown_window() -> None:
    assert cooldown_active(NOW - timedelta(seconds=200), NOW, cooldown_seconds=300) is True
    assert cooldown_active(NOW - timedelta(seconds=300), NOW, cooldown_seconds=300) is False
    assert cooldown_active(None, NOW, cooldown_seconds=300) is False


async def test_scales_up_from_traffic() -> None:
    await _add_pool("iad1", active=2, last_scaled=NOW - timedelta(seconds=400))
    await _add_traffic("iad1", 3000, at=NOW - timedelta(minutes=5))

    summary = await _controller().run_cycle()

    assert summary.status == "ok"
    assert summary.lock_mode == "held"
    assert [(a.region, a.previous_workers, a.new_workers, a.reason) for a in summary.actions] == [
        ("iad1", 2, 6, "scale_up"),
    ]
    pool = await _pool("iad1")
    assert pool.active_workers == 6
    assert pool.last_scaled == NOW
    events = await _events("iad1")
    assert [(e.previous_workers, e.new_workers, e.traffic, e.reason) for e in events] == [
        (2, 6, 3000, "scale_up"),
    ]


async def test_recently_scaled_region_is_left_alone() -> None:
    await _add_pool("iad1", active=2, last_scaled=NOW - timedelta(seconds=200))
    await _add_traffic("iad1", 3000, at=NOW - timedelta(minutes=5))

    summary = await _controller().run_cycle()

    assert summary.actions == []
    assert summary.skipped == [{"region": "iad1", "reason": "cooldown"}]
    assert (await _pool("iad1")).active_workers == 2
    assert await _events() == []


async def test_traffic_outside_window_is_ignored() -> None:
    await _add_pool("iad1", active=2, last_scaled=NOW - timedelta(hours=1))
    await _add_traffic("iad1", 3000, at=NOW - timedelta(minutes=20))

    summary = await _controller().run_cycle()

    assert [(a.previous_workers, a.new_workers, a.reason) for a in summary.actions] == [(2, 1, "scale_down")]


async def test_small_change_is_skipped() -> None:
    await _add_pool("iad1", active=8, last_scaled=NOW - timedelta(hours=1))
    await _add_traffic("iad1", 3400, at=NOW - timedelta(minutes=1))

    summary = await _controller().run_cycle()

    assert summary.actions == []
    assert summary.skipped == [{"region": "iad1", "reason": "within_hysteresis"}]


async def test_targets_stay_within_pool_bounds() -> None:
    await _add_pool("iad1", active=3, last_scaled=NOW - timedelta(hours=1), min_workers=2, max_workers=5)
    await _add_traffic("iad1", 9000, at=NOW - timedelta(minutes=1))

    summary = await _controller().run_cycle()

    assert [a.new_workers for a in summary.actions] == [5]
    assert (await _pool("iad1")).active_workers == 5


async def test_missing_pools_are_created_at_minimum() -> None:
    await _add_traffic("fra1", 10, at=NOW - timedelta(minutes=1))

    summary = await _controller(regions=["iad1", "sfo1"], min_workers=2).run_cycle()

    created = sorted((a.region, a.previous_workers, a.new_workers, a.reason) for a in summary.actions)
    assert created == [
        ("fra1", 0, 2, "created"),
        ("iad1", 0, 2, "created"),
        ("sfo1", 0, 2, "created"),
    ]
    pool = await _pool("fra1")
    assert (pool.active_workers, pool.min_workers, pool.max_workers) == (2, 2, 10)
    assert len(await _events()) == 3


async def test_contended_lock_skips_cycle_without_writes() -> None:
    redis = FakeRedis()
    holder = await acquire_lock(redis, key="lock:autoscaling", ttl_s=60, timeout_ms=100)
    assert holder is not None
    await _add_pool("iad1", active=2, last_scaled=NOW - timedelta(seconds=400))
    await _add_traffic("iad1", 3000, at=NOW - timedelta(minutes=5))

    summary = await _controller(redis).run_cycle()

    assert summary.status == "skipped_lock"
    assert summary.actions == []
    assert (await _pool("iad1")).active_workers == 2
    assert await redis.get("lock:autoscaling") == holder.token


async def test_simultaneous_cycles_have_one_lock_holder() -> None:
    redis = FakeRedis()
    await _add_pool("iad1", active=2, last_scaled=NOW - timedelta(seconds=400))
    await _add_traffic("iad1", 3000, at=NOW - timedelta(minutes=5))

    summaries = await asyncio.gather(_controller(redis).run_cycle(), _controller(redis).run_cycle())

    assert sorted(summary.status for summary in summaries) == ["ok", "skipped_lock"]
    assert len(await _events("iad1")) == 1
    assert await redis.get("lock:autoscaling") is None


async def test_unreachable_lock_store_runs_degraded() -> None:
    await _add_pool("iad1", active=2, last_scaled=NOW - timedelta(seconds=400))
    await _add_traffic("iad1", 3000, at=NOW - timedelta(minutes=5))

    summary = await _controller(FailingRedis()).run_cycle()

    assert summary.status == "ok"
    assert summary.lock_mode == "degraded"
    assert [a.new_workers for a in summary.actions] == [6]
    assert counters_snapshot()["autoscaling_degraded_lock_total"] == 1


async def test_degraded_cycles_do_not_double_apply() -> None:
    await _add_pool("iad1", active=2, last_scaled=NOW - timedelta(seconds=400))
    await _add_traffic("iad1", 3000, at=NOW - timedelta(minutes=5))
    stale = await _pool("iad1")

    await _controller(FailingRedis()).run_cycle()

    # A second cycle that read the pool before the first one wrote loses the optimistic guard.
    async with SessionLocal() as session:
        applied = await apply_pool_target(
            session,
            region="iad1",
            expected_workers=stale.active_workers,
            expected_last_scaled=stale.last_scaled,
            new_workers=6,
            now=NOW,
        )
        await session.commit()
    assert applied is False
    assert len(await _events("iad1")) == 1


async def test_baseline_read_failure_raises_and_releases_lock() -> None:
    redis = FakeRedis()
    controller = AutoscalingController(
        redis=redis,
        session_factory=UnreachableSessionFactory(),
        now_provider=lambda: NOW,
        regions=["iad1"],
    )

    with pytest.raises(StoreUnavailableError):
        await controller.run_cycle()
    assert await redis.get("lock:autoscaling") is None


async def test_summary_serializes() -> None:
    await _add_pool("iad1", active=2, last_scaled=NOW - timedelta(seconds=400))
    await _add_traffic("iad1", 3000, at=NOW - timedelta(minutes=5))

    payload = (await _controller().run_cycle()).to_dict()

    assert payload["status"] == "ok"
    assert payload["actions"][0] == {
        "region": "iad1",
        "previous_workers": 2,
        "new_workers": 6,
        "traffic": 3000,
        "reason": "scale_up",
    }


async def test_region_write_failure_does_not_stop_other_regions(monkeypatch) -> None:  # noqa: ANN001
    await _add_pool("iad1", active=2, last_scaled=NOW - timedelta(seconds=400))
    await _add_pool("sfo1", active=2, last_scaled=NOW - timedelta(seconds=400))
    await _add_traffic("iad1", 3000, at=NOW - timedelta(minutes=5))
    await _add_traffic("sfo1", 3000, at=NOW - timedelta(minutes=5))
    original_apply = regions_repo.apply_pool_target

    async def _apply_failing_in_iad1(session, *, region, **kwargs):  # noqa: ANN001, ANN003, ANN202
        if region == "iad1":
            raise OperationalError("UPDATE region_worker_pools", {}, ConnectionResetError("connection reset"))
        return await original_apply(session, region=region, **kwargs)

    monkeypatch.setattr(regions_repo, "apply_pool_target", _apply_failing_in_iad1)
    summary = await _controller(regions=["iad1", "sfo1"]).run_cycle()

    assert summary.status == "ok"
    assert summary.errors == [{"region": "iad1", "error": "OperationalError"}]
    assert [(a.region, a.previous_workers, a.new_workers) for a in summary.actions] == [("sfo1", 2, 6)]
    assert (await _pool("iad1")).active_workers == 2
    assert (await _pool("sfo1")).active_workers == 6
    assert [e.region for e in await _events()] == ["sfo1"]


async def test_pool_created_by_a_concurrent_cycle_is_skipped(monkeypatch) -> None:  # noqa: ANN001
    original_list = regions_repo.list_pools

    async def _list_then_concurrent_create(session):  # noqa: ANN001, ANN202
        pools = await original_list(session)
        # Another cycle creates the pool after this one read the baseline.
        await _add_pool("iad1", active=3, last_scaled=NOW - timedelta(seconds=10))
        return pools

    monkeypatch.setattr(regions_repo, "list_pools", _list_then_concurrent_create)
    summary = await _controller(regions=["iad1"]).run_cycle()

    assert summary.actions == []
    assert summary.skipped == [{"region": "iad1", "reason": "concurrent_create"}]
    assert (await _pool("iad1")).active_workers == 3
    assert await _events() == []
