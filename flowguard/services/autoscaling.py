from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
import logging
import math
from typing import Any, Callable

from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from flowguard.core.config import get_settings
from flowguard.core.errors import LockUnavailableError, StoreUnavailableError
from flowguard.domain.models import (
    SCALING_REASON_CREATED,
    SCALING_REASON_SCALE_DOWN,
    SCALING_REASON_SCALE_UP,
    RegionWorkerPool,
)
from flowguard.persistence.db import SessionLocal
from flowguard.persistence.repos import regions as regions_repo
from flowguard.persistence.repos import traffic as traffic_repo
from flowguard.services.counter import CacheFailure, KeyValueCache, get_redis
from flowguard.services.locks import DistributedLock, acquire_lock, release_lock
from flowguard.services.telemetry import increment_counter


logger = logging.getLogger(__name__)

CYCLE_STATUS_OK = "ok"
CYCLE_STATUS_SKIPPED_LOCK = "skipped_lock"
LOCK_MODE_HELD = "held"
LOCK_MODE_DEGRADED = "degraded"


def _utc_now() -> datetime:
    # Use UTC timestamps for cooldown math and persisted scaling events.
    return datetime.now(timezone.utc)


def compute_ideal_workers(traffic: int, *, requests_per_worker: int, min_workers: int, max_workers: int) -> int:
    ideal = math.ceil(max(0, traffic) / max(1, requests_per_worker))
    return max(min_workers, min(max_workers, ideal))


def is_significant_change(current: int, ideal: int, *, hysteresis_ratio: float) -> bool:
    # Ignore changes smaller than one worker or the hysteresis share of the current fleet.
    return abs(ideal - current) >= max(1.0, current * hysteresis_ratio)


def cooldown_active(last_scaled: datetime | None, now: datetime, *, cooldown_seconds: int) -> bool:
    if last_scaled is None:
        return False
    return (now - last_scaled).total_seconds() < cooldown_seconds


@dataclass(frozen=True)
class ScalingAction:
    region: str
    previous_workers: int
    new_workers: int
    traffic: int
    reason: str


@dataclass
class AutoscalingCycleSummary:
    status: str
    lock_mode: str | None = None
    actions: list[ScalingAction] = field(default_factory=list)
    skipped: list[dict[str, str]] = field(default_factory=list)
    errors: list[dict[str, str]] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "status": self.status,
            "lock_mode": self.lock_mode,
            "actions": [
                {
                    "region": action.region,
                    "previous_workers": action.previous_workers,
                    "new_workers": action.new_workers,
                    "traffic": action.traffic,
                    "reason": action.reason,
                }
                for action in self.actions
            ],
            "skipped": list(self.skipped),
            "errors": list(self.errors),
        }


class AutoscalingController:
    """Resize per-region worker pools from trailing traffic.

    A cycle runs under a best-effort distributed lock. When the lock store is
    unreachable the cycle still runs in degraded mode; the optimistic guard on
    each pool row keeps overlapping degraded cycles from double-applying a
    change or writing duplicate scaling events.
    """

    def __init__(
        self,
        *,
        redis: KeyValueCache | None = None,
        session_factory: async_sessionmaker[AsyncSession] | Callable[[], Any] | None = None,
        now_provider: Callable[[], datetime] | None = None,
        regions: list[str] | None = None,
        requests_per_worker: int | None = None,
        min_workers: int | None = None,
        max_workers: int | None = None,
        cooldown_seconds: int | None = None,
        hysteresis_ratio: float | None = None,
        traffic_window_s: int | None = None,
    ) -> None:
        settings = get_settings()
        self._redis = redis
        self._session_factory = session_factory or SessionLocal
        self._now = now_provider or _utc_now
        self.regions = regions if regions is not None else settings.autoscaling_region_list()
        self.requests_per_worker = (
            requests_per_worker if requests_per_worker is not None else settings.autoscaling_requests_per_worker
        )
        self.min_workers = min_workers if min_workers is not None else settings.autoscaling_min_workers
        self.max_workers = max_workers if max_workers is not None else settings.autoscaling_max_workers
        self.cooldown_seconds = (
            cooldown_seconds if cooldown_seconds is not None else settings.autoscaling_cooldown_seconds
        )
        self.hysteresis_ratio = (
            hysteresis_ratio if hysteresis_ratio is not None else settings.autoscaling_hysteresis_ratio
        )
        self.traffic_window_s = (
            traffic_window_s if traffic_window_s is not None else settings.autoscaling_traffic_window_s
        )
        self._lock_key = settings.autoscaling_lock_key
        self._lock_ttl_s = settings.autoscaling_lock_ttl_s
        self._lock_timeout_ms = settings.autoscaling_lock_timeout_ms

    async def _lock_store(self) -> KeyValueCache:
        if self._redis is None:
            try:
                self._redis = await get_redis()
            except CacheFailure as exc:
                raise LockUnavailableError("lock store unavailable") from exc
        return self._redis

    async def _acquire(self) -> tuple[DistributedLock | None, str | None]:
        try:
            lock = await acquire_lock(
                await self._lock_store(),
                key=self._lock_key,
                ttl_s=self._lock_ttl_s,
                timeout_ms=self._lock_timeout_ms,
            )
        except LockUnavailableError:
            increment_counter("autoscaling_degraded_lock_total")
            logger.warning("autoscaling_lock_unavailable key=%s mode=degraded", self._lock_key)
            return None, LOCK_MODE_DEGRADED
        if lock is None:
            return None, None
        return lock, LOCK_MODE_HELD

    async def run_cycle(self) -> AutoscalingCycleSummary:
        lock, lock_mode = await self._acquire()
        if lock_mode is None:
            increment_counter("autoscaling_skipped_lock_total")
            logger.info("autoscaling_cycle_skipped reason=lock_held key=%s", self._lock_key)
            return AutoscalingCycleSummary(status=CYCLE_STATUS_SKIPPED_LOCK)
        try:
            summary = AutoscalingCycleSummary(status=CYCLE_STATUS_OK, lock_mode=lock_mode)
            await self._scale_regions(summary)
            increment_counter("autoscaling_cycles_total")
            return summary
        finally:
            if lock is not None:
                await release_lock(lock, timeout_ms=self._lock_timeout_ms)

    async def _load_baseline(self, now: datetime) -> tuple[dict[str, int], dict[str, RegionWorkerPool]]:
        since = now - timedelta(seconds=self.traffic_window_s)
        try:
            async with self._session_factory() as session:
                traffic = await traffic_repo.requests_by_region(session, since=since)
                pools = await regions_repo.list_pools(session)
        except SQLAlchemyError as exc:
            raise StoreUnavailableError("unable to read autoscaling baseline") from exc
        return traffic, {pool.region: pool for pool in pools}

    async def _scale_regions(self, summary: AutoscalingCycleSummary) -> None:
        now = self._now()
        traffic, pools = await self._load_baseline(now)
        known = sorted(set(self.regions) | set(traffic) | set(pools))
        for region in known:
            region_traffic = traffic.get(region, 0)
            try:
                action = await self._scale_region(
                    region,
                    pool=pools.get(region),
                    traffic=region_traffic,
                    now=now,
                    summary=summary,
                )
            except SQLAlchemyError as exc:
                summary.errors.append({"region": region, "error": type(exc).__name__})
                logger.warning("autoscaling_region_failed region=%s", region, exc_info=exc)
                continue
            if action is not None:
                summary.actions.append(action)
                increment_counter("autoscaling_actions_total")
                logger.info(
                    "autoscaling_action region=%s reason=%s from=%s to=%s traffic=%s",
                    action.region,
                    action.reason,
                    action.previous_workers,
                    action.new_workers,
                    action.traffic,
                )

    async def _scale_region(
        self,
        region: str,
        *,
        pool: RegionWorkerPool | None,
        traffic: int,
        now: datetime,
        summary: AutoscalingCycleSummary,
    ) -> ScalingAction | None:
        if pool is None:
            return await self._create_pool(region, traffic=traffic, now=now, summary=summary)

        if cooldown_active(pool.last_scaled, now, cooldown_seconds=self.cooldown_seconds):
            summary.skipped.append({"region": region, "reason": "cooldown"})
            return None

        current = pool.active_workers
        ideal = compute_ideal_workers(
            traffic,
            requests_per_worker=self.requests_per_worker,
            min_workers=pool.min_workers,
            max_workers=pool.max_workers,
        )
        if not is_significant_change(current, ideal, hysteresis_ratio=self.hysteresis_ratio):
            summary.skipped.append({"region": region, "reason": "within_hysteresis"})
            return None

        reason = SCALING_REASON_SCALE_UP if ideal > current else SCALING_REASON_SCALE_DOWN
        async with self._session_factory() as session:
            applied = await regions_repo.apply_pool_target(
                session,
                region=region,
                expected_workers=current,
                expected_last_scaled=pool.last_scaled,
                new_workers=ideal,
                now=now,
            )
            if not applied:
                await session.rollback()
                summary.skipped.append({"region": region, "reason": "concurrent_update"})
                return None
            regions_repo.add_scaling_event(
                session,
                region=region,
                previous_workers=current,
                new_workers=ideal,
                traffic=traffic,
                reason=reason,
                created_at=now,
            )
            await session.commit()
        return ScalingAction(
            region=region,
            previous_workers=current,
            new_workers=ideal,
            traffic=traffic,
            reason=reason,
        )

    async def _create_pool(
        self, region: str, *, traffic: int, now: datetime, summary: AutoscalingCycleSummary
    ) -> ScalingAction | None:
        # New pools start at the floor; the next cycle after cooldown sizes them from traffic.
        async with self._session_factory() as session:
            regions_repo.create_pool(
                session,
                region=region,
                min_workers=self.min_workers,
                max_workers=self.max_workers,
                now=now,
            )
            regions_repo.add_scaling_event(
                session,
                region=region,
                previous_workers=0,
                new_workers=self.min_workers,
                traffic=traffic,
                reason=SCALING_REASON_CREATED,
                created_at=now,
            )
            try:
                await session.commit()
            except IntegrityError:
                # A concurrent degraded cycle created this pool first.
                await session.rollback()
                summary.skipped.append({"region": region, "reason": "concurrent_create"})
                return None
        return ScalingAction(
            region=region,
            previous_workers=0,
            new_workers=self.min_workers,
            traffic=traffic,
            reason=SCALING_REASON_CREATED,
        )
