from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone
from typing import Any, Callable

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel
from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from flowguard.apps.api.deps import (
    get_autoscaling_controller,
    get_db,
    get_health_tracker,
    get_key_value_cache,
    get_session_factory,
)
from flowguard.core.config import get_settings
from flowguard.core.errors import CacheUnavailableError
from flowguard.persistence.db import pool_stats
from flowguard.persistence.repos import regions as regions_repo
from flowguard.persistence.repos import traffic as traffic_repo
from flowguard.persistence.repos import workers as workers_repo
from flowguard.services.autoscaling import AutoscalingController
from flowguard.services.counter import KeyValueCache, bounded
from flowguard.services.maintenance import prune_all
from flowguard.services.telemetry import (
    counters_snapshot,
    decision_latency_by_source,
    gauges_snapshot,
)
from flowguard.services.workers.health import WorkerHealthTracker, run_health_check_cycle


router = APIRouter(prefix="/ops", tags=["ops"])


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


async def _check_db_health(session_factory: Callable[[], Any], *, timeout_ms: int) -> bool:
    # Keep the DB check lightweight: one bounded SELECT 1 on a fresh session.
    try:
        async with session_factory() as session:
            await asyncio.wait_for(session.execute(select(1)), timeout=max(1, timeout_ms) / 1000.0)
    except (SQLAlchemyError, asyncio.TimeoutError, TimeoutError, OSError):
        return False
    return True


async def _check_redis_health(redis: KeyValueCache, *, timeout_ms: int) -> bool:
    try:
        await bounded(redis.ping(), timeout_ms=timeout_ms)
    except CacheUnavailableError:
        return False
    return True


class WorkerView(BaseModel):
    id: str
    status: str
    last_heartbeat: datetime
    jobs_processed: int
    jobs_failed: int
    cpu_usage: float | None
    memory_usage: float | None


class WorkersResponse(BaseModel):
    items: list[WorkerView]
    resources: dict[str, Any]


class ScalingEventView(BaseModel):
    id: str
    region: str
    previous_workers: int
    new_workers: int
    traffic: int
    reason: str
    created_at: datetime


class ScalingEventsResponse(BaseModel):
    items: list[ScalingEventView]
    pools: list[dict[str, Any]]


class RejectionView(BaseModel):
    endpoint: str
    identity: str
    request_count: int
    retry_after_seconds: int
    decision_source: str
    occurred_at: datetime


class TrafficResponse(BaseModel):
    window_s: int
    endpoints: list[dict[str, Any]]
    regions: dict[str, int]
    rejections: list[RejectionView]


# Scheduler triggers: each call runs exactly one cycle and returns its summary.
@router.post("/cron/autoscaling")
async def trigger_autoscaling(
    controller: AutoscalingController = Depends(get_autoscaling_controller),
) -> dict[str, Any]:
    summary = await controller.run_cycle()
    return summary.to_dict()


@router.post("/cron/worker-health")
async def trigger_worker_health(
    tracker: WorkerHealthTracker = Depends(get_health_tracker),
) -> dict[str, Any]:
    return await run_health_check_cycle(tracker=tracker)


@router.post("/cron/maintenance")
async def trigger_maintenance(db: AsyncSession = Depends(get_db)) -> dict[str, int]:
    deleted = await prune_all(db)
    await db.commit()
    return deleted


@router.get("/workers", response_model=WorkersResponse)
async def ops_workers(
    status: str | None = Query(default=None),
    db: AsyncSession = Depends(get_db),
    tracker: WorkerHealthTracker = Depends(get_health_tracker),
) -> WorkersResponse:
    workers = await workers_repo.list_workers(db, status=status)
    return WorkersResponse(
        items=[
            WorkerView(
                id=worker.id,
                status=worker.status,
                last_heartbeat=worker.last_heartbeat,
                jobs_processed=worker.jobs_processed,
                jobs_failed=worker.jobs_failed,
                cpu_usage=worker.cpu_usage,
                memory_usage=worker.memory_usage,
            )
            for worker in workers
        ],
        resources=await tracker.summarize_active_resources(),
    )


@router.get("/scaling-events", response_model=ScalingEventsResponse)
async def ops_scaling_events(
    region: str | None = Query(default=None),
    limit: int = Query(default=100, ge=1, le=1000),
    db: AsyncSession = Depends(get_db),
) -> ScalingEventsResponse:
    events = await regions_repo.list_scaling_events(db, region=region, limit=limit)
    pools = await regions_repo.list_pools(db)
    return ScalingEventsResponse(
        items=[
            ScalingEventView(
                id=event.id,
                region=event.region,
                previous_workers=event.previous_workers,
                new_workers=event.new_workers,
                traffic=event.traffic,
                reason=event.reason,
                created_at=event.created_at,
            )
            for event in events
        ],
        pools=[
            {
                "region": pool.region,
                "active_workers": pool.active_workers,
                "min_workers": pool.min_workers,
                "max_workers": pool.max_workers,
                "last_scaled": pool.last_scaled.isoformat(),
            }
            for pool in pools
        ],
    )


@router.get("/traffic", response_model=TrafficResponse)
async def ops_traffic(
    window_s: int = Query(default=900, ge=60, le=7 * 24 * 3600),
    endpoint: str | None = Query(default=None),
    limit: int = Query(default=50, ge=1, le=500),
    db: AsyncSession = Depends(get_db),
) -> TrafficResponse:
    # Bound the window to keep ops queries predictable.
    since = _utc_now() - timedelta(seconds=window_s)
    rejections = await traffic_repo.list_rejections(db, endpoint=endpoint, limit=limit)
    return TrafficResponse(
        window_s=window_s,
        endpoints=await traffic_repo.traffic_summary(db, since=since),
        regions=await traffic_repo.requests_by_region(db, since=since),
        rejections=[
            RejectionView(
                endpoint=row.endpoint,
                identity=row.identity,
                request_count=row.request_count,
                retry_after_seconds=row.retry_after_seconds,
                decision_source=row.decision_source,
                occurred_at=row.occurred_at,
            )
            for row in rejections
        ],
    )


@router.get("/metrics")
async def ops_metrics(window_s: int = Query(default=300, ge=1, le=86400)) -> dict[str, Any]:
    return {
        "counters": counters_snapshot(),
        "gauges": gauges_snapshot(),
        "decision_latency_ms": decision_latency_by_source(window_s),
        "db_pool": pool_stats(),
    }


@router.get("/health")
async def ops_health(
    session_factory: Callable[[], Any] = Depends(get_session_factory),
    redis: KeyValueCache = Depends(get_key_value_cache),
) -> dict[str, Any]:
    # Report each dependency separately; any failed probe degrades the overall status.
    timeout_ms = get_settings().health_check_timeout_ms
    db_ok, redis_ok = await asyncio.gather(
        _check_db_health(session_factory, timeout_ms=timeout_ms),
        _check_redis_health(redis, timeout_ms=timeout_ms),
    )
    return {
        "status": "ok" if db_ok and redis_ok else "degraded",
        "api": "ok",
        "db": "ok" if db_ok else "degraded",
        "redis": "ok" if redis_ok else "degraded",
        "timestamp": _utc_now().isoformat(),
    }
