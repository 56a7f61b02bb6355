from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Literal

from sqlalchemy.ext.asyncio import AsyncSession

from flowguard.core.config import get_settings
from flowguard.persistence.repos import rate_counters as rate_counters_repo
from flowguard.persistence.repos import traffic as traffic_repo
from flowguard.persistence.repos import workers as workers_repo


MaintenanceTask = Literal[
    "prune_rate_counters",
    "prune_traffic_events",
    "prune_rejections",
    "prune_status_events",
    "prune_all",
]


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


async def prune_rate_counters(session: AsyncSession, *, now: datetime | None = None) -> int:
    # Drop fallback counters whose window has already closed.
    return await rate_counters_repo.prune_expired_counters(session, now=now or _utc_now())


async def prune_traffic_events(session: AsyncSession, *, now: datetime | None = None) -> int:
    # Remove traffic rows older than the retention window; autoscaling only reads the trailing window.
    settings = get_settings()
    cutoff = (now or _utc_now()) - timedelta(days=settings.traffic_event_retention_days)
    return await traffic_repo.prune_traffic_events(session, before=cutoff)


async def prune_rejections(session: AsyncSession, *, now: datetime | None = None) -> int:
    settings = get_settings()
    cutoff = (now or _utc_now()) - timedelta(days=settings.rate_limit_rejection_retention_days)
    return await traffic_repo.prune_rejections(session, before=cutoff)


async def prune_status_events(session: AsyncSession, *, now: datetime | None = None) -> int:
    settings = get_settings()
    cutoff = (now or _utc_now()) - timedelta(days=settings.worker_status_event_retention_days)
    return await workers_repo.prune_status_events(session, before=cutoff)


async def prune_all(session: AsyncSession, *, now: datetime | None = None) -> dict[str, int]:
    # Run every retention task in one transaction so callers commit a single result.
    now = now or _utc_now()
    return {
        "rate_counters": await prune_rate_counters(session, now=now),
        "traffic_events": await prune_traffic_events(session, now=now),
        "rejections": await prune_rejections(session, now=now),
        "status_events": await prune_status_events(session, now=now),
    }


async def run_maintenance_task(session: AsyncSession, task: MaintenanceTask) -> dict[str, int]:
    if task == "prune_all":
        return await prune_all(session)
    handlers = {
        "prune_rate_counters": prune_rate_counters,
        "prune_traffic_events": prune_traffic_events,
        "prune_rejections": prune_rejections,
        "prune_status_events": prune_status_events,
    }
    handler = handlers.get(task)
    if handler is None:
        raise ValueError(f"unknown maintenance task: {task}")
    return {task: await handler(session)}
