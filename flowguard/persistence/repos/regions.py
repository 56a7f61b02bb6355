from __future__ import annotations

from datetime import datetime

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from flowguard.domain.models import RegionWorkerPool, ScalingEvent


async def list_pools(session: AsyncSession) -> list[RegionWorkerPool]:
    result = await session.execute(select(RegionWorkerPool).order_by(RegionWorkerPool.region))
    return list(result.scalars().all())


async def get_pool(session: AsyncSession, region: str) -> RegionWorkerPool | None:
    result = await session.execute(select(RegionWorkerPool).where(RegionWorkerPool.region == region))
    return result.scalar_one_or_none()


def create_pool(
    session: AsyncSession,
    *,
    region: str,
    min_workers: int,
    max_workers: int,
    now: datetime,
) -> RegionWorkerPool:
    pool = RegionWorkerPool(
        region=region,
        active_workers=min_workers,
        min_workers=min_workers,
        max_workers=max_workers,
        last_scaled=now,
    )
    session.add(pool)
    return pool


async def apply_pool_target(
    session: AsyncSession,
    *,
    region: str,
    expected_workers: int,
    expected_last_scaled: datetime,
    new_workers: int,
    now: datetime,
) -> bool:
    # Optimistic guard: a concurrent cycle that already scaled this region makes rowcount 0.
    result = await session.execute(
        update(RegionWorkerPool)
        .where(
            RegionWorkerPool.region == region,
            RegionWorkerPool.active_workers == expected_workers,
            RegionWorkerPool.last_scaled == expected_last_scaled,
        )
        .values(active_workers=new_workers, last_scaled=now)
        .execution_options(synchronize_session=False)
    )
    return (result.rowcount or 0) == 1


def add_scaling_event(
    session: AsyncSession,
    *,
    region: str,
    previous_workers: int,
    new_workers: int,
    traffic: int,
    reason: str,
    created_at: datetime,
) -> ScalingEvent:
    event = ScalingEvent(
        region=region,
        previous_workers=previous_workers,
        new_workers=new_workers,
        traffic=traffic,
        reason=reason,
        created_at=created_at,
    )
    session.add(event)
    return event


async def list_scaling_events(
    session: AsyncSession, *, region: str | None = None, limit: int = 100
) -> list[ScalingEvent]:
    stmt = select(ScalingEvent)
    if region:
        stmt = stmt.where(ScalingEvent.region == region)
    result = await session.execute(stmt.order_by(ScalingEvent.created_at.desc()).limit(max(1, limit)))
    return list(result.scalars().all())
