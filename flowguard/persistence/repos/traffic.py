from __future__ import annotations

from datetime import datetime

from sqlalchemy import delete, func, select
from sqlalchemy.ext.asyncio import AsyncSession

from flowguard.domain.models import RateLimitRejection, TrafficEvent


async def requests_by_region(session: AsyncSession, *, since: datetime) -> dict[str, int]:
    # Aggregate per-region request volume over a trailing window for autoscaling.
    result = await session.execute(
        select(TrafficEvent.region, func.count())
        .where(TrafficEvent.occurred_at >= since)
        .group_by(TrafficEvent.region)
    )
    return {str(region): int(count) for region, count in result.all()}


async def traffic_summary(session: AsyncSession, *, since: datetime) -> list[dict[str, object]]:
    # Per-endpoint served/limited counts for read-only ops views.
    result = await session.execute(
        select(
            TrafficEvent.endpoint,
            TrafficEvent.outcome,
            func.count(),
            func.avg(TrafficEvent.latency_ms),
        )
        .where(TrafficEvent.occurred_at >= since)
        .group_by(TrafficEvent.endpoint, TrafficEvent.outcome)
        .order_by(TrafficEvent.endpoint, TrafficEvent.outcome)
    )
    return [
        {
            "endpoint": endpoint,
            "outcome": outcome,
            "requests": int(count),
            "avg_latency_ms": round(float(avg_latency), 2) if avg_latency is not None else None,
        }
        for endpoint, outcome, count, avg_latency in result.all()
    ]


async def list_rejections(
    session: AsyncSession, *, endpoint: str | None = None, limit: int = 100
) -> list[RateLimitRejection]:
    stmt = select(RateLimitRejection)
    if endpoint:
        stmt = stmt.where(RateLimitRejection.endpoint == endpoint)
    result = await session.execute(
        stmt.order_by(RateLimitRejection.occurred_at.desc()).limit(max(1, limit))
    )
    return list(result.scalars().all())


async def prune_traffic_events(session: AsyncSession, *, before: datetime) -> int:
    result = await session.execute(delete(TrafficEvent).where(TrafficEvent.occurred_at < before))
    return result.rowcount or 0


async def prune_rejections(session: AsyncSession, *, before: datetime) -> int:
    result = await session.execute(
        delete(RateLimitRejection).where(RateLimitRejection.occurred_at < before)
    )
    return result.rowcount or 0
