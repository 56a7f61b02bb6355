from __future__ import annotations

from typing import Any

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from flowguard.domain.models import RateLimitPolicy


async def get_policy(session: AsyncSession, endpoint: str) -> RateLimitPolicy | None:
    result = await session.execute(select(RateLimitPolicy).where(RateLimitPolicy.endpoint == endpoint))
    return result.scalar_one_or_none()


async def list_policies(session: AsyncSession) -> list[RateLimitPolicy]:
    result = await session.execute(select(RateLimitPolicy).order_by(RateLimitPolicy.endpoint))
    return list(result.scalars().all())


async def upsert_policy(
    session: AsyncSession,
    *,
    endpoint: str,
    base_limit: int,
    burst_capacity: int,
    cooldown_seconds: int,
    tier_multipliers: dict[str, Any] | None = None,
    adaptive_enabled: bool = False,
) -> RateLimitPolicy:
    # Used by seed scripts and admin tooling; the control loops never write policies.
    row = await get_policy(session, endpoint)
    if row is None:
        row = RateLimitPolicy(endpoint=endpoint)
        session.add(row)
    row.base_limit = base_limit
    row.burst_capacity = burst_capacity
    row.cooldown_seconds = cooldown_seconds
    row.tier_multipliers = dict(tier_multipliers or {})
    row.adaptive_enabled = adaptive_enabled
    return row
