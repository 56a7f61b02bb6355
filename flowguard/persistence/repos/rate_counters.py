from __future__ import annotations

from datetime import datetime
import math

from sqlalchemy import delete, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from flowguard.domain.models import RateCounterRow


async def increment_or_init(
    session: AsyncSession,
    *,
    key: str,
    window_seconds: int,
    now: datetime,
) -> tuple[int, int, bool]:
    """Relational twin of the Redis window counter.

    Returns ``(count, ttl_remaining_seconds, initialized)``. The row is locked
    for the duration of the caller's transaction; the caller commits.
    """
    try:
        return await _increment_or_init(session, key=key, window_seconds=window_seconds, now=now)
    except IntegrityError:
        # Another caller inserted the same key first; count against its window instead.
        await session.rollback()
        return await _increment_or_init(session, key=key, window_seconds=window_seconds, now=now)


async def _increment_or_init(
    session: AsyncSession, *, key: str, window_seconds: int, now: datetime
) -> tuple[int, int, bool]:
    result = await session.execute(
        select(RateCounterRow).where(RateCounterRow.key == key).with_for_update()
    )
    row = result.scalar_one_or_none()
    if row is None:
        session.add(
            RateCounterRow(key=key, window_started_at=now, window_seconds=window_seconds, count=1)
        )
        await session.flush()
        return 1, window_seconds, True

    elapsed = (now - row.window_started_at).total_seconds()
    if elapsed >= row.window_seconds:
        row.window_started_at = now
        row.window_seconds = window_seconds
        row.count = 1
        return 1, window_seconds, True

    row.count += 1
    remaining = max(1, int(math.ceil(row.window_seconds - elapsed)))
    return row.count, remaining, False


async def prune_expired_counters(session: AsyncSession, *, now: datetime, batch_size: int = 1000) -> int:
    # Windows differ per policy, so expiry is computed per row rather than in SQL.
    result = await session.execute(
        select(RateCounterRow.key, RateCounterRow.window_started_at, RateCounterRow.window_seconds)
        .where(RateCounterRow.window_started_at < now)
        .order_by(RateCounterRow.window_started_at)
        .limit(batch_size)
    )
    expired = [
        key
        for key, started_at, window_seconds in result.all()
        if (now - started_at).total_seconds() >= window_seconds
    ]
    if not expired:
        return 0
    deleted = await session.execute(delete(RateCounterRow).where(RateCounterRow.key.in_(expired)))
    return deleted.rowcount or 0
