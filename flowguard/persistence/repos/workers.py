from __future__ import annotations

from datetime import datetime

from sqlalchemy import delete, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from flowguard.domain.models import WorkerRecord, WorkerStatusEvent


async def get_worker(session: AsyncSession, worker_id: str) -> WorkerRecord | None:
    result = await session.execute(select(WorkerRecord).where(WorkerRecord.id == worker_id))
    return result.scalar_one_or_none()


async def list_workers(session: AsyncSession, *, status: str | None = None) -> list[WorkerRecord]:
    stmt = select(WorkerRecord)
    if status:
        stmt = stmt.where(WorkerRecord.status == status)
    result = await session.execute(stmt.order_by(WorkerRecord.id))
    return list(result.scalars().all())


async def update_status_if_unchanged(
    session: AsyncSession,
    *,
    worker_id: str,
    expected_status: str,
    expected_last_heartbeat: datetime,
    new_status: str,
) -> bool:
    # Compare-and-set on status and heartbeat: a heartbeat that lands after the read voids the transition.
    result = await session.execute(
        update(WorkerRecord)
        .where(
            WorkerRecord.id == worker_id,
            WorkerRecord.status == expected_status,
            WorkerRecord.last_heartbeat == expected_last_heartbeat,
        )
        .values(status=new_status)
        .execution_options(synchronize_session=False)
    )
    return (result.rowcount or 0) == 1


def add_status_event(
    session: AsyncSession,
    *,
    worker_id: str,
    previous_status: str,
    new_status: str,
    heartbeat_age_seconds: float,
    last_heartbeat: datetime,
    created_at: datetime,
) -> WorkerStatusEvent:
    event = WorkerStatusEvent(
        worker_id=worker_id,
        previous_status=previous_status,
        new_status=new_status,
        heartbeat_age_seconds=heartbeat_age_seconds,
        last_heartbeat=last_heartbeat,
        created_at=created_at,
    )
    session.add(event)
    return event


async def list_status_events(
    session: AsyncSession, *, worker_id: str | None = None, limit: int = 100
) -> list[WorkerStatusEvent]:
    stmt = select(WorkerStatusEvent)
    if worker_id:
        stmt = stmt.where(WorkerStatusEvent.worker_id == worker_id)
    result = await session.execute(
        stmt.order_by(WorkerStatusEvent.created_at.desc()).limit(max(1, limit))
    )
    return list(result.scalars().all())


async def prune_status_events(session: AsyncSession, *, before: datetime) -> int:
    result = await session.execute(
        delete(WorkerStatusEvent).where(WorkerStatusEvent.created_at < before)
    )
    return result.rowcount or 0
