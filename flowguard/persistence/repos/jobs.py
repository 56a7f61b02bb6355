from __future__ import annotations

from datetime import datetime
from typing import Any

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from flowguard.domain.models import (
    JOB_STATUS_COMPLETED,
    JOB_STATUS_ERROR,
    JOB_STATUS_PENDING,
    JOB_STATUS_PROCESSING,
    Job,
)


def create_job(
    session: AsyncSession,
    *,
    job_id: str | None = None,
    payload_json: dict[str, Any] | None = None,
    created_at: datetime | None = None,
) -> Job:
    job = Job(status=JOB_STATUS_PENDING, payload_json=payload_json)
    if job_id:
        job.id = job_id
    if created_at is not None:
        job.created_at = created_at
    session.add(job)
    return job


async def get_job(session: AsyncSession, job_id: str) -> Job | None:
    result = await session.execute(select(Job).where(Job.id == job_id))
    return result.scalar_one_or_none()


async def list_stalled_job_ids(session: AsyncSession, *, cutoff: datetime) -> list[str]:
    result = await session.execute(
        select(Job.id)
        .where(Job.status == JOB_STATUS_PROCESSING, Job.started_at < cutoff)
        .order_by(Job.started_at)
    )
    return [str(job_id) for job_id in result.scalars().all()]


async def reset_stalled_job(
    session: AsyncSession, *, job_id: str, cutoff: datetime, message: str
) -> bool:
    # Re-check status and staleness in the WHERE so a concurrent reclaim or completion wins cleanly.
    result = await session.execute(
        update(Job)
        .where(
            Job.id == job_id,
            Job.status == JOB_STATUS_PROCESSING,
            Job.started_at < cutoff,
        )
        .values(status=JOB_STATUS_PENDING, started_at=None, error_message=message)
        .execution_options(synchronize_session=False)
    )
    return (result.rowcount or 0) == 1


async def claim_next_job(session: AsyncSession, *, now: datetime) -> Job | None:
    # Claim the oldest pending job; losing a race to another worker just moves on to the next one.
    candidates = await session.execute(
        select(Job.id).where(Job.status == JOB_STATUS_PENDING).order_by(Job.created_at).limit(5)
    )
    for job_id in candidates.scalars().all():
        result = await session.execute(
            update(Job)
            .where(Job.id == job_id, Job.status == JOB_STATUS_PENDING)
            .values(status=JOB_STATUS_PROCESSING, started_at=now, attempts=Job.attempts + 1)
            .execution_options(synchronize_session=False)
        )
        if (result.rowcount or 0) == 1:
            return await get_job(session, job_id)
    return None


async def finish_job(
    session: AsyncSession,
    *,
    job_id: str,
    attempt: int,
    succeeded: bool,
    now: datetime,
    error_message: str | None = None,
) -> bool:
    # Match the claimed attempt so a reclaimed attempt cannot finish a newer claim.
    values: dict[str, Any] = {
        "status": JOB_STATUS_COMPLETED if succeeded else JOB_STATUS_ERROR,
        "completed_at": now,
    }
    if not succeeded:
        values["error_message"] = error_message
    result = await session.execute(
        update(Job)
        .where(Job.id == job_id, Job.status == JOB_STATUS_PROCESSING, Job.attempts == attempt)
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    return (result.rowcount or 0) == 1
