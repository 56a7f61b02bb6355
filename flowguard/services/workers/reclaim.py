from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
import logging
from typing import Any, Callable

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from flowguard.core.config import get_settings
from flowguard.core.errors import StoreUnavailableError
from flowguard.domain.models import Job
from flowguard.persistence.db import SessionLocal
from flowguard.persistence.repos import jobs as jobs_repo
from flowguard.services.telemetry import increment_counter


logger = logging.getLogger(__name__)

STALLED_JOB_MESSAGE = "Previous processing attempt stalled"


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class ReclaimSummary:
    scanned: int
    reset: int
    job_ids: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {"scanned": self.scanned, "stalled_jobs_reset": self.reset, "job_ids": list(self.job_ids)}


async def reclaim_stalled_jobs(
    *,
    session_factory: async_sessionmaker[AsyncSession] | Callable[[], Any] | None = None,
    now_provider: Callable[[], datetime] | None = None,
    stall_timeout_s: int | None = None,
) -> ReclaimSummary:
    """Reset jobs stuck in PROCESSING past the stall timeout back to PENDING.

    Recovery is at-least-once: a slow but alive worker may still finish a job
    that was reset and picked up again, so job handlers must tolerate
    duplicate processing (``finish_job`` reports duplicate completions).
    """
    sessions = session_factory or SessionLocal
    now = (now_provider or _utc_now)()
    timeout_s = stall_timeout_s if stall_timeout_s is not None else get_settings().job_stall_timeout_s
    cutoff = now - timedelta(seconds=max(0, timeout_s))

    try:
        async with sessions() as session:
            candidates = await jobs_repo.list_stalled_job_ids(session, cutoff=cutoff)
    except SQLAlchemyError as exc:
        raise StoreUnavailableError("unable to list stalled jobs") from exc

    reset_ids: list[str] = []
    for job_id in candidates:
        try:
            async with sessions() as session:
                reset = await jobs_repo.reset_stalled_job(
                    session, job_id=job_id, cutoff=cutoff, message=STALLED_JOB_MESSAGE
                )
                await session.commit()
        except SQLAlchemyError as exc:
            logger.warning("stalled_job_reset_failed job_id=%s", job_id, exc_info=exc)
            continue
        if reset:
            reset_ids.append(job_id)
            logger.info("stalled_job_reset job_id=%s", job_id)

    if reset_ids:
        increment_counter("stalled_jobs_reset_total", len(reset_ids))
    return ReclaimSummary(scanned=len(candidates), reset=len(reset_ids), job_ids=reset_ids)


async def claim_next_job(
    *,
    session_factory: async_sessionmaker[AsyncSession] | Callable[[], Any] | None = None,
    now_provider: Callable[[], datetime] | None = None,
) -> Job | None:
    sessions = session_factory or SessionLocal
    now = (now_provider or _utc_now)()
    async with sessions() as session:
        job = await jobs_repo.claim_next_job(session, now=now)
        await session.commit()
    return job


async def finish_job(
    job_id: str,
    *,
    attempt: int,
    succeeded: bool,
    error_message: str | None = None,
    session_factory: async_sessionmaker[AsyncSession] | Callable[[], Any] | None = None,
    now_provider: Callable[[], datetime] | None = None,
) -> bool:
    # ``attempt`` is the ``attempts`` value of the claim being finished. False means the
    # job was finished, reclaimed or re-claimed since; the caller's result is a duplicate.
    sessions = session_factory or SessionLocal
    now = (now_provider or _utc_now)()
    async with sessions() as session:
        finished = await jobs_repo.finish_job(
            session,
            job_id=job_id,
            attempt=attempt,
            succeeded=succeeded,
            now=now,
            error_message=error_message,
        )
        await session.commit()
    if not finished:
        increment_counter("duplicate_job_completions_total")
        logger.warning("job_finish_ignored job_id=%s attempt=%s reason=stale_attempt", job_id, attempt)
    return finished
