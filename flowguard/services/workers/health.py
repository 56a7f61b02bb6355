from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
import logging
from typing import Any, Callable

from pydantic import BaseModel, Field
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from flowguard.core.config import get_settings
from flowguard.core.errors import StoreUnavailableError
from flowguard.domain.models import (
    WORKER_STATUS_ACTIVE,
    WORKER_STATUS_FAILED,
    WORKER_STATUS_INACTIVE,
    WorkerRecord,
)
from flowguard.persistence.db import SessionLocal
from flowguard.persistence.repos import workers as workers_repo
from flowguard.services.telemetry import increment_counter, set_gauge
from flowguard.services.workers.reclaim import reclaim_stalled_jobs


logger = logging.getLogger(__name__)


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def compute_worker_status(heartbeat_age_s: float, *, inactive_after_s: int, failed_after_s: int) -> str:
    # Status is a pure function of heartbeat age; there is no other way in or out of a state.
    if heartbeat_age_s >= failed_after_s:
        return WORKER_STATUS_FAILED
    if heartbeat_age_s >= inactive_after_s:
        return WORKER_STATUS_INACTIVE
    return WORKER_STATUS_ACTIVE


class HeartbeatPayload(BaseModel):
    # Match the heartbeat body workers send on every tick.
    worker_id: str = Field(min_length=1)
    jobs_processed: int | None = Field(default=None, ge=0)
    jobs_failed: int | None = Field(default=None, ge=0)
    cpu_usage: float | None = Field(default=None, ge=0, le=100)
    memory_usage: float | None = Field(default=None, ge=0, le=100)
    metadata: dict[str, Any] | None = None


@dataclass(frozen=True)
class WorkerHealthSummary:
    evaluated: int
    transitions: int
    active: int
    inactive: int
    failed: int

    def to_dict(self) -> dict[str, int]:
        return {
            "evaluated": self.evaluated,
            "updated": self.transitions,
            "active": self.active,
            "inactive": self.inactive,
            "failed": self.failed,
        }


class WorkerHealthTracker:
    """Level-triggered worker status recomputation.

    Every evaluation recomputes each worker's status from ``now -
    last_heartbeat`` and applies a transition only when it differs from the
    stored one. Transitions are compare-and-set updates, so overlapping or
    repeated evaluations converge without duplicating status events.
    """

    def __init__(
        self,
        *,
        session_factory: async_sessionmaker[AsyncSession] | Callable[[], Any] | None = None,
        now_provider: Callable[[], datetime] | None = None,
        inactive_after_s: int | None = None,
        failed_after_s: int | None = None,
    ) -> None:
        settings = get_settings()
        self._session_factory = session_factory or SessionLocal
        self._now = now_provider or _utc_now
        self._inactive_after_s = (
            inactive_after_s if inactive_after_s is not None else settings.worker_inactive_after_s
        )
        self._failed_after_s = failed_after_s if failed_after_s is not None else settings.worker_failed_after_s

    def status_for(self, worker: WorkerRecord, now: datetime) -> tuple[str, float]:
        age_s = max(0.0, (now - worker.last_heartbeat).total_seconds())
        status = compute_worker_status(
            age_s,
            inactive_after_s=self._inactive_after_s,
            failed_after_s=self._failed_after_s,
        )
        return status, age_s

    async def _apply_transition(self, session: AsyncSession, worker: WorkerRecord, now: datetime) -> bool:
        target, age_s = self.status_for(worker, now)
        if target == worker.status:
            return False
        previous = worker.status
        applied = await workers_repo.update_status_if_unchanged(
            session,
            worker_id=worker.id,
            expected_status=previous,
            expected_last_heartbeat=worker.last_heartbeat,
            new_status=target,
        )
        if not applied:
            # Another evaluator moved this worker, or a newer heartbeat arrived since the read.
            return False
        workers_repo.add_status_event(
            session,
            worker_id=worker.id,
            previous_status=previous,
            new_status=target,
            heartbeat_age_seconds=round(age_s, 3),
            last_heartbeat=worker.last_heartbeat,
            created_at=now,
        )
        worker.status = target
        logger.info(
            "worker_status_transition worker_id=%s from=%s to=%s heartbeat_age_s=%.0f",
            worker.id,
            previous,
            target,
            age_s,
        )
        return True

    async def evaluate(self) -> WorkerHealthSummary:
        now = self._now()
        try:
            async with self._session_factory() as session:
                workers = await workers_repo.list_workers(session)
        except SQLAlchemyError as exc:
            raise StoreUnavailableError("unable to list workers") from exc

        counts = {WORKER_STATUS_ACTIVE: 0, WORKER_STATUS_INACTIVE: 0, WORKER_STATUS_FAILED: 0}
        transitions = 0
        for worker in workers:
            try:
                async with self._session_factory() as session:
                    changed = await self._apply_transition(session, worker, now)
                    await session.commit()
            except SQLAlchemyError as exc:
                logger.warning("worker_status_update_failed worker_id=%s", worker.id, exc_info=exc)
                counts[worker.status] = counts.get(worker.status, 0) + 1
                continue
            if changed:
                transitions += 1
            counts[worker.status] = counts.get(worker.status, 0) + 1

        set_gauge("workers_active", counts[WORKER_STATUS_ACTIVE])
        set_gauge("workers_inactive", counts[WORKER_STATUS_INACTIVE])
        set_gauge("workers_failed", counts[WORKER_STATUS_FAILED])
        if transitions:
            increment_counter("worker_status_transitions_total", transitions)
        return WorkerHealthSummary(
            evaluated=len(workers),
            transitions=transitions,
            active=counts[WORKER_STATUS_ACTIVE],
            inactive=counts[WORKER_STATUS_INACTIVE],
            failed=counts[WORKER_STATUS_FAILED],
        )

    async def record_heartbeat(self, payload: HeartbeatPayload) -> WorkerRecord:
        now = self._now()
        try:
            return await self._write_heartbeat(payload, now)
        except IntegrityError:
            # Concurrent first heartbeats for one worker id; the loser updates the winner's row.
            return await self._write_heartbeat(payload, now)

    async def _write_heartbeat(self, payload: HeartbeatPayload, now: datetime) -> WorkerRecord:
        async with self._session_factory() as session:
            worker = await workers_repo.get_worker(session, payload.worker_id)
            if worker is None:
                worker = WorkerRecord(
                    id=payload.worker_id,
                    status=WORKER_STATUS_ACTIVE,
                    last_heartbeat=now,
                    jobs_processed=0,
                    jobs_failed=0,
                    created_at=now,
                )
                session.add(worker)
            worker.last_heartbeat = now
            if payload.jobs_processed is not None:
                worker.jobs_processed = payload.jobs_processed
            if payload.jobs_failed is not None:
                worker.jobs_failed = payload.jobs_failed
            if payload.cpu_usage is not None:
                worker.cpu_usage = payload.cpu_usage
            if payload.memory_usage is not None:
                worker.memory_usage = payload.memory_usage
            if payload.metadata is not None:
                worker.metadata_json = dict(payload.metadata)
            await session.flush()
            # A fresh heartbeat is the only path back to ACTIVE.
            await self._apply_transition(session, worker, now)
            await session.commit()
        return worker

    async def summarize_active_resources(self) -> dict[str, Any]:
        async with self._session_factory() as session:
            workers = await workers_repo.list_workers(session, status=WORKER_STATUS_ACTIVE)
        cpu_values = [w.cpu_usage for w in workers if w.cpu_usage is not None]
        memory_values = [w.memory_usage for w in workers if w.memory_usage is not None]

        def _avg(values: list[float]) -> float | None:
            return round(sum(values) / len(values), 2) if values else None

        def _max(values: list[float]) -> float | None:
            return round(max(values), 2) if values else None

        return {
            "worker_count": len(workers),
            "avg_cpu": _avg(cpu_values),
            "avg_memory": _avg(memory_values),
            "max_cpu": _max(cpu_values),
            "max_memory": _max(memory_values),
        }


async def run_health_check_cycle(
    *,
    tracker: WorkerHealthTracker | None = None,
    session_factory: async_sessionmaker[AsyncSession] | Callable[[], Any] | None = None,
    now_provider: Callable[[], datetime] | None = None,
) -> dict[str, Any]:
    # One scheduled invocation: status recomputation, stalled-job recovery, resource summary.
    tracker = tracker or WorkerHealthTracker(session_factory=session_factory, now_provider=now_provider)
    workers = await tracker.evaluate()
    jobs = await reclaim_stalled_jobs(session_factory=session_factory, now_provider=now_provider)
    resources = await tracker.summarize_active_resources()
    return {"workers": workers.to_dict(), "jobs": jobs.to_dict(), "resources": resources}
