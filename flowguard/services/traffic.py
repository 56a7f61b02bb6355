from __future__ import annotations

import asyncio
from dataclasses import dataclass
from datetime import datetime, timezone
import logging
from typing import Any, Callable, Union

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from flowguard.core.config import get_settings
from flowguard.domain.models import RateLimitRejection, TrafficEvent
from flowguard.persistence.db import SessionLocal
from flowguard.services.telemetry import increment_counter, set_gauge


logger = logging.getLogger(__name__)


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class TrafficRecord:
    endpoint: str
    identity: str
    region: str
    outcome: str
    latency_ms: float | None
    occurred_at: datetime


@dataclass(frozen=True)
class RejectionRecord:
    endpoint: str
    identity: str
    request_count: int
    retry_after_seconds: int
    decision_source: str
    occurred_at: datetime


RecorderItem = Union[TrafficRecord, RejectionRecord]


def _to_row(item: RecorderItem) -> TrafficEvent | RateLimitRejection:
    if isinstance(item, TrafficRecord):
        return TrafficEvent(
            endpoint=item.endpoint,
            identity=item.identity,
            region=item.region,
            outcome=item.outcome,
            latency_ms=item.latency_ms,
            occurred_at=item.occurred_at,
        )
    return RateLimitRejection(
        endpoint=item.endpoint,
        identity=item.identity,
        request_count=item.request_count,
        retry_after_seconds=item.retry_after_seconds,
        decision_source=item.decision_source,
        occurred_at=item.occurred_at,
    )


class TrafficRecorder:
    """Bounded fire-and-forget writer for traffic and rejection audit rows.

    Request handlers only ``put_nowait`` into an ``asyncio.Queue``; a single
    background task drains it in batches. A full queue drops the event and
    counts the drop instead of applying backpressure to the request path.
    """

    def __init__(
        self,
        *,
        session_factory: async_sessionmaker[AsyncSession] | Callable[[], Any] | None = None,
        max_size: int | None = None,
        batch_size: int = 100,
    ) -> None:
        self._session_factory = session_factory or SessionLocal
        self._max_size = max_size if max_size is not None else get_settings().traffic_queue_max_size
        self._batch_size = max(1, batch_size)
        self._queue: asyncio.Queue[RecorderItem] | None = None
        self._task: asyncio.Task[None] | None = None
        self._loop: asyncio.AbstractEventLoop | None = None

    def _ensure_started(self) -> asyncio.Queue[RecorderItem]:
        # Bind the queue and drain task to the running loop; rebind if the loop changed.
        loop = asyncio.get_running_loop()
        if self._queue is None or self._loop is not loop:
            self._queue = asyncio.Queue(maxsize=max(1, self._max_size))
            self._task = None
            self._loop = loop
        if self._task is None or self._task.done():
            self._task = loop.create_task(self._drain(self._queue))
        return self._queue

    def _enqueue(self, item: RecorderItem) -> bool:
        queue = self._ensure_started()
        try:
            queue.put_nowait(item)
        except asyncio.QueueFull:
            increment_counter("traffic_events_dropped_total")
            logger.warning("traffic_event_dropped endpoint=%s reason=queue_full", item.endpoint)
            return False
        set_gauge("traffic_queue_depth", queue.qsize())
        return True

    def record_traffic(
        self,
        *,
        endpoint: str,
        identity: str,
        outcome: str,
        latency_ms: float | None,
        region: str | None = None,
        occurred_at: datetime | None = None,
    ) -> bool:
        return self._enqueue(
            TrafficRecord(
                endpoint=endpoint,
                identity=identity,
                region=region or get_settings().region_id,
                outcome=outcome,
                latency_ms=latency_ms,
                occurred_at=occurred_at or _utc_now(),
            )
        )

    def record_rejection(
        self,
        *,
        endpoint: str,
        identity: str,
        request_count: int,
        retry_after_seconds: int,
        decision_source: str,
        occurred_at: datetime | None = None,
    ) -> bool:
        return self._enqueue(
            RejectionRecord(
                endpoint=endpoint,
                identity=identity,
                request_count=request_count,
                retry_after_seconds=retry_after_seconds,
                decision_source=decision_source,
                occurred_at=occurred_at or _utc_now(),
            )
        )

    async def _write(self, batch: list[RecorderItem]) -> None:
        async with self._session_factory() as session:
            try:
                session.add_all([_to_row(item) for item in batch])
                await session.commit()
            except SQLAlchemyError as exc:
                await session.rollback()
                increment_counter("traffic_events_write_failed_total", len(batch))
                logger.warning("traffic_event_write_failed batch=%s", len(batch), exc_info=exc)

    async def _drain(self, queue: asyncio.Queue[RecorderItem]) -> None:
        while True:
            item = await queue.get()
            batch = [item]
            while len(batch) < self._batch_size:
                try:
                    batch.append(queue.get_nowait())
                except asyncio.QueueEmpty:
                    break
            try:
                await self._write(batch)
            except Exception:  # noqa: BLE001 - keep the drain task alive while surfacing errors in logs.
                logger.exception("traffic recorder batch failed")
            finally:
                for _ in batch:
                    queue.task_done()
                set_gauge("traffic_queue_depth", queue.qsize())

    async def flush(self) -> None:
        # Wait until everything queued so far is written (used at shutdown and in tests).
        if self._queue is None or self._loop is not asyncio.get_running_loop():
            return
        self._ensure_started()
        await self._queue.join()

    async def stop(self) -> None:
        await self.flush()
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
        self._task = None


_recorder: TrafficRecorder | None = None


def get_traffic_recorder() -> TrafficRecorder:
    global _recorder
    if _recorder is None:
        _recorder = TrafficRecorder()
    return _recorder


def reset_traffic_recorder() -> None:
    global _recorder
    _recorder = None
