from __future__ import annotations

from datetime import datetime, timezone
from typing import Any
from uuid import uuid4

from sqlalchemy import (
    JSON,
    Boolean,
    DateTime,
    Float,
    Index,
    Integer,
    String,
    Text,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column
from sqlalchemy.types import TypeDecorator


WORKER_STATUS_ACTIVE = "ACTIVE"
WORKER_STATUS_INACTIVE = "INACTIVE"
WORKER_STATUS_FAILED = "FAILED"

JOB_STATUS_PENDING = "PENDING"
JOB_STATUS_PROCESSING = "PROCESSING"
JOB_STATUS_COMPLETED = "COMPLETED"
JOB_STATUS_ERROR = "ERROR"

TRAFFIC_OUTCOME_SERVED = "served"
TRAFFIC_OUTCOME_LIMITED = "limited"

SCALING_REASON_CREATED = "created"
SCALING_REASON_SCALE_UP = "scale_up"
SCALING_REASON_SCALE_DOWN = "scale_down"


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _new_id() -> str:
    return uuid4().hex


class UTCDateTime(TypeDecorator):
    # Normalize to aware UTC on both sides so SQLite and Postgres compare timestamps identically.
    impl = DateTime(timezone=True)
    cache_ok = True

    def process_bind_param(self, value: datetime | None, dialect) -> datetime | None:  # noqa: ANN001
        if value is None:
            return None
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)

    def process_result_value(self, value: datetime | None, dialect) -> datetime | None:  # noqa: ANN001
        if value is None:
            return None
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)


class Base(DeclarativeBase):
    pass


class RateLimitPolicy(Base):
    __tablename__ = "rate_limit_policies"

    # Per-endpoint limits are edited externally; the control plane only reads them.
    endpoint: Mapped[str] = mapped_column(String, primary_key=True)
    base_limit: Mapped[int] = mapped_column(Integer)
    burst_capacity: Mapped[int] = mapped_column(Integer, default=0)
    # Window length in seconds; counters expire after this long.
    cooldown_seconds: Mapped[int] = mapped_column(Integer, default=60)
    tier_multipliers: Mapped[dict[str, Any] | None] = mapped_column(JSON, nullable=True)
    adaptive_enabled: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(UTCDateTime, default=_utc_now, onupdate=_utc_now)


class RateCounterRow(Base):
    __tablename__ = "rate_limit_counters"

    # Relational mirror of the Redis window counter, used only when Redis is unreachable.
    key: Mapped[str] = mapped_column(String, primary_key=True)
    window_started_at: Mapped[datetime] = mapped_column(UTCDateTime, index=True)
    window_seconds: Mapped[int] = mapped_column(Integer)
    count: Mapped[int] = mapped_column(Integer, default=0)


class TrafficEvent(Base):
    __tablename__ = "traffic_events"
    __table_args__ = (
        Index("ix_traffic_events_region_occurred", "region", "occurred_at"),
        Index("ix_traffic_events_endpoint_occurred", "endpoint", "occurred_at"),
    )

    # Append-only record of every gated request; feeds autoscaling traffic aggregation.
    id: Mapped[str] = mapped_column(String, primary_key=True, default=_new_id)
    endpoint: Mapped[str] = mapped_column(String)
    identity: Mapped[str] = mapped_column(String)
    region: Mapped[str] = mapped_column(String)
    outcome: Mapped[str] = mapped_column(String)
    latency_ms: Mapped[float | None] = mapped_column(Float, nullable=True)
    occurred_at: Mapped[datetime] = mapped_column(UTCDateTime, default=_utc_now)


class RateLimitRejection(Base):
    __tablename__ = "rate_limit_rejections"
    __table_args__ = (
        Index("ix_rate_limit_rejections_endpoint_occurred", "endpoint", "occurred_at"),
    )

    # Audit row for each rejected request with the count observed at decision time.
    id: Mapped[str] = mapped_column(String, primary_key=True, default=_new_id)
    endpoint: Mapped[str] = mapped_column(String)
    identity: Mapped[str] = mapped_column(String)
    request_count: Mapped[int] = mapped_column(Integer)
    retry_after_seconds: Mapped[int] = mapped_column(Integer)
    decision_source: Mapped[str] = mapped_column(String)
    occurred_at: Mapped[datetime] = mapped_column(UTCDateTime, default=_utc_now)


class WorkerRecord(Base):
    __tablename__ = "workers"

    id: Mapped[str] = mapped_column(String, primary_key=True)
    # Derived from heartbeat age by the health tracker; never written by callers directly.
    status: Mapped[str] = mapped_column(String, default=WORKER_STATUS_ACTIVE, index=True)
    last_heartbeat: Mapped[datetime] = mapped_column(UTCDateTime)
    jobs_processed: Mapped[int] = mapped_column(Integer, default=0)
    jobs_failed: Mapped[int] = mapped_column(Integer, default=0)
    cpu_usage: Mapped[float | None] = mapped_column(Float, nullable=True)
    memory_usage: Mapped[float | None] = mapped_column(Float, nullable=True)
    metadata_json: Mapped[dict[str, Any] | None] = mapped_column(JSON, nullable=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, default=_utc_now)


class WorkerStatusEvent(Base):
    __tablename__ = "worker_status_events"

    # Status history survives the worker so failures can be investigated later.
    id: Mapped[str] = mapped_column(String, primary_key=True, default=_new_id)
    worker_id: Mapped[str] = mapped_column(String, index=True)
    previous_status: Mapped[str] = mapped_column(String)
    new_status: Mapped[str] = mapped_column(String)
    heartbeat_age_seconds: Mapped[float] = mapped_column(Float)
    last_heartbeat: Mapped[datetime] = mapped_column(UTCDateTime)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, default=_utc_now)


class Job(Base):
    __tablename__ = "jobs"
    __table_args__ = (
        Index("ix_jobs_status_started", "status", "started_at"),
    )

    id: Mapped[str] = mapped_column(String, primary_key=True, default=_new_id)
    status: Mapped[str] = mapped_column(String, default=JOB_STATUS_PENDING)
    payload_json: Mapped[dict[str, Any] | None] = mapped_column(JSON, nullable=True)
    attempts: Mapped[int] = mapped_column(Integer, default=0)
    started_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    completed_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, default=_utc_now)


class RegionWorkerPool(Base):
    __tablename__ = "region_worker_pools"

    # Desired capacity per region; active_workers is only written by the autoscaling cycle.
    region: Mapped[str] = mapped_column(String, primary_key=True)
    active_workers: Mapped[int] = mapped_column(Integer)
    min_workers: Mapped[int] = mapped_column(Integer)
    max_workers: Mapped[int] = mapped_column(Integer)
    last_scaled: Mapped[datetime] = mapped_column(UTCDateTime)


class ScalingEvent(Base):
    __tablename__ = "scaling_events"
    __table_args__ = (
        Index("ix_scaling_events_region_created", "region", "created_at"),
    )

    # One row per applied change to a region pool.
    id: Mapped[str] = mapped_column(String, primary_key=True, default=_new_id)
    region: Mapped[str] = mapped_column(String)
    previous_workers: Mapped[int] = mapped_column(Integer)
    new_workers: Mapped[int] = mapped_column(Integer)
    traffic: Mapped[int] = mapped_column(Integer)
    reason: Mapped[str] = mapped_column(String)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, default=_utc_now)
