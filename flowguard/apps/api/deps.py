from __future__ import annotations

from typing import Any, AsyncGenerator, Callable

from sqlalchemy.ext.asyncio import AsyncSession

from flowguard.persistence.db import SessionLocal, get_session
from flowguard.services.autoscaling import AutoscalingController
from flowguard.services.counter import KeyValueCache, get_redis
from flowguard.services.workers.health import WorkerHealthTracker


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    # One AsyncSession per request; context manager ensures close on success/error.
    async with get_session() as session:
        yield session


def get_session_factory() -> Callable[[], Any]:
    # Dependency probes open their own session so a failed connect is reported, not raised.
    return SessionLocal


async def get_key_value_cache() -> KeyValueCache:
    return await get_redis()


def get_health_tracker() -> WorkerHealthTracker:
    return WorkerHealthTracker()


def get_autoscaling_controller() -> AutoscalingController:
    # Overridden in tests to inject an in-memory lock store.
    return AutoscalingController()
