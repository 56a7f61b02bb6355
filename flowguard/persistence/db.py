from __future__ import annotations

from contextlib import asynccontextmanager
from typing import Any, AsyncIterator

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from flowguard.core.config import get_settings
from flowguard.domain.models import Base


settings = get_settings()
_engine_kwargs: dict[str, Any] = {"pool_pre_ping": True}
# Configure bounded asyncpg pools so scheduled loops and request handlers share capacity predictably.
if not settings.database_url.startswith("sqlite"):
    _engine_kwargs["pool_size"] = max(1, int(settings.db_pool_size))
    _engine_kwargs["max_overflow"] = max(0, int(settings.db_max_overflow))
    _engine_kwargs["pool_timeout"] = 30
    _engine_kwargs["pool_recycle"] = 1800
    if settings.db_statement_timeout_ms > 0:
        _engine_kwargs["connect_args"] = {
            "server_settings": {"statement_timeout": str(int(settings.db_statement_timeout_ms))}
        }
engine = create_async_engine(settings.database_url, **_engine_kwargs)
SessionLocal = async_sessionmaker(engine, expire_on_commit=False)


@asynccontextmanager
async def get_session() -> AsyncIterator[AsyncSession]:
    async with SessionLocal() as session:
        yield session


async def create_schema() -> None:
    # Development/test bootstrap only; production schemas are managed outside this package.
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


async def drop_schema() -> None:
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)


def pool_stats() -> dict[str, int | None]:
    # Expose DB pool counters for ops visibility without querying the database.
    # SQLite test pools do not implement every counter.
    pool = engine.sync_engine.pool
    stats: dict[str, int | None] = {}
    for key, attr in (("size", "size"), ("checked_out", "checkedout"), ("checked_in", "checkedin"), ("overflow", "overflow")):
        reader = getattr(pool, attr, None)
        stats[key] = int(reader()) if callable(reader) else None
    return stats
