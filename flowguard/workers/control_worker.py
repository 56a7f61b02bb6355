from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, Callable

from sqlalchemy.exc import SQLAlchemyError

from flowguard.core.config import get_settings
from flowguard.core.errors import StoreUnavailableError
from flowguard.core.logging import configure_logging
from flowguard.persistence.db import SessionLocal
from flowguard.services.autoscaling import AutoscalingController
from flowguard.services.maintenance import prune_all
from flowguard.services.workers.health import run_health_check_cycle


logger = logging.getLogger(__name__)


def _is_missing_table_error(exc: BaseException) -> bool:
    # Let loops start before the schema exists by treating missing-table errors as a temporary state.
    message = str(exc).lower()
    return "undefinedtableerror" in message or "does not exist" in message or "no such table" in message


def _waiting_for_schema(exc: StoreUnavailableError) -> bool:
    cause = exc.__cause__
    return cause is not None and _is_missing_table_error(cause)


async def run_health_check_once() -> dict[str, Any]:
    try:
        result = await run_health_check_cycle()
    except StoreUnavailableError as exc:
        if _waiting_for_schema(exc):
            return {"status": "waiting_for_schema"}
        raise
    logger.info(
        "health_check_cycle evaluated=%s updated=%s stalled_jobs_reset=%s",
        result["workers"]["evaluated"],
        result["workers"]["updated"],
        result["jobs"]["stalled_jobs_reset"],
    )
    return {"status": "ok", **result}


async def run_autoscaling_once(controller: AutoscalingController | None = None) -> dict[str, Any]:
    controller = controller or AutoscalingController()
    try:
        summary = await controller.run_cycle()
    except StoreUnavailableError as exc:
        if _waiting_for_schema(exc):
            return {"status": "waiting_for_schema"}
        raise
    logger.info(
        "autoscaling_cycle status=%s lock_mode=%s actions=%s errors=%s",
        summary.status,
        summary.lock_mode,
        len(summary.actions),
        len(summary.errors),
    )
    return summary.to_dict()


async def run_maintenance_once() -> dict[str, int]:
    async with SessionLocal() as session:
        try:
            deleted = await prune_all(session)
            await session.commit()
        except SQLAlchemyError as exc:
            await session.rollback()
            if _is_missing_table_error(exc):
                return {}
            raise
    logger.info("maintenance_cycle %s", " ".join(f"{key}={value}" for key, value in deleted.items()))
    return deleted


async def _run_periodically(
    name: str,
    cycle: Callable[[], Awaitable[Any]],
    interval_s: int,
) -> None:
    # Run on a fixed cadence and continue after failures; the next period retries.
    interval = max(5, int(interval_s))
    while True:
        try:
            await cycle()
        except Exception:  # noqa: BLE001 - keep loop alive while surfacing errors in logs.
            logger.exception("%s cycle failed", name)
        await asyncio.sleep(interval)


async def run_control_worker() -> None:
    """Run every control loop in one process on independent periods.

    Stands in for an external scheduler; the loops are safe to run alongside
    the cron-style HTTP triggers because every write is either lock-guarded or
    a conditional update.
    """
    settings = get_settings()
    await asyncio.gather(
        _run_periodically("worker health", run_health_check_once, settings.health_check_interval_s),
        _run_periodically("autoscaling", run_autoscaling_once, settings.autoscaling_interval_s),
        _run_periodically("maintenance", run_maintenance_once, settings.maintenance_interval_s),
    )


async def main() -> None:
    configure_logging()
    logger.info("control_worker_started region=%s", get_settings().region_id)
    await run_control_worker()


if __name__ == "__main__":
    asyncio.run(main())
