from __future__ import annotations

from datetime import datetime, timedelta, timezone

from flowguard.domain.models import WorkerRecord
from flowguard.persistence.db import SessionLocal, drop_schema
from flowguard.services import traffic as traffic_module
from flowguard.services.autoscaling import AutoscalingController
from flowguard.tests.utils.fake_redis import FakeRedis
from flowguard.workers import control_worker


async def test_health_check_once_reports_cycle() -> None:
    async with SessionLocal() as session:
        session.add(
            WorkerRecord(id="w-1", status="ACTIVE", last_heartbeat=datetime.now(timezone.utc) - timedelta(hours=2))
        )
        await session.commit()

    result = await control_worker.run_health_check_once()

    assert result["status"] == "ok"
    assert result["workers"]["failed"] == 1


async def test_health_check_waits_for_schema() -> None:
    await drop_schema()

    result = await control_worker.run_health_check_once()

    assert result == {"status": "waiting_for_schema"}


async def test_autoscaling_once_uses_given_controller() -> None:
    controller = AutoscalingController(redis=FakeRedis(), regions=["iad1"])

    result = await control_worker.run_autoscaling_once(controller)

    assert result["status"] == "ok"
    assert [action["reason"] for action in result["actions"]] == ["created"]


async def test_autoscaling_waits_for_schema() -> None:
    await drop_schema()
    controller = AutoscalingController(redis=FakeRedis(), regions=["iad1"])

    assert await control_worker.run_autoscaling_once(controller) == {"status": "waiting_for_schema"}


async def test_maintenance_waits_for_schema() -> None:
    await drop_schema()

    assert await control_worker.run_maintenance_once() == {}


async def test_control_worker_runs_each_loop_without_traffic_recorder(monkeypatch) -> None:  # noqa: ANN001
    started: list[tuple[str, int]] = []

    async def _record_loop(name, cycle, interval_s):  # noqa: ANN001, ANN202
        started.append((name, interval_s))

    monkeypatch.setattr(control_worker, "_run_periodically", _record_loop)
    await control_worker.run_control_worker()

    assert started == [("worker health", 300), ("autoscaling", 900), ("maintenance", 86400)]
    assert traffic_module._recorder is None
