from __future__ import annotations

import os
import tempfile

# Point the engine at a throwaway SQLite file before flowguard.persistence.db builds it.
_TEST_DB_DIR = tempfile.mkdtemp(prefix="flowguard-tests-")
os.environ.setdefault(
    "DATABASE_URL", f"sqlite+aiosqlite:///{os.path.join(_TEST_DB_DIR, 'flowguard.db')}"
)
os.environ.setdefault("REDIS_URL", "redis://127.0.0.1:6399/15")

import pytest  # noqa: E402

from flowguard.core.config import get_settings  # noqa: E402
from flowguard.persistence.db import create_schema, drop_schema, engine  # noqa: E402
from flowguard.services import counter as counter_module  # noqa: E402
from flowguard.services import rate_limit as rate_limit_module  # noqa: E402
from flowguard.services import traffic as traffic_module  # noqa: E402
from flowguard.services.telemetry import reset_telemetry  # noqa: E402


@pytest.fixture(autouse=True)
async def fresh_schema() -> None:
    # Every test starts from empty tables; the engine is disposed so no connection outlives its loop.
    await create_schema()
    yield
    recorder = traffic_module._recorder
    if recorder is not None:
        await recorder.stop()
    await drop_schema()
    await engine.dispose()


@pytest.fixture(autouse=True)
def reset_process_state() -> None:
    # Clear process-local singletons and cached settings so env overrides do not leak.
    get_settings.cache_clear()
    reset_telemetry()
    yield
    get_settings.cache_clear()
    rate_limit_module.reset_rate_limiter_state()
    traffic_module.reset_traffic_recorder()
    counter_module.reset_redis_state()
    reset_telemetry()
