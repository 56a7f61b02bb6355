from __future__ import annotations

from datetime import datetime

from fastapi import APIRouter, Depends
from pydantic import BaseModel

from flowguard.apps.api.deps import get_health_tracker
from flowguard.apps.api.rate_limit import enforce_rate_limit
from flowguard.services.workers.health import HeartbeatPayload, WorkerHealthTracker


router = APIRouter(prefix="/api/workers", tags=["workers"], dependencies=[Depends(enforce_rate_limit)])


class HeartbeatResponse(BaseModel):
    worker_id: str
    status: str
    last_heartbeat: datetime


@router.post("/heartbeat", response_model=HeartbeatResponse)
async def worker_heartbeat(
    payload: HeartbeatPayload,
    tracker: WorkerHealthTracker = Depends(get_health_tracker),
) -> HeartbeatResponse:
    # Workers call this on every tick; the first call registers the worker.
    worker = await tracker.record_heartbeat(payload)
    return HeartbeatResponse(
        worker_id=worker.id,
        status=worker.status,
        last_heartbeat=worker.last_heartbeat,
    )
