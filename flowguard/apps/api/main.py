from __future__ import annotations

from contextlib import asynccontextmanager
from typing import AsyncIterator

from fastapi import FastAPI, HTTPException
from fastapi.exceptions import RequestValidationError
from starlette.exceptions import HTTPException as StarletteHTTPException

from flowguard.apps.api.errors import (
    http_exception_handler,
    starlette_http_exception_handler,
    store_unavailable_exception_handler,
    unhandled_exception_handler,
    validation_exception_handler,
)
from flowguard.apps.api.routes.health import router as health_router
from flowguard.apps.api.routes.ops import router as ops_router
from flowguard.apps.api.routes.workers import router as workers_router
from flowguard.core.config import get_settings
from flowguard.core.errors import StoreUnavailableError
from flowguard.core.logging import configure_logging
from flowguard.services.traffic import get_traffic_recorder


@asynccontextmanager
async def _lifespan(app: FastAPI) -> AsyncIterator[None]:
    yield
    # Drain queued traffic events before the process exits.
    await get_traffic_recorder().stop()


def create_app() -> FastAPI:
    configure_logging()
    app = FastAPI(title=get_settings().app_name, lifespan=_lifespan)

    # Every error leaves the API as a {code, message} body.
    app.add_exception_handler(StarletteHTTPException, starlette_http_exception_handler)
    app.add_exception_handler(HTTPException, http_exception_handler)
    app.add_exception_handler(RequestValidationError, validation_exception_handler)
    app.add_exception_handler(StoreUnavailableError, store_unavailable_exception_handler)
    app.add_exception_handler(Exception, unhandled_exception_handler)

    app.include_router(health_router)
    # Rate-limited worker endpoints under /api.
    app.include_router(workers_router)
    # Scheduler triggers and read-only ops views.
    app.include_router(ops_router)
    return app


app = create_app()
