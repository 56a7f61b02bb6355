from __future__ import annotations

import logging
from typing import Any

from fastapi import HTTPException, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from flowguard.core.errors import StoreUnavailableError


logger = logging.getLogger(__name__)

_DEFAULT_ERROR_CODES: dict[int, str] = {
    400: "BAD_REQUEST",
    404: "NOT_FOUND",
    409: "CONFLICT",
    422: "VALIDATION_ERROR",
    429: "RATE_LIMITED",
    500: "INTERNAL_ERROR",
    503: "SERVICE_UNAVAILABLE",
}


def _default_code(status_code: int) -> str:
    # Map status codes to fallback error codes when none are provided.
    return _DEFAULT_ERROR_CODES.get(status_code, "UNKNOWN_ERROR")


def _error_payload(detail: Any, status_code: int) -> dict[str, Any]:
    # Flatten HTTPException details into a stable {code, message, ...} body.
    if isinstance(detail, dict):
        payload = dict(detail)
        payload["code"] = str(detail.get("code") or _default_code(status_code))
        payload["message"] = str(detail.get("message") or "Request failed")
        return payload
    if isinstance(detail, str):
        return {"code": _default_code(status_code), "message": detail}
    return {"code": _default_code(status_code), "message": "Request failed"}


async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    return JSONResponse(
        content=_error_payload(exc.detail, exc.status_code),
        status_code=exc.status_code,
        headers=exc.headers,
    )


async def starlette_http_exception_handler(
    request: Request, exc: StarletteHTTPException
) -> JSONResponse:
    # Routing errors (404/405) share the same body shape as application errors.
    return JSONResponse(
        content=_error_payload(exc.detail, exc.status_code),
        status_code=exc.status_code,
        headers=exc.headers,
    )


async def validation_exception_handler(
    request: Request, exc: RequestValidationError
) -> JSONResponse:
    return JSONResponse(
        content={
            "code": "REQUEST_VALIDATION_ERROR",
            "message": "Validation error",
            "errors": jsonable_encoder(exc.errors()),
        },
        status_code=422,
    )


async def store_unavailable_exception_handler(
    request: Request, exc: StoreUnavailableError
) -> JSONResponse:
    # Whole-cycle baseline reads failed; the caller's scheduler retries next period.
    logger.warning("store_unavailable path=%s error=%s", request.url.path, exc)
    return JSONResponse(
        content={"code": "STORE_UNAVAILABLE", "message": "Relational store unavailable"},
        status_code=503,
    )


async def unhandled_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    # Avoid leaking stack traces; return a stable internal error body.
    logger.exception("unhandled_exception path=%s", request.url.path, exc_info=exc)
    return JSONResponse(
        content={"code": "INTERNAL_ERROR", "message": "Internal server error"},
        status_code=500,
    )
