from __future__ import annotations

import logging

from fastapi import HTTPException, Request, Response, status

from flowguard.core.config import get_settings
from flowguard.services.rate_limit import (
    RateLimitDecision,
    get_rate_limiter,
    resolve_caller_identity,
)


logger = logging.getLogger(__name__)

_RATE_LIMITED_PREFIX = "/api"


def endpoint_for_path(path: str) -> str | None:
    """Map a request path to the endpoint name policies are keyed by.

    ``/api/analyze/run`` and ``/api/analyze`` both map to ``api/analyze``;
    paths outside ``/api`` are not rate limited and map to ``None``.
    """
    if path != _RATE_LIMITED_PREFIX and not path.startswith(_RATE_LIMITED_PREFIX + "/"):
        return None
    segments = [segment for segment in path.split("/") if segment]
    if len(segments) == 1:
        return "api"
    return f"{segments[0]}/{segments[1]}"


def client_ip_for_request(request: Request) -> str | None:
    # First proxy hop wins; the socket peer is the last resort.
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        first = forwarded.split(",")[0].strip()
        if first:
            return first
    real_ip = request.headers.get("x-real-ip")
    if real_ip and real_ip.strip():
        return real_ip.strip()
    if request.client is not None:
        return request.client.host
    return None


def _throttle_exception(decision: RateLimitDecision) -> HTTPException:
    # Construct a stable 429 response with retry hints and metadata.
    headers = {
        "Retry-After": str(decision.retry_after_seconds),
        "X-RateLimit-Limit": str(decision.limit),
        "X-RateLimit-Source": decision.source,
    }
    return HTTPException(
        status_code=status.HTTP_429_TOO_MANY_REQUESTS,
        detail={
            "code": "RATE_LIMITED",
            "message": "Rate limit exceeded",
            "retry_after_seconds": decision.retry_after_seconds,
            "endpoint": decision.endpoint,
        },
        headers=headers,
    )


async def enforce_rate_limit(request: Request, response: Response) -> RateLimitDecision | None:
    # Admit or reject /api requests; user id and tier come from an upstream auth layer via request.state.
    settings = get_settings()
    if not settings.rate_limit_enabled:
        return None
    endpoint = endpoint_for_path(request.url.path)
    if endpoint is None:
        return None

    user_id = getattr(request.state, "user_id", None)
    tier = getattr(request.state, "tier", None)
    identity = resolve_caller_identity(user_id, client_ip_for_request(request))
    decision = await get_rate_limiter().admit(endpoint, identity, tier)
    if not decision.allowed:
        logger.info(
            "rate_limited endpoint=%s identity=%s retry_after_s=%s source=%s",
            endpoint,
            identity,
            decision.retry_after_seconds,
            decision.source,
        )
        raise _throttle_exception(decision)

    response.headers["X-RateLimit-Limit"] = str(decision.limit)
    response.headers["X-RateLimit-Source"] = decision.source
    remaining = decision.remaining
    if remaining is not None:
        response.headers["X-RateLimit-Remaining"] = str(remaining)
    return decision
