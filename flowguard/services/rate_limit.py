from __future__ import annotations

import asyncio
from dataclasses import dataclass
from datetime import datetime, timezone
import logging
import math
import time
from typing import Any, Callable, Union

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from flowguard.core.config import get_settings
from flowguard.core.errors import CacheUnavailableError
from flowguard.domain.models import TRAFFIC_OUTCOME_LIMITED, TRAFFIC_OUTCOME_SERVED
from flowguard.persistence.db import SessionLocal
from flowguard.persistence.repos import rate_counters as rate_counters_repo
from flowguard.services.counter import CounterResult, RedisCounter
from flowguard.services.policy_cache import PolicyCache, PolicySnapshot
from flowguard.services.telemetry import increment_counter, record_decision
from flowguard.services.traffic import TrafficRecorder, get_traffic_recorder


logger = logging.getLogger(__name__)

DECISION_SOURCE_CACHE = "cache"
DECISION_SOURCE_STORE = "store"
DECISION_SOURCE_FAIL_OPEN = "fail_open"

# Callers with neither a user id nor an address share this single bucket.
ANONYMOUS_IDENTITY = "anonymous"


@dataclass(frozen=True)
class RateLimitDecision:
    allowed: bool
    retry_after_seconds: int
    endpoint: str
    identity: str
    # Effective limit + burst for this caller's tier.
    limit: int
    # Count observed after this request's increment; None when failing open.
    count: int | None
    source: str

    @property
    def remaining(self) -> int | None:
        if self.count is None:
            return None
        return max(0, self.limit - self.count)


@dataclass(frozen=True)
class CacheOk:
    counter: CounterResult


@dataclass(frozen=True)
class CacheUnavailable:
    reason: str


CacheResult = Union[CacheOk, CacheUnavailable]


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def resolve_caller_identity(user_id: str | None, client_ip: str | None) -> str:
    # Prefer the authenticated user, then the network address.
    if user_id:
        return str(user_id)
    if client_ip:
        return str(client_ip)
    return ANONYMOUS_IDENTITY


def effective_limits(policy: PolicySnapshot, tier: str | None) -> tuple[int, int]:
    multiplier = policy.multiplier_for(tier)
    limit = int(math.floor(policy.base_limit * multiplier))
    burst = int(math.floor(policy.burst_capacity * multiplier))
    return limit, burst


def counter_key(endpoint: str, identity: str) -> str:
    return f"{get_settings().rl_redis_prefix}:{endpoint}:{identity}"


def evaluate_counter(counter: CounterResult, *, capacity: int, window_seconds: int) -> tuple[bool, int]:
    """Apply the window rule to an already-incremented counter.

    The first call of a window is always admitted. Later calls are admitted
    while the count observed before this call's increment is below
    ``capacity``; the increment stands either way.
    """
    if counter.initialized:
        return True, 0
    previous = counter.count - 1
    if previous < capacity:
        return True, 0
    retry_after = counter.ttl_remaining if counter.ttl_remaining > 0 else window_seconds
    return False, int(retry_after)


class RateLimiter:
    def __init__(
        self,
        *,
        policy_cache: PolicyCache | None = None,
        counter: RedisCounter | None = None,
        recorder: TrafficRecorder | None = None,
        session_factory: async_sessionmaker[AsyncSession] | Callable[[], Any] | None = None,
        now_provider: Callable[[], datetime] | None = None,
        fallback_timeout_ms: int | None = None,
    ) -> None:
        # Allow injecting collaborators and time for deterministic tests.
        self._policies = policy_cache or PolicyCache()
        self._counter = counter or RedisCounter()
        self._recorder = recorder
        self._session_factory = session_factory or SessionLocal
        self._now = now_provider or _utc_now
        self._fallback_timeout_ms = (
            fallback_timeout_ms if fallback_timeout_ms is not None else get_settings().rl_fallback_timeout_ms
        )

    @property
    def policy_cache(self) -> PolicyCache:
        return self._policies

    def _traffic(self) -> TrafficRecorder:
        return self._recorder or get_traffic_recorder()

    async def _cache_stage(self, key: str, window_seconds: int) -> CacheResult:
        try:
            counter = await self._counter.increment_or_init(key, window_seconds)
        except CacheUnavailableError as exc:
            return CacheUnavailable(reason=str(exc))
        return CacheOk(counter=counter)

    async def _store_stage(self, key: str, window_seconds: int) -> CounterResult:
        # Same window semantics against the relational counter table; higher latency, same answer.
        async def _run() -> CounterResult:
            async with self._session_factory() as session:
                count, ttl_remaining, initialized = await rate_counters_repo.increment_or_init(
                    session,
                    key=key,
                    window_seconds=window_seconds,
                    now=self._now(),
                )
                await session.commit()
            return CounterResult(count=count, ttl_remaining=ttl_remaining, initialized=initialized)

        return await asyncio.wait_for(_run(), timeout=self._fallback_timeout_ms / 1000.0)

    def _decision(
        self,
        counter: CounterResult,
        *,
        endpoint: str,
        identity: str,
        capacity: int,
        window_seconds: int,
        source: str,
    ) -> RateLimitDecision:
        allowed, retry_after = evaluate_counter(counter, capacity=capacity, window_seconds=window_seconds)
        return RateLimitDecision(
            allowed=allowed,
            retry_after_seconds=retry_after,
            endpoint=endpoint,
            identity=identity,
            limit=capacity,
            count=counter.count,
            source=source,
        )

    async def admit(self, endpoint: str, identity: str, tier: str | None = None) -> RateLimitDecision:
        started = time.monotonic()
        policy = await self._policies.get_policy(endpoint)
        limit, burst = effective_limits(policy, tier)
        capacity = limit + burst
        window = policy.cooldown_seconds
        key = counter_key(endpoint, identity)

        cache_result = await self._cache_stage(key, window)
        if isinstance(cache_result, CacheOk):
            decision = self._decision(
                cache_result.counter,
                endpoint=endpoint,
                identity=identity,
                capacity=capacity,
                window_seconds=window,
                source=DECISION_SOURCE_CACHE,
            )
        else:
            increment_counter("rate_limit_cache_unavailable_total")
            logger.warning(
                "rate_limit_cache_unavailable endpoint=%s reason=%s", endpoint, cache_result.reason
            )
            decision = await self._fallback(
                key,
                endpoint=endpoint,
                identity=identity,
                capacity=capacity,
                window_seconds=window,
            )

        latency_ms = (time.monotonic() - started) * 1000.0
        self._emit(decision, latency_ms=latency_ms)
        return decision

    async def _fallback(
        self,
        key: str,
        *,
        endpoint: str,
        identity: str,
        capacity: int,
        window_seconds: int,
    ) -> RateLimitDecision:
        try:
            counter = await self._store_stage(key, window_seconds)
        except (SQLAlchemyError, asyncio.TimeoutError, TimeoutError, OSError) as exc:
            # Availability over strict limiting: admit when neither backend can decide.
            increment_counter("rate_limit_fail_open_total")
            logger.warning("rate_limit_fail_open endpoint=%s identity=%s", endpoint, identity, exc_info=exc)
            return RateLimitDecision(
                allowed=True,
                retry_after_seconds=0,
                endpoint=endpoint,
                identity=identity,
                limit=capacity,
                count=None,
                source=DECISION_SOURCE_FAIL_OPEN,
            )
        return self._decision(
            counter,
            endpoint=endpoint,
            identity=identity,
            capacity=capacity,
            window_seconds=window_seconds,
            source=DECISION_SOURCE_STORE,
        )

    def _emit(self, decision: RateLimitDecision, *, latency_ms: float) -> None:
        # Fire-and-forget: enqueue audit rows without awaiting any database write.
        record_decision(
            endpoint=decision.endpoint,
            source=decision.source,
            allowed=decision.allowed,
            latency_ms=latency_ms,
        )
        recorder = self._traffic()
        outcome = TRAFFIC_OUTCOME_SERVED if decision.allowed else TRAFFIC_OUTCOME_LIMITED
        recorder.record_traffic(
            endpoint=decision.endpoint,
            identity=decision.identity,
            outcome=outcome,
            latency_ms=latency_ms,
        )
        if decision.allowed:
            return
        increment_counter("rate_limit_rejected_total")
        recorder.record_rejection(
            endpoint=decision.endpoint,
            identity=decision.identity,
            request_count=int(decision.count or 0),
            retry_after_seconds=decision.retry_after_seconds,
            decision_source=decision.source,
        )


_rate_limiter: RateLimiter | None = None


def get_rate_limiter() -> RateLimiter:
    # Share one limiter per process so the policy cache is reused across requests.
    global _rate_limiter
    if _rate_limiter is None:
        _rate_limiter = RateLimiter()
    return _rate_limiter


def reset_rate_limiter_state() -> None:
    global _rate_limiter
    _rate_limiter = None
