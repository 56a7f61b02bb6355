from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
import logging
import time
from typing import Any, Callable

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from flowguard.core.config import get_settings
from flowguard.domain.models import RateLimitPolicy
from flowguard.persistence.db import SessionLocal
from flowguard.persistence.repos import policies as policies_repo
from flowguard.services.telemetry import increment_counter


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PolicySnapshot:
    # Immutable copy of a policy row; safe to share between concurrent requests.
    endpoint: str
    base_limit: int
    burst_capacity: int
    cooldown_seconds: int
    tier_multipliers: dict[str, float] = field(default_factory=dict)
    adaptive_enabled: bool = False
    is_default: bool = False

    def multiplier_for(self, tier: str | None) -> float:
        if tier is None:
            return 1.0
        return self.tier_multipliers.get(tier, 1.0)


def _parse_multipliers(raw: dict[str, Any] | None) -> dict[str, float]:
    # Ignore malformed entries instead of failing the whole policy.
    parsed: dict[str, float] = {}
    for tier, value in (raw or {}).items():
        try:
            multiplier = float(value)
        except (TypeError, ValueError):
            logger.warning("policy_tier_multiplier_invalid tier=%s value=%r", tier, value)
            continue
        if multiplier < 0:
            continue
        parsed[str(tier)] = multiplier
    return parsed


def snapshot_from_row(row: RateLimitPolicy) -> PolicySnapshot:
    return PolicySnapshot(
        endpoint=row.endpoint,
        base_limit=int(row.base_limit),
        burst_capacity=int(row.burst_capacity or 0),
        cooldown_seconds=max(1, int(row.cooldown_seconds or 1)),
        tier_multipliers=_parse_multipliers(row.tier_multipliers),
        adaptive_enabled=bool(row.adaptive_enabled),
    )


def default_policy(endpoint: str) -> PolicySnapshot:
    # Conservative fixed policy used when the store has no row or cannot be read.
    settings = get_settings()
    return PolicySnapshot(
        endpoint=endpoint,
        base_limit=settings.rl_default_base_limit,
        burst_capacity=settings.rl_default_burst_capacity,
        cooldown_seconds=settings.rl_default_cooldown_seconds,
        tier_multipliers={},
        adaptive_enabled=False,
        is_default=True,
    )


@dataclass(frozen=True)
class _CacheEntry:
    policy: PolicySnapshot
    expires_at: float


class PolicyCache:
    """Read-through, TTL-bounded cache of per-endpoint rate limit policies.

    The cache is advisory: the relational store stays the source of truth and
    concurrent refreshes simply overwrite each other with equivalent snapshots.
    """

    def __init__(
        self,
        *,
        session_factory: async_sessionmaker[AsyncSession] | Callable[[], Any] | None = None,
        ttl_s: int | None = None,
        timeout_ms: int | None = None,
        time_provider: Callable[[], float] | None = None,
    ) -> None:
        settings = get_settings()
        self._session_factory = session_factory or SessionLocal
        self._ttl_s = ttl_s if ttl_s is not None else settings.policy_cache_ttl_s
        self._timeout_ms = timeout_ms if timeout_ms is not None else settings.policy_refresh_timeout_ms
        self._time = time_provider or time.monotonic
        self._entries: dict[str, _CacheEntry] = {}

    async def _load(self, endpoint: str) -> PolicySnapshot:
        async with self._session_factory() as session:
            row = await policies_repo.get_policy(session, endpoint)
        if row is None:
            logger.info("policy_missing endpoint=%s using_default=true", endpoint)
            return default_policy(endpoint)
        return snapshot_from_row(row)

    async def get_policy(self, endpoint: str) -> PolicySnapshot:
        now = self._time()
        entry = self._entries.get(endpoint)
        if entry is not None and entry.expires_at > now:
            return entry.policy
        try:
            policy = await asyncio.wait_for(self._load(endpoint), timeout=self._timeout_ms / 1000.0)
        except (SQLAlchemyError, asyncio.TimeoutError, TimeoutError, OSError) as exc:
            # Do not cache the fallback; the next request retries the store.
            increment_counter("policy_refresh_failures_total")
            logger.warning("policy_refresh_failed endpoint=%s", endpoint, exc_info=exc)
            return default_policy(endpoint)
        self._entries[endpoint] = _CacheEntry(policy=policy, expires_at=now + self._ttl_s)
        return policy

    def invalidate(self, endpoint: str | None = None) -> None:
        if endpoint is None:
            self._entries.clear()
        else:
            self._entries.pop(endpoint, None)
