from __future__ import annotations

import asyncio
from dataclasses import dataclass
import logging
from typing import Any, Awaitable, Protocol, TypeVar

from redis.asyncio import Redis
from redis.exceptions import RedisError

from flowguard.core.config import get_settings
from flowguard.core.errors import CacheUnavailableError


logger = logging.getLogger(__name__)

T = TypeVar("T")

# Failures that mean "the cache is not answering" rather than a programming error.
CacheFailure = (RedisError, asyncio.TimeoutError, TimeoutError, OSError)


class KeyValueCache(Protocol):
    # Subset of the Redis command set the control plane depends on.
    async def set(self, name: str, value: Any, ex: int | None = None, nx: bool = False) -> Any:
        ...

    async def get(self, name: str) -> Any:
        ...

    async def incr(self, name: str) -> int:
        ...

    async def ttl(self, name: str) -> int:
        ...

    async def expire(self, name: str, time: int) -> Any:
        ...

    async def delete(self, *names: str) -> int:
        ...

    async def ping(self) -> Any:
        ...


@dataclass(frozen=True)
class CounterResult:
    count: int
    ttl_remaining: int
    # True when this call opened a new window (count was set to 1).
    initialized: bool


_redis_pool: Redis | None = None
_redis_loop: asyncio.AbstractEventLoop | None = None
_redis_lock = asyncio.Lock()


async def get_redis() -> Redis:
    # Cache Redis connections per event loop to avoid reconnecting per request.
    global _redis_pool, _redis_loop
    current_loop = asyncio.get_running_loop()
    if _redis_pool is not None and _redis_loop == current_loop:
        return _redis_pool
    if _redis_pool is not None and _redis_loop != current_loop:
        _redis_pool = None
    async with _redis_lock:
        if _redis_pool is None:
            settings = get_settings()
            _redis_pool = Redis.from_url(
                settings.redis_url,
                encoding="utf-8",
                decode_responses=True,
            )
            _redis_loop = current_loop
    return _redis_pool


def reset_redis_state() -> None:
    # Drop cached connections for deterministic test setup.
    global _redis_pool, _redis_loop
    _redis_pool = None
    _redis_loop = None


async def bounded(awaitable: Awaitable[T], *, timeout_ms: int) -> T:
    # Every cache call carries a timeout; callers map the failure to their documented fallback.
    try:
        return await asyncio.wait_for(awaitable, timeout=max(1, timeout_ms) / 1000.0)
    except CacheFailure as exc:
        raise CacheUnavailableError(f"key-value cache unavailable: {exc!r}") from exc


class RedisCounter:
    """Atomic increment-with-expiry over the key-value cache.

    A window opens with ``SET key 1 NX EX window``. Subsequent calls ``INCR``
    the key, which is linearizable per key, and read back its TTL. If the key
    expired between the failed ``SET NX`` and the ``INCR``, Redis recreates it
    without an expiry; the counter restores the TTL and treats the call as the
    start of a new window, so no key ever outlives its window.
    """

    def __init__(self, *, redis: KeyValueCache | None = None, timeout_ms: int | None = None) -> None:
        self._redis = redis
        self._timeout_ms = timeout_ms

    async def _client(self) -> KeyValueCache:
        if self._redis is not None:
            return self._redis
        try:
            return await get_redis()
        except CacheFailure as exc:
            raise CacheUnavailableError("key-value cache unavailable") from exc

    def _timeout(self) -> int:
        if self._timeout_ms is not None:
            return self._timeout_ms
        return get_settings().counter_timeout_ms

    async def increment_or_init(self, key: str, window_seconds: int) -> CounterResult:
        window = max(1, int(window_seconds))
        timeout_ms = self._timeout()
        redis = await self._client()

        created = await bounded(redis.set(key, 1, ex=window, nx=True), timeout_ms=timeout_ms)
        if created:
            return CounterResult(count=1, ttl_remaining=window, initialized=True)

        count = int(await bounded(redis.incr(key), timeout_ms=timeout_ms))
        ttl = int(await bounded(redis.ttl(key), timeout_ms=timeout_ms))
        if ttl < 0:
            # INCR recreated an expired key without expiry.
            await bounded(redis.expire(key, window), timeout_ms=timeout_ms)
            ttl = window
        return CounterResult(count=count, ttl_remaining=ttl, initialized=count == 1)
