from __future__ import annotations

from dataclasses import dataclass
import logging
from uuid import uuid4

from flowguard.core.errors import CacheUnavailableError, LockUnavailableError
from flowguard.services.counter import KeyValueCache, bounded


logger = logging.getLogger(__name__)


@dataclass(slots=True)
class DistributedLock:
    key: str
    token: str
    ttl_s: int
    redis: KeyValueCache


async def acquire_lock(
    redis: KeyValueCache,
    *,
    key: str,
    ttl_s: int,
    timeout_ms: int,
) -> DistributedLock | None:
    """Try to take ``key`` with ``SET NX EX``.

    Returns ``None`` when another holder owns the key and raises
    ``LockUnavailableError`` when the lock store cannot be reached, so callers
    can decide whether to run without exclusion.
    """
    token = uuid4().hex
    ttl = max(1, int(ttl_s))
    try:
        acquired = await bounded(redis.set(key, token, ex=ttl, nx=True), timeout_ms=timeout_ms)
    except CacheUnavailableError as exc:
        raise LockUnavailableError(f"lock store unavailable for {key}") from exc
    if not acquired:
        return None
    return DistributedLock(key=key, token=token, ttl_s=ttl, redis=redis)


async def release_lock(lock: DistributedLock, *, timeout_ms: int) -> bool:
    # Release only if this holder still owns the token so an expired-and-retaken lock is not clobbered.
    try:
        current = await bounded(lock.redis.get(lock.key), timeout_ms=timeout_ms)
        value = current.decode("utf-8") if isinstance(current, (bytes, bytearray)) else str(current or "")
        if value != lock.token:
            return False
        await bounded(lock.redis.delete(lock.key), timeout_ms=timeout_ms)
        return True
    except CacheUnavailableError:
        # TTL expiry releases the lock eventually.
        logger.warning("lock_release_failed key=%s", lock.key)
        return False
