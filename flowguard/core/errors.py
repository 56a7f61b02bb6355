from __future__ import annotations


class FlowguardError(Exception):
    """Base error for flowguard."""


class CacheUnavailableError(FlowguardError):
    """Key-value cache unreachable or timed out."""


class StoreUnavailableError(FlowguardError):
    """Relational store unreachable for a read the operation cannot proceed without."""


class LockUnavailableError(CacheUnavailableError):
    """Lock store unreachable; callers may proceed without exclusion."""
