from __future__ import annotations

import asyncio
from dataclasses import dataclass

from flowguard.persistence.db import SessionLocal
from flowguard.persistence.repos.policies import upsert_policy


@dataclass(frozen=True)
class SeedPolicy:
    endpoint: str
    base_limit: int
    burst_capacity: int
    cooldown_seconds: int
    tier_multipliers: dict[str, float]


# Paid tiers scale both the sustained limit and the burst.
_TIERS = {"free": 1.0, "pro": 2.0, "enterprise": 5.0}

SEED_POLICIES = (
    SeedPolicy("api/analyze", 30, 10, 60, _TIERS),
    SeedPolicy("api/reports", 20, 5, 60, _TIERS),
    SeedPolicy("api/workers", 120, 30, 60, {}),
    SeedPolicy("api", 60, 10, 60, _TIERS),
)


async def seed() -> None:
    async with SessionLocal() as session:
        for policy in SEED_POLICIES:
            await upsert_policy(
                session,
                endpoint=policy.endpoint,
                base_limit=policy.base_limit,
                burst_capacity=policy.burst_capacity,
                cooldown_seconds=policy.cooldown_seconds,
                tier_multipliers=policy.tier_multipliers,
            )
        await session.commit()
    print(f"seeded_policies={len(SEED_POLICIES)}")


if __name__ == "__main__":
    asyncio.run(seed())
