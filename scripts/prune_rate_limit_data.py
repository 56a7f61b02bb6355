from __future__ import annotations

import argparse
import asyncio

from flowguard.persistence.db import SessionLocal
from flowguard.services.maintenance import run_maintenance_task


_TASKS = ("prune_all", "prune_rate_counters", "prune_traffic_events", "prune_rejections", "prune_status_events")


async def prune(task: str) -> None:
    async with SessionLocal() as session:
        deleted = await run_maintenance_task(session, task)  # type: ignore[arg-type]
        await session.commit()
        for name, count in deleted.items():
            print(f"pruned_{name}={count}")


def main() -> None:
    parser = argparse.ArgumentParser(description="Prune expired rate limit counters and aged audit rows")
    parser.add_argument("--task", choices=_TASKS, default="prune_all")
    args = parser.parse_args()
    asyncio.run(prune(args.task))


if __name__ == "__main__":
    main()
