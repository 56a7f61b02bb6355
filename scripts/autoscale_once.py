from __future__ import annotations

import asyncio
import json

from flowguard.core.logging import configure_logging
from flowguard.workers.control_worker import run_autoscaling_once


async def _main() -> None:
    # Run a single autoscaling cycle, e.g. from a cron entry.
    configure_logging()
    summary = await run_autoscaling_once()
    print(json.dumps(summary, indent=2, sort_keys=True))


if __name__ == "__main__":
    asyncio.run(_main())
