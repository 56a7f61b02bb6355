from __future__ import annotations

import asyncio

from flowguard.workers.control_worker import main


if __name__ == "__main__":
    # Boot the control loops without an external scheduler.
    asyncio.run(main())
