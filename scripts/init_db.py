from __future__ import annotations

import asyncio

from flowguard.persistence.db import create_schema, engine


async def _main() -> None:
    # Development bootstrap; production schemas are managed outside this package.
    await create_schema()
    await engine.dispose()
    print("schema_created=true")


if __name__ == "__main__":
    asyncio.run(_main())
