from __future__ import annotations

import asyncio

from storagegate.core.logging import configure_logging
from storagegate.services.maintenance import run_maintenance_task


async def prune() -> None:
    deleted = await run_maintenance_task("prune_sessions")
    print(f"pruned_access_sessions={deleted}")


if __name__ == "__main__":
    configure_logging()
    asyncio.run(prune())
