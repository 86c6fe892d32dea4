from __future__ import annotations

import asyncio

from storagegate.core.logging import configure_logging
from storagegate.services.maintenance import run_maintenance_task


async def reset() -> None:
    deleted = await run_maintenance_task("reset_monthly_alerts")
    print(f"deleted_egress_alerts={deleted}")


if __name__ == "__main__":
    configure_logging()
    asyncio.run(reset())
