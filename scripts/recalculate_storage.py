from __future__ import annotations

import argparse
import asyncio

from storagegate.core.logging import configure_logging
from storagegate.persistence.db import SessionLocal
from storagegate.services.maintenance import run_maintenance_task
from storagegate.services.quota_ledger import QuotaLedger


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Recalculate cached storage usage from file records")
    parser.add_argument("--tenant", default=None, help="Single tenant id; omit to sweep all tenants")
    return parser


async def _recalculate(args: argparse.Namespace) -> None:
    if args.tenant is None:
        recalculated = await run_maintenance_task("recalculate_storage")
        print(f"recalculated_tenants={recalculated}")
        return
    async with SessionLocal() as session:
        used = await QuotaLedger().recalculate(session, args.tenant)
    print(f"tenant_id={args.tenant} storage_used_gb={used}")


if __name__ == "__main__":
    configure_logging()
    asyncio.run(_recalculate(_build_parser().parse_args()))
