from __future__ import annotations

from datetime import timedelta
from decimal import Decimal

import pytest
from sqlalchemy import func, select

from storagegate.domain.models import AccessSession, ActivityLog, Tenant
from storagegate.persistence.db import SessionLocal
from storagegate.services.authz import issue_access_session
from storagegate.services.maintenance import (
    prune_expired_sessions,
    recalculate_all_tenants,
    run_maintenance_task,
)
from storagegate.tests.utils.seed import GB, fixed_clock, seed_file, seed_tenant, utc


@pytest.mark.asyncio
async def test_prune_keeps_sessions_inside_retention_window() -> None:
    start = utc(2026, 9, 1)
    async with SessionLocal() as session:
        await issue_access_session(
            session, subject_id="old", role="admin", tenant_id=None, ttl_minutes=30, time_provider=fixed_clock(start)
        )
        await issue_access_session(
            session,
            subject_id="recent",
            role="admin",
            tenant_id=None,
            ttl_minutes=30,
            time_provider=fixed_clock(start + timedelta(hours=20)),
        )

    async with SessionLocal() as session:
        deleted = await prune_expired_sessions(session, time_provider=fixed_clock(start + timedelta(hours=25)))
        await session.commit()
        remaining = await session.execute(select(AccessSession.subject_id))
        cleanups = await session.execute(
            select(func.count()).select_from(ActivityLog).where(ActivityLog.action == "session_cleanup")
        )
    assert deleted == 1
    assert remaining.scalars().all() == ["recent"]
    assert cleanups.scalar() == 1


@pytest.mark.asyncio
async def test_recalculate_all_tenants_repairs_each_tenant() -> None:
    first = await seed_tenant(storage_used_gb="50.00")
    second = await seed_tenant(storage_used_gb="0.00")
    await seed_file(second, size_bytes=4 * GB)

    async with SessionLocal() as session:
        assert await recalculate_all_tenants(session) == 2
    async with SessionLocal() as session:
        assert (await session.get(Tenant, first)).storage_used_gb == Decimal("0.00")
        assert (await session.get(Tenant, second)).storage_used_gb == Decimal("4.00")


@pytest.mark.asyncio
async def test_run_maintenance_task_dispatches_by_name() -> None:
    await seed_tenant()
    assert await run_maintenance_task("recalculate_storage") == 1
    assert await run_maintenance_task("prune_sessions") == 0
    assert await run_maintenance_task("reset_monthly_alerts") == 0
    with pytest.raises(ValueError):
        await run_maintenance_task("vacuum")  # type: ignore[arg-type]
