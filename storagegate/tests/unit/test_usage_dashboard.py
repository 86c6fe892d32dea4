from __future__ import annotations

import pytest

from storagegate.core.errors import TenantNotFound
from storagegate.domain.models import DownloadHistory
from storagegate.persistence.db import SessionLocal
from storagegate.services.egress_meter import EgressMeter
from storagegate.services.usage_dashboard import download_history, system_stats, tenant_dashboard
from storagegate.tests.utils.seed import GB, fixed_clock, seed_file, seed_folder, seed_tenant, utc


@pytest.mark.asyncio
async def test_tenant_dashboard_reports_chargeable_egress() -> None:
    tenant_id = await seed_tenant(storage_quota_gb="100.00", storage_used_gb="25.00", egress_free_limit_gb="10.00")
    await seed_folder(tenant_id, name="docs")
    await seed_file(tenant_id)
    await seed_file(tenant_id, name="pending.bin", confirmed=False)
    clock = fixed_clock(utc(2026, 10, 5))
    async with SessionLocal() as session:
        await EgressMeter(time_provider=clock).record(session, tenant_id, 12 * GB)
        dashboard = await tenant_dashboard(session, tenant_id, time_provider=clock)

    assert dashboard["month"] == "2026-10"
    assert dashboard["storage"] == {"quota_gb": 100.0, "used_gb": 25.0, "percent": 25.0}
    assert dashboard["egress"]["used_gb"] == 12.0
    assert dashboard["egress"]["percent"] == 120.0
    assert dashboard["egress"]["chargeable_gb"] == 2.0
    assert dashboard["files"] == 1
    assert dashboard["folders"] == 1
    assert dashboard["unread_alerts"] == 0


@pytest.mark.asyncio
async def test_tenant_dashboard_unknown_tenant() -> None:
    async with SessionLocal() as session:
        with pytest.raises(TenantNotFound):
            await tenant_dashboard(session, "t-missing")


@pytest.mark.asyncio
async def test_system_stats_aggregates_across_tenants() -> None:
    active = await seed_tenant(storage_used_gb="10.00")
    await seed_tenant(status="suspended", storage_used_gb="5.50")
    await seed_file(active)
    clock = fixed_clock(utc(2026, 10, 5))
    async with SessionLocal() as session:
        await EgressMeter(time_provider=clock).record(session, active, 3 * GB)
        stats = await system_stats(session, time_provider=clock)
    assert stats["tenants"] == {"total": 2, "active": 1, "suspended": 1}
    assert stats["total_storage_gb"] == 15.5
    assert stats["total_egress_gb"] == 3.0
    assert stats["total_files"] == 1


@pytest.mark.asyncio
async def test_download_history_is_paged_and_clamped() -> None:
    tenant_id = await seed_tenant()
    async with SessionLocal() as session:
        for index in range(3):
            session.add(
                DownloadHistory(
                    id=f"dl-{index}",
                    tenant_id=tenant_id,
                    file_name=f"file-{index}.bin",
                    file_size_bytes=index,
                    downloaded_at=utc(2026, 10, index + 1),
                )
            )
        await session.commit()
        page = await download_history(session, tenant_id, limit=2, offset=0)
        clamped = await download_history(session, tenant_id, limit=10_000, offset=-4)
    assert page["total"] == 3
    assert [item["id"] for item in page["items"]] == ["dl-2", "dl-1"]
    assert clamped["limit"] == 200
    assert clamped["offset"] == 0
