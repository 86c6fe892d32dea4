from __future__ import annotations

from decimal import Decimal

import pytest

from storagegate.core.errors import TenantNotFound
from storagegate.domain.models import Tenant
from storagegate.persistence.db import SessionLocal
from storagegate.services.quota_ledger import QuotaLedger, bytes_to_gb, percent_of
from storagegate.tests.utils.seed import GB, seed_file, seed_folder, seed_tenant


def test_bytes_to_gb_rounds_half_up_to_two_places() -> None:
    assert bytes_to_gb(GB) == Decimal("1.00")
    assert bytes_to_gb(GB // 200 + 1) == Decimal("0.01")
    assert bytes_to_gb(GB // 200 - 1) == Decimal("0.00")
    assert bytes_to_gb(0) == Decimal("0.00")


def test_percent_of_zero_limit_is_zero() -> None:
    assert percent_of(Decimal("5"), Decimal("0")) == Decimal("0.00")
    assert percent_of(Decimal("50"), Decimal("200")) == Decimal("25.00")


@pytest.mark.asyncio
async def test_recalculate_counts_only_confirmed_live_files() -> None:
    tenant_id = await seed_tenant()
    folder = await seed_folder(tenant_id, name="docs")
    await seed_file(tenant_id, name="a.bin", size_bytes=2 * GB, parent=folder)
    await seed_file(tenant_id, name="b.bin", size_bytes=GB)
    await seed_file(tenant_id, name="pending.bin", size_bytes=5 * GB, confirmed=False)
    await seed_file(tenant_id, name="gone.bin", size_bytes=7 * GB, deleted=True)

    ledger = QuotaLedger()
    async with SessionLocal() as session:
        used = await ledger.recalculate(session, tenant_id)
    assert used == Decimal("3.00")

    async with SessionLocal() as session:
        tenant = await session.get(Tenant, tenant_id)
        assert tenant.storage_used_gb == Decimal("3.00")


@pytest.mark.asyncio
async def test_recalculate_is_idempotent_and_repairs_drift() -> None:
    tenant_id = await seed_tenant(storage_used_gb="42.00")
    await seed_file(tenant_id, size_bytes=GB)

    ledger = QuotaLedger()
    async with SessionLocal() as session:
        first = await ledger.recalculate(session, tenant_id)
        second = await ledger.recalculate(session, tenant_id)
    assert first == second == Decimal("1.00")


@pytest.mark.asyncio
async def test_recalculate_with_no_files_is_zero() -> None:
    tenant_id = await seed_tenant(storage_used_gb="9.00")
    await seed_file(tenant_id, size_bytes=GB, deleted=True)

    async with SessionLocal() as session:
        used = await QuotaLedger().recalculate(session, tenant_id)
    assert used == Decimal("0.00")


@pytest.mark.asyncio
async def test_negative_aggregate_is_clamped_to_zero() -> None:
    tenant_id = await seed_tenant(storage_used_gb="3.00")
    await seed_file(tenant_id, name="corrupt.bin", size_bytes=-4 * GB)

    async with SessionLocal() as session:
        used = await QuotaLedger().recalculate(session, tenant_id)
    assert used == Decimal("0.00")


@pytest.mark.asyncio
async def test_recalculate_unknown_tenant() -> None:
    async with SessionLocal() as session:
        with pytest.raises(TenantNotFound):
            await QuotaLedger().recalculate(session, "t-missing")


@pytest.mark.asyncio
async def test_would_exceed_allows_exact_fit() -> None:
    tenant_id = await seed_tenant(storage_quota_gb="100.00", storage_used_gb="95.00")
    ledger = QuotaLedger()
    async with SessionLocal() as session:
        assert await ledger.would_exceed(session, tenant_id, 5 * GB) is False
        assert await ledger.would_exceed(session, tenant_id, 5 * GB + 1) is True
        assert await ledger.would_exceed(session, tenant_id, 0) is False


@pytest.mark.asyncio
async def test_snapshot_reports_remaining_and_percent() -> None:
    tenant_id = await seed_tenant(storage_quota_gb="200.00", storage_used_gb="50.00")
    async with SessionLocal() as session:
        snap = await QuotaLedger().snapshot(session, tenant_id)
    assert snap.remaining_gb == Decimal("150.00")
    assert snap.percent == Decimal("25.00")
