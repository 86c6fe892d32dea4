from __future__ import annotations

import pytest

from storagegate.core.errors import (
    AccountSuspended,
    DownloadLimitExceeded,
    FileNotFound,
    QuotaExceeded,
    StorageNotConfigured,
    TenantNotFound,
)
from storagegate.persistence.db import SessionLocal
from storagegate.services import system_settings
from storagegate.services.access_gate import AccessGate
from storagegate.services.egress_meter import EgressMeter
from storagegate.services.quota_ledger import QuotaLedger
from storagegate.tests.utils.seed import GB, fixed_clock, seed_file, seed_folder, seed_tenant, utc


def _gate() -> tuple[AccessGate, EgressMeter]:
    clock = fixed_clock(utc(2026, 6, 15))
    meter = EgressMeter(time_provider=clock)
    return AccessGate(time_provider=clock, quota_ledger=QuotaLedger(), egress_meter=meter), meter


@pytest.mark.asyncio
async def test_upload_over_quota_is_denied_with_details() -> None:
    tenant_id = await seed_tenant(storage_quota_gb="100.00", storage_used_gb="95.00")
    gate, _ = _gate()
    async with SessionLocal() as session:
        with pytest.raises(QuotaExceeded) as excinfo:
            await gate.authorize_upload(session, tenant_id, file_name="big.iso", size_bytes=10 * GB)
    assert excinfo.value.details == {"used": "95.00", "limit": "100.00", "requested": "10.00"}


@pytest.mark.asyncio
async def test_upload_grant_reserves_prefixed_key() -> None:
    tenant_id = await seed_tenant(bucket_prefix="/acme//backups/")
    folder = await seed_folder(tenant_id, name="photos")
    gate, _ = _gate()
    async with SessionLocal() as session:
        grant = await gate.authorize_upload(
            session, tenant_id, file_name="cat.jpg", size_bytes=GB, parent_id=folder.id
        )
    assert grant.logical_path == "photos/cat.jpg"
    assert grant.storage_key == "acme/backups/photos/cat.jpg"
    assert grant.parent_id == folder.id


@pytest.mark.asyncio
async def test_upload_falls_back_to_tenant_path_prefix() -> None:
    tenant_id = await seed_tenant(path_prefix="tenants/acme")
    gate, _ = _gate()
    async with SessionLocal() as session:
        grant = await gate.authorize_upload(session, tenant_id, file_name="a.txt", size_bytes=1)
    assert grant.storage_key == "tenants/acme/a.txt"


@pytest.mark.asyncio
async def test_upload_check_order() -> None:
    gate, _ = _gate()
    # Suspension is reported before missing storage and quota.
    suspended = await seed_tenant(status="suspended", storage_config=False, storage_used_gb="100.00")
    # Missing storage is reported before quota.
    unconfigured = await seed_tenant(verified=False, storage_used_gb="100.00")
    # Quota is reported before an unknown parent folder.
    full = await seed_tenant(storage_used_gb="100.00")
    active = await seed_tenant()
    async with SessionLocal() as session:
        with pytest.raises(TenantNotFound):
            await gate.authorize_upload(session, "t-missing", file_name="a", size_bytes=1)
        with pytest.raises(AccountSuspended):
            await gate.authorize_upload(session, suspended, file_name="a", size_bytes=GB)
        with pytest.raises(StorageNotConfigured):
            await gate.authorize_upload(session, unconfigured, file_name="a", size_bytes=GB)
        with pytest.raises(QuotaExceeded):
            await gate.authorize_upload(session, full, file_name="a", size_bytes=GB, parent_id="nope")
        with pytest.raises(FileNotFound):
            await gate.authorize_upload(session, active, file_name="a", size_bytes=GB, parent_id="nope")


@pytest.mark.asyncio
async def test_download_of_foreign_or_unconfirmed_file_is_not_found() -> None:
    owner = await seed_tenant()
    other = await seed_tenant()
    record = await seed_file(owner)
    pending = await seed_file(owner, name="pending.bin", confirmed=False)
    folder = await seed_folder(owner, name="docs")
    gate, _ = _gate()
    async with SessionLocal() as session:
        for tenant_id, file_id in [(other, record.id), (owner, pending.id), (owner, folder.id)]:
            with pytest.raises(FileNotFound):
                await gate.authorize_download(session, tenant_id, file_id)
        grant = await gate.authorize_download(session, owner, record.id)
    assert grant.file.id == record.id


@pytest.mark.asyncio
async def test_download_blocked_only_when_setting_enabled() -> None:
    tenant_id = await seed_tenant(egress_free_limit_gb="10.00")
    record = await seed_file(tenant_id)
    gate, meter = _gate()
    async with SessionLocal() as session:
        await meter.record(session, tenant_id, 10 * GB)
        # Default is off: overage is billable, not blocked.
        await gate.authorize_download(session, tenant_id, record.id)

        await system_settings.put_setting(session, system_settings.BLOCK_DOWNLOADS_ON_OVERAGE, True)
        with pytest.raises(DownloadLimitExceeded) as excinfo:
            await gate.authorize_download(session, tenant_id, record.id)
    assert excinfo.value.details == {"used": "10.0000", "limit": "10.00"}


@pytest.mark.asyncio
async def test_download_below_limit_passes_with_block_enabled() -> None:
    tenant_id = await seed_tenant(egress_free_limit_gb="10.00")
    record = await seed_file(tenant_id)
    gate, meter = _gate()
    async with SessionLocal() as session:
        await system_settings.put_setting(session, system_settings.BLOCK_DOWNLOADS_ON_OVERAGE, True)
        await meter.record(session, tenant_id, 9 * GB)
        grant = await gate.authorize_download(session, tenant_id, record.id)
    assert grant.tenant.id == tenant_id


@pytest.mark.asyncio
async def test_download_check_order() -> None:
    gate, meter = _gate()
    suspended = await seed_tenant(status="suspended", egress_free_limit_gb="0.00")
    suspended_file = await seed_file(suspended)
    unconfigured = await seed_tenant(storage_config=False)
    unconfigured_file = await seed_file(unconfigured)
    async with SessionLocal() as session:
        await system_settings.put_setting(session, system_settings.BLOCK_DOWNLOADS_ON_OVERAGE, True)
        with pytest.raises(AccountSuspended):
            await gate.authorize_download(session, suspended, suspended_file.id)
        with pytest.raises(StorageNotConfigured):
            await gate.authorize_download(session, unconfigured, unconfigured_file.id)
