from __future__ import annotations

from decimal import Decimal

import pytest
from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError

from storagegate.core.errors import (
    FileNotFound,
    FileTreeCycleError,
    InvalidEntryName,
    PathConflict,
    QuotaExceeded,
    StorageBackendError,
    StorageNotConfigured,
)
from storagegate.domain.models import (
    ALERT_EGRESS_LIMIT,
    ALERT_STORAGE_WARNING,
    FILE_KIND_FILE,
    ActivityLog,
    Alert,
    DownloadHistory,
    EgressRecord,
    FileRecord,
    StorageConfig,
    Tenant,
)
from storagegate.persistence.db import SessionLocal
from storagegate.services.usage_accounting import UsageAccountingService
from storagegate.tests.utils.fake_storage import FakeObjectStorage
from storagegate.tests.utils.seed import GB, fixed_clock, seed_file, seed_folder, seed_tenant, utc


def _service(storage: FakeObjectStorage) -> UsageAccountingService:
    return UsageAccountingService(object_storage=storage, time_provider=fixed_clock(utc(2026, 7, 14)))


async def _used_gb(tenant_id: str) -> Decimal:
    async with SessionLocal() as session:
        tenant = await session.get(Tenant, tenant_id)
        return tenant.storage_used_gb


@pytest.mark.asyncio
async def test_upload_counts_only_after_confirmation(fake_storage: FakeObjectStorage) -> None:
    tenant_id = await seed_tenant(storage_quota_gb="10.00")
    service = _service(fake_storage)
    async with SessionLocal() as session:
        ticket = await service.initiate_upload(
            session, tenant_id, file_name="backup.tar", size_bytes=9 * GB, mime_type="application/x-tar"
        )
    assert ticket.storage_key == "backup.tar"
    assert "op=put" in ticket.upload_url
    assert await _used_gb(tenant_id) == Decimal("0.00")

    async with SessionLocal() as session:
        record = await service.confirm_upload(session, tenant_id, ticket.file_id, etag='"abc"')
        again = await service.confirm_upload(session, tenant_id, ticket.file_id, etag='"other"')
    assert record.confirmed_at is not None
    assert again.etag == '"abc"'
    assert await _used_gb(tenant_id) == Decimal("9.00")

    async with SessionLocal() as session:
        alerts = (await session.execute(select(Alert).where(Alert.tenant_id == tenant_id))).scalars().all()
    assert [(alert.kind, alert.threshold_percent) for alert in alerts] == [(ALERT_STORAGE_WARNING, 90)]


@pytest.mark.asyncio
async def test_quota_is_checked_against_confirmed_usage(fake_storage: FakeObjectStorage) -> None:
    tenant_id = await seed_tenant(storage_quota_gb="10.00")
    service = _service(fake_storage)
    async with SessionLocal() as session:
        ticket = await service.initiate_upload(session, tenant_id, file_name="a.bin", size_bytes=6 * GB)
        await service.confirm_upload(session, tenant_id, ticket.file_id)
        with pytest.raises(QuotaExceeded):
            await service.initiate_upload(session, tenant_id, file_name="b.bin", size_bytes=5 * GB)
    assert fake_storage.put_calls == ["a.bin"]


@pytest.mark.asyncio
async def test_failed_presign_creates_no_record(fake_storage: FakeObjectStorage) -> None:
    tenant_id = await seed_tenant()
    fake_storage.fail_presign = True
    service = _service(fake_storage)
    async with SessionLocal() as session:
        with pytest.raises(StorageBackendError):
            await service.initiate_upload(session, tenant_id, file_name="a.bin", size_bytes=GB)
        count = await session.execute(select(func.count()).select_from(FileRecord))
    assert count.scalar() == 0


@pytest.mark.asyncio
async def test_download_records_egress_and_history(fake_storage: FakeObjectStorage) -> None:
    tenant_id = await seed_tenant(egress_free_limit_gb="2.00")
    record = await seed_file(tenant_id, size_bytes=3 * GB)
    service = _service(fake_storage)
    async with SessionLocal() as session:
        ticket = await service.issue_download(
            session, tenant_id, record.id, request_context={"ip_address": "10.0.0.8"}
        )
    assert ticket.egress_used_gb == Decimal("3.0000")
    assert ticket.file_name == "report.pdf"
    assert "op=get" in ticket.download_url

    async with SessionLocal() as session:
        history = (await session.execute(select(DownloadHistory))).scalars().all()
        egress = (await session.execute(select(EgressRecord))).scalars().one()
        alerts = (await session.execute(select(Alert))).scalars().all()
    assert [(row.file_id, row.ip_address) for row in history] == [(record.id, "10.0.0.8")]
    assert egress.month_key == "2026-07"
    assert [alert.kind for alert in alerts] == [ALERT_EGRESS_LIMIT]


@pytest.mark.asyncio
async def test_failed_download_presign_counts_no_egress(fake_storage: FakeObjectStorage) -> None:
    tenant_id = await seed_tenant()
    record = await seed_file(tenant_id)
    fake_storage.fail_presign = True
    service = _service(fake_storage)
    async with SessionLocal() as session:
        with pytest.raises(StorageBackendError):
            await service.issue_download(session, tenant_id, record.id)
        egress = await session.execute(select(func.count()).select_from(EgressRecord))
        history = await session.execute(select(func.count()).select_from(DownloadHistory))
    assert egress.scalar() == 0
    assert history.scalar() == 0


@pytest.mark.asyncio
async def test_delete_folder_cascades_and_recalculates(fake_storage: FakeObjectStorage) -> None:
    tenant_id = await seed_tenant(storage_used_gb="3.00")
    docs = await seed_folder(tenant_id, name="docs")
    nested = await seed_folder(tenant_id, name="2026", parent=docs)
    first = await seed_file(tenant_id, name="a.pdf", size_bytes=GB, parent=docs)
    second = await seed_file(tenant_id, name="b.pdf", size_bytes=2 * GB, parent=nested)
    service = _service(fake_storage)
    async with SessionLocal() as session:
        outcome = await service.delete_files(session, tenant_id, [docs.id, first.id])

    assert set(outcome.deleted) == {docs.id, nested.id, first.id, second.id}
    assert outcome.failed == []
    assert sorted(fake_storage.deleted) == sorted([first.storage_key, second.storage_key])
    assert await _used_gb(tenant_id) == Decimal("0.00")


@pytest.mark.asyncio
async def test_delete_partial_failure_keeps_failed_branch(fake_storage: FakeObjectStorage) -> None:
    tenant_id = await seed_tenant()
    docs = await seed_folder(tenant_id, name="docs")
    archive = await seed_folder(tenant_id, name="archive", parent=docs)
    stuck = await seed_file(tenant_id, name="stuck.bin", size_bytes=2 * GB, parent=archive)
    fine = await seed_file(tenant_id, name="fine.bin", size_bytes=GB, parent=docs)
    fake_storage.fail_delete_keys.add(stuck.storage_key)
    service = _service(fake_storage)
    async with SessionLocal() as session:
        outcome = await service.delete_files(session, tenant_id, [docs.id, "missing-id"])

    assert outcome.deleted == [fine.id]
    assert {(failure.file_id, failure.reason) for failure in outcome.failed} == {
        ("missing-id", "not_found"),
        (stuck.id, "storage_error"),
    }
    async with SessionLocal() as session:
        live = await session.execute(
            select(FileRecord.id).where(FileRecord.tenant_id == tenant_id, FileRecord.deleted_at.is_(None))
        )
    assert set(live.scalars().all()) == {docs.id, archive.id, stuck.id}
    assert await _used_gb(tenant_id) == Decimal("2.00")


@pytest.mark.asyncio
async def test_create_and_move_rewrites_paths(fake_storage: FakeObjectStorage) -> None:
    tenant_id = await seed_tenant()
    service = _service(fake_storage)
    async with SessionLocal() as session:
        docs = await service.create_folder(session, tenant_id, name="docs")
        archive = await service.create_folder(session, tenant_id, name="archive")
        reports = await service.create_folder(session, tenant_id, name="reports", parent_id=docs.id)
    record = await seed_file(tenant_id, name="q1.pdf", parent=reports)

    async with SessionLocal() as session:
        moved = await service.move_file(session, tenant_id, docs.id, new_parent_id=archive.id)
        assert moved.path == "archive/docs"
        child = await session.get(FileRecord, record.id)
        assert child.path == "archive/docs/reports/q1.pdf"
        # Object keys are fixed at upload time.
        assert child.storage_key == record.storage_key


@pytest.mark.asyncio
async def test_move_into_own_subtree_is_rejected(fake_storage: FakeObjectStorage) -> None:
    tenant_id = await seed_tenant()
    docs = await seed_folder(tenant_id, name="docs")
    reports = await seed_folder(tenant_id, name="reports", parent=docs)
    service = _service(fake_storage)
    async with SessionLocal() as session:
        with pytest.raises(FileTreeCycleError):
            await service.move_file(session, tenant_id, docs.id, new_parent_id=reports.id)
        with pytest.raises(FileTreeCycleError):
            await service.move_file(session, tenant_id, docs.id, new_parent_id=docs.id)
        with pytest.raises(FileNotFound):
            await service.move_file(session, tenant_id, docs.id, new_parent_id="missing")


@pytest.mark.asyncio
async def test_second_upload_to_a_confirmed_path_conflicts(fake_storage: FakeObjectStorage) -> None:
    tenant_id = await seed_tenant()
    service = _service(fake_storage)
    async with SessionLocal() as session:
        first = await service.initiate_upload(session, tenant_id, file_name="a.txt", size_bytes=GB)
        await service.confirm_upload(session, tenant_id, first.file_id)
        with pytest.raises(PathConflict) as excinfo:
            await service.initiate_upload(session, tenant_id, file_name="a.txt", size_bytes=GB)
    assert excinfo.value.details["file_id"] == first.file_id
    assert fake_storage.put_calls == ["a.txt"]
    assert await _used_gb(tenant_id) == Decimal("1.00")


@pytest.mark.asyncio
async def test_reupload_replaces_an_unconfirmed_upload(fake_storage: FakeObjectStorage) -> None:
    tenant_id = await seed_tenant()
    service = _service(fake_storage)
    async with SessionLocal() as session:
        abandoned = await service.initiate_upload(session, tenant_id, file_name="a.txt", size_bytes=GB)
        retry = await service.initiate_upload(session, tenant_id, file_name="a.txt", size_bytes=2 * GB)
        await service.confirm_upload(session, tenant_id, retry.file_id)
        with pytest.raises(FileNotFound):
            await service.confirm_upload(session, tenant_id, abandoned.file_id)

    assert retry.file_id != abandoned.file_id
    assert retry.storage_key == abandoned.storage_key
    async with SessionLocal() as session:
        live = await session.execute(
            select(FileRecord.id).where(FileRecord.tenant_id == tenant_id, FileRecord.deleted_at.is_(None))
        )
    assert live.scalars().all() == [retry.file_id]
    assert await _used_gb(tenant_id) == Decimal("2.00")


@pytest.mark.asyncio
async def test_moved_file_keeps_its_key_reserved(fake_storage: FakeObjectStorage) -> None:
    tenant_id = await seed_tenant()
    service = _service(fake_storage)
    async with SessionLocal() as session:
        ticket = await service.initiate_upload(session, tenant_id, file_name="a.txt", size_bytes=GB)
        await service.confirm_upload(session, tenant_id, ticket.file_id)
        archive = await service.create_folder(session, tenant_id, name="archive")
        moved = await service.move_file(session, tenant_id, ticket.file_id, new_parent_id=archive.id)
        assert moved.path == "archive/a.txt"

        # The root path is free again, but its storage key still belongs to the moved file.
        with pytest.raises(PathConflict) as excinfo:
            await service.initiate_upload(session, tenant_id, file_name="a.txt", size_bytes=GB)
    assert excinfo.value.details["file_id"] == ticket.file_id
    assert fake_storage.put_calls == ["a.txt"]


@pytest.mark.asyncio
async def test_folder_and_move_destinations_must_be_free(fake_storage: FakeObjectStorage) -> None:
    tenant_id = await seed_tenant()
    service = _service(fake_storage)
    async with SessionLocal() as session:
        docs = await service.create_folder(session, tenant_id, name="docs")
        archive = await service.create_folder(session, tenant_id, name="archive")
        nested = await service.create_folder(session, tenant_id, name="docs", parent_id=archive.id)
        with pytest.raises(PathConflict):
            await service.create_folder(session, tenant_id, name=" docs ")
        with pytest.raises(PathConflict):
            await service.move_file(session, tenant_id, docs.id, new_parent_id=archive.id)
        # Moving to the current location is a no-op, not a conflict.
        same = await service.move_file(session, tenant_id, nested.id, new_parent_id=archive.id)
    assert same.path == "archive/docs"


@pytest.mark.asyncio
async def test_names_must_be_single_segments(fake_storage: FakeObjectStorage) -> None:
    tenant_id = await seed_tenant()
    service = _service(fake_storage)
    async with SessionLocal() as session:
        folder = await service.create_folder(session, tenant_id, name="x")
        nested = await service.initiate_upload(
            session, tenant_id, file_name="y", size_bytes=1, parent_id=folder.id
        )
        for bad_name in ["x/y", "/y", "..", "   "]:
            with pytest.raises(InvalidEntryName):
                await service.initiate_upload(session, tenant_id, file_name=bad_name, size_bytes=1)
        with pytest.raises(InvalidEntryName):
            await service.create_folder(session, tenant_id, name="a/b")
    assert nested.logical_path == "x/y"
    assert fake_storage.put_calls == ["x/y"]


@pytest.mark.asyncio
async def test_live_paths_are_unique_in_the_database() -> None:
    tenant_id = await seed_tenant()
    await seed_file(tenant_id, name="a.txt")
    with pytest.raises(IntegrityError):
        await seed_file(tenant_id, name="a.txt")
    # Soft-deleted rows keep their old path without blocking it.
    await seed_file(tenant_id, name="a.txt", deleted=True)
    await seed_file(await seed_tenant(), name="a.txt")


@pytest.mark.asyncio
async def test_bucket_stats_lists_tenant_prefix_only(fake_storage: FakeObjectStorage) -> None:
    tenant_id = await seed_tenant(path_prefix="tenants/acme")
    service = _service(fake_storage)
    async with SessionLocal() as session:
        ticket = await service.initiate_upload(session, tenant_id, file_name="a.bin", size_bytes=GB)
        await service.confirm_upload(session, tenant_id, ticket.file_id)
    fake_storage.objects["tenants/acme/orphan.bin"] = GB // 2
    fake_storage.objects["tenants/acme-old/other.bin"] = 5 * GB

    async with SessionLocal() as session:
        stats = await service.bucket_stats(session, tenant_id)
    assert ticket.storage_key == "tenants/acme/a.bin"
    assert stats.prefix == "tenants/acme"
    assert stats.bucket_name == "acme-bucket"
    assert stats.object_count == 2
    assert stats.object_bytes == GB + GB // 2
    assert stats.object_gb == Decimal("1.50")
    assert stats.storage_used_gb == Decimal("1.00")
    assert stats.drift_gb == Decimal("0.50")


@pytest.mark.asyncio
async def test_bucket_stats_requires_storage_config(fake_storage: FakeObjectStorage) -> None:
    tenant_id = await seed_tenant(storage_config=False)
    async with SessionLocal() as session:
        with pytest.raises(StorageNotConfigured):
            await _service(fake_storage).bucket_stats(session, tenant_id)


async def _owned_rows(tenant_id: str) -> dict[str, int]:
    counts: dict[str, int] = {}
    async with SessionLocal() as session:
        for model in (FileRecord, EgressRecord, Alert, DownloadHistory, StorageConfig):
            result = await session.execute(
                select(func.count()).select_from(model).where(model.tenant_id == tenant_id)
            )
            counts[model.__tablename__] = int(result.scalar() or 0)
    return counts


@pytest.mark.asyncio
async def test_delete_tenant_removes_objects_then_rows(fake_storage: FakeObjectStorage) -> None:
    tenant_id = await seed_tenant(egress_free_limit_gb="1.00")
    neighbour = await seed_tenant()
    kept = await seed_file(neighbour)
    service = _service(fake_storage)
    async with SessionLocal() as session:
        await service.create_folder(session, tenant_id, name="docs")
        ticket = await service.initiate_upload(session, tenant_id, file_name="a.bin", size_bytes=GB)
        await service.confirm_upload(session, tenant_id, ticket.file_id)
        await service.issue_download(session, tenant_id, ticket.file_id)
    before = await _owned_rows(tenant_id)
    assert all(before.values())

    async with SessionLocal() as session:
        removed = await service.delete_tenant(session, tenant_id, actor_id="ops")
    assert removed["objects_deleted"] == 1
    assert removed["tenants"] == 1
    assert fake_storage.deleted == [ticket.storage_key]
    assert set((await _owned_rows(tenant_id)).values()) == {0}

    async with SessionLocal() as session:
        assert await session.get(Tenant, tenant_id) is None
        assert (await session.get(FileRecord, kept.id)).kind == FILE_KIND_FILE
        audit = await session.execute(select(ActivityLog).where(ActivityLog.action == "tenant_deleted"))
        entry = audit.scalars().one()
    assert entry.tenant_id == tenant_id
    assert entry.actor_id == "ops"


@pytest.mark.asyncio
async def test_delete_tenant_is_kept_when_storage_refuses(fake_storage: FakeObjectStorage) -> None:
    tenant_id = await seed_tenant()
    service = _service(fake_storage)
    async with SessionLocal() as session:
        stuck = await service.initiate_upload(session, tenant_id, file_name="stuck.bin", size_bytes=GB)
        fine = await service.initiate_upload(session, tenant_id, file_name="fine.bin", size_bytes=GB)
    fake_storage.fail_delete_keys.add(stuck.storage_key)

    async with SessionLocal() as session:
        with pytest.raises(StorageBackendError) as excinfo:
            await service.delete_tenant(session, tenant_id)
    assert excinfo.value.details["failed_file_ids"] == [stuck.file_id]

    async with SessionLocal() as session:
        assert await session.get(Tenant, tenant_id) is not None
        live = await session.execute(
            select(FileRecord.id).where(FileRecord.tenant_id == tenant_id, FileRecord.deleted_at.is_(None))
        )
    assert live.scalars().all() == [stuck.file_id]
    assert fake_storage.deleted == [fine.storage_key]
