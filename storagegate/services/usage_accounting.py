from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
import logging
from typing import Callable
from uuid import uuid4

from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from storagegate.core.config import get_settings
from storagegate.core.errors import (
    AccountSuspended,
    FileNotFound,
    FileTreeCycleError,
    PathConflict,
    StorageBackendError,
    StorageGateError,
    StorageNotConfigured,
    TenantNotFound,
)
from storagegate.domain.models import (
    FILE_KIND_FILE,
    FILE_KIND_FOLDER,
    TENANT_STATUS_ACTIVE,
    DownloadHistory,
    FileRecord,
)
from storagegate.persistence.repos import files as files_repo
from storagegate.persistence.repos import tenants as tenants_repo
from storagegate.services.access_gate import AccessGate, ensure_path_free, validate_entry_name
from storagegate.services.activity import record_activity
from storagegate.services.alerts import AlertEngine
from storagegate.services.egress_meter import EgressMeter
from storagegate.services.object_storage import ObjectStorage, get_object_storage, normalize_prefix
from storagegate.services.quota_ledger import QuotaLedger, bytes_to_gb


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class UploadTicket:
    file_id: str
    upload_url: str
    storage_key: str
    logical_path: str
    expires_in: int


@dataclass(frozen=True)
class DownloadTicket:
    file_id: str
    download_url: str
    file_name: str
    size_bytes: int
    expires_in: int
    egress_used_gb: Decimal


@dataclass(frozen=True)
class DeleteFailure:
    file_id: str
    reason: str


@dataclass
class DeleteOutcome:
    # Partial completion is a valid result; failed entries can be retried later.
    deleted: list[str] = field(default_factory=list)
    failed: list[DeleteFailure] = field(default_factory=list)


@dataclass(frozen=True)
class BucketStats:
    tenant_id: str
    bucket_name: str
    prefix: str
    object_count: int
    object_bytes: int
    object_gb: Decimal
    storage_used_gb: Decimal
    # Positive when the bucket holds more than the confirmed records account for.
    drift_gb: Decimal


class UsageAccountingService:
    """Orchestrates file lifecycle events and keeps usage in step with them.

    Storage calls happen before any bookkeeping they justify, so a failed
    presign or delete never leaves usage counting something that did not
    happen. Alert evaluation after a successful event is best effort.
    """

    def __init__(
        self,
        *,
        object_storage: ObjectStorage | None = None,
        time_provider: Callable[[], datetime] | None = None,
    ) -> None:
        self._time_provider = time_provider or _utc_now
        self.object_storage = object_storage or get_object_storage()
        self.quota_ledger = QuotaLedger()
        self.egress_meter = EgressMeter(time_provider=self._time_provider)
        self.alert_engine = AlertEngine(time_provider=self._time_provider, egress_meter=self.egress_meter)
        self.access_gate = AccessGate(
            time_provider=self._time_provider,
            quota_ledger=self.quota_ledger,
            egress_meter=self.egress_meter,
        )

    async def initiate_upload(
        self,
        session: AsyncSession,
        tenant_id: str,
        *,
        file_name: str,
        size_bytes: int,
        mime_type: str | None = None,
        parent_id: str | None = None,
        actor_id: str | None = None,
        request_context: dict[str, str | None] | None = None,
    ) -> UploadTicket:
        grant = await self.access_gate.authorize_upload(
            session, tenant_id, file_name=file_name, size_bytes=size_bytes, parent_id=parent_id
        )
        ttl_s = get_settings().presigned_url_ttl_s
        upload_url = await self.object_storage.put_url(
            grant.storage_config,
            grant.storage_key,
            content_type=mime_type,
            size_bytes=size_bytes,
            ttl_s=ttl_s,
        )
        if grant.supersedes is not None:
            # Retire the abandoned upload before the new row claims its path.
            files_repo.soft_delete(grant.supersedes, deleted_at=self._time_provider())
            await session.flush()
            logger.info(
                "pending_upload_superseded tenant_id=%s file_id=%s", tenant_id, grant.supersedes.id
            )
        record = await files_repo.create_file_record(
            session,
            tenant_id=tenant_id,
            name=grant.file_name,
            size_bytes=size_bytes,
            mime_type=mime_type,
            path=grant.logical_path,
            parent_id=grant.parent_id,
            storage_key=grant.storage_key,
        )
        try:
            await session.flush()
        except IntegrityError as exc:
            # A concurrent upload claimed the same path between the check and the insert.
            await session.rollback()
            raise PathConflict(
                "Another item already exists at this path",
                details={"path": grant.logical_path},
            ) from exc
        await record_activity(
            session=session,
            tenant_id=tenant_id,
            actor_id=actor_id,
            action="upload_initiated",
            details=f"Upload started for {grant.logical_path}",
            resource_type="file",
            resource_id=record.id,
            request_context=request_context,
            metadata={"size_bytes": size_bytes},
            occurred_at=self._time_provider(),
        )
        await session.commit()
        logger.info(
            "upload_initiated tenant_id=%s file_id=%s size_bytes=%s", tenant_id, record.id, size_bytes
        )
        return UploadTicket(
            file_id=record.id,
            upload_url=upload_url,
            storage_key=grant.storage_key,
            logical_path=grant.logical_path,
            expires_in=ttl_s,
        )

    async def confirm_upload(
        self,
        session: AsyncSession,
        tenant_id: str,
        file_id: str,
        *,
        etag: str | None = None,
    ) -> FileRecord:
        record = await files_repo.get_file(session, tenant_id, file_id)
        if record is None or record.deleted_at is not None or record.kind != FILE_KIND_FILE:
            raise FileNotFound("File not found", details={"file_id": file_id})
        if record.confirmed_at is None:
            record.etag = etag
            record.confirmed_at = self._time_provider()
            await session.commit()
            logger.info("upload_confirmed tenant_id=%s file_id=%s", tenant_id, file_id)
        await self._recalculate_best_effort(session, tenant_id)
        await self._evaluate_storage_best_effort(session, tenant_id)
        # A failed best-effort step rolls back and expires loaded rows.
        await session.refresh(record)
        return record

    async def issue_download(
        self,
        session: AsyncSession,
        tenant_id: str,
        file_id: str,
        *,
        actor_id: str | None = None,
        request_context: dict[str, str | None] | None = None,
    ) -> DownloadTicket:
        grant = await self.access_gate.authorize_download(session, tenant_id, file_id)
        record = grant.file
        ttl_s = get_settings().presigned_url_ttl_s
        # A failed presign raises before any egress is counted.
        download_url = await self.object_storage.get_url(
            grant.storage_config, record.storage_key or "", ttl_s=ttl_s, file_name=record.name
        )
        # Egress is counted at issuance; the backend never learns whether the transfer finished.
        total = await self.egress_meter.record(session, tenant_id, int(record.size_bytes or 0))
        # Built before any rollback below can expire the loaded row.
        ticket = DownloadTicket(
            file_id=record.id,
            download_url=download_url,
            file_name=record.name,
            size_bytes=int(record.size_bytes or 0),
            expires_in=ttl_s,
            egress_used_gb=total,
        )
        context = request_context or {}
        session.add(
            DownloadHistory(
                id=uuid4().hex,
                tenant_id=tenant_id,
                file_id=ticket.file_id,
                file_name=ticket.file_name,
                file_size_bytes=ticket.size_bytes,
                status="completed",
                ip_address=context.get("ip_address"),
                downloaded_at=self._time_provider(),
            )
        )
        await record_activity(
            session=session,
            tenant_id=tenant_id,
            actor_id=actor_id,
            action="download",
            details=f"Downloaded {record.path}",
            resource_type="file",
            resource_id=ticket.file_id,
            request_context=request_context,
            metadata={"size_bytes": ticket.size_bytes},
            occurred_at=self._time_provider(),
        )
        try:
            await session.commit()
        except SQLAlchemyError as exc:
            # The egress increment is already durable; losing the history row is logged only.
            await session.rollback()
            logger.warning("download_history_write_failed tenant_id=%s file_id=%s", tenant_id, file_id, exc_info=exc)
        await self._evaluate_egress_best_effort(session, tenant_id)
        return ticket

    async def delete_files(
        self,
        session: AsyncSession,
        tenant_id: str,
        file_ids: list[str],
        *,
        actor_id: str | None = None,
        request_context: dict[str, str | None] | None = None,
    ) -> DeleteOutcome:
        """Delete files and folders, expanding folders into their live subtree.

        Each file's object is removed from storage first and its record is
        soft-deleted in its own commit. When storage refuses, that record and
        every folder above it inside the request stay live and the failure is
        reported. Usage is recalculated once at the end.
        """
        outcome = DeleteOutcome()
        config = await tenants_repo.get_storage_config(session, tenant_id)
        processed: set[str] = set()
        for file_id in file_ids:
            if file_id in processed:
                continue
            root = await files_repo.get_file(session, tenant_id, file_id)
            if root is None or root.deleted_at is not None:
                outcome.failed.append(DeleteFailure(file_id=file_id, reason="not_found"))
                continue
            nodes = await files_repo.live_subtree(session, root)
            by_id = {node.id: node for node in nodes}
            blocked: set[str] = set()
            for node in nodes:
                if node.kind != FILE_KIND_FILE or node.id in processed:
                    continue
                processed.add(node.id)
                reason = await self._delete_object(config, node)
                if reason is not None:
                    outcome.failed.append(DeleteFailure(file_id=node.id, reason=reason))
                    blocked.update(_ancestors_within(node, by_id))
                    continue
                files_repo.soft_delete(node, deleted_at=self._time_provider())
                await session.commit()
                outcome.deleted.append(node.id)
            # Children were appended after parents, so walk backwards to close folders bottom-up.
            for node in reversed(nodes):
                if node.kind != FILE_KIND_FOLDER or node.id in processed:
                    continue
                processed.add(node.id)
                if node.id in blocked:
                    continue
                files_repo.soft_delete(node, deleted_at=self._time_provider())
                await session.commit()
                outcome.deleted.append(node.id)

        if outcome.deleted:
            await record_activity(
                session=session,
                tenant_id=tenant_id,
                actor_id=actor_id,
                action="files_deleted",
                details=f"Deleted {len(outcome.deleted)} item(s)",
                resource_type="file",
                request_context=request_context,
                metadata={"deleted": len(outcome.deleted), "failed": len(outcome.failed)},
                occurred_at=self._time_provider(),
                commit=True,
            )
            await self._recalculate_best_effort(session, tenant_id)
        logger.info(
            "files_deleted tenant_id=%s deleted=%s failed=%s",
            tenant_id,
            len(outcome.deleted),
            len(outcome.failed),
        )
        return outcome

    async def _delete_object(self, config, record: FileRecord) -> str | None:
        # Returns a failure reason, or None when the object is gone.
        if not record.storage_key:
            return None
        if config is None:
            return "storage_not_configured"
        try:
            await self.object_storage.delete(config, record.storage_key)
        except StorageBackendError as exc:
            logger.warning(
                "object_delete_failed tenant_id=%s file_id=%s", record.tenant_id, record.id, exc_info=exc
            )
            return "storage_error"
        return None

    async def create_folder(
        self,
        session: AsyncSession,
        tenant_id: str,
        *,
        name: str,
        parent_id: str | None = None,
        actor_id: str | None = None,
    ) -> FileRecord:
        tenant = await tenants_repo.get_tenant(session, tenant_id)
        if tenant is None:
            raise TenantNotFound("Tenant not found", details={"tenant_id": tenant_id})
        if tenant.status != TENANT_STATUS_ACTIVE:
            raise AccountSuspended("Account is suspended", details={"status": tenant.status})
        parent_path: str | None = None
        if parent_id is not None:
            parent = await files_repo.get_live_folder(session, tenant_id, parent_id)
            if parent is None:
                raise FileNotFound("Parent folder not found", details={"parent_id": parent_id})
            parent_path = parent.path
        name = validate_entry_name(name)
        path = files_repo.join_path(parent_path, name)
        await ensure_path_free(session, tenant_id, path)
        folder = await files_repo.create_folder_record(
            session,
            tenant_id=tenant_id,
            name=name,
            path=path,
            parent_id=parent_id,
        )
        try:
            await session.flush()
        except IntegrityError as exc:
            await session.rollback()
            raise PathConflict("Another item already exists at this path", details={"path": path}) from exc
        await record_activity(
            session=session,
            tenant_id=tenant_id,
            actor_id=actor_id,
            action="folder_created",
            details=f"Created folder {folder.path}",
            resource_type="folder",
            resource_id=folder.id,
            occurred_at=self._time_provider(),
        )
        await session.commit()
        return folder

    async def move_file(
        self,
        session: AsyncSession,
        tenant_id: str,
        file_id: str,
        *,
        new_parent_id: str | None,
    ) -> FileRecord:
        """Reparent a file or folder and rewrite logical paths below it.

        Storage keys are fixed at upload time and are not renamed. The
        destination path must not be held by another live entry.
        """
        record = await files_repo.get_file(session, tenant_id, file_id)
        if record is None or record.deleted_at is not None:
            raise FileNotFound("File not found", details={"file_id": file_id})
        parent_path: str | None = None
        if new_parent_id is not None:
            parent = await files_repo.get_live_folder(session, tenant_id, new_parent_id)
            if parent is None:
                raise FileNotFound("Parent folder not found", details={"parent_id": new_parent_id})
            if new_parent_id == record.id or record.id in await files_repo.ancestor_ids(session, parent):
                raise FileTreeCycleError(
                    "A folder cannot be moved into itself or its descendants",
                    details={"file_id": file_id, "parent_id": new_parent_id},
                )
            parent_path = parent.path
        old_path = record.path
        new_path = files_repo.join_path(parent_path, record.name)
        await ensure_path_free(session, tenant_id, new_path, exclude_id=record.id)
        for node in await files_repo.live_subtree(session, record):
            node.path = new_path + node.path[len(old_path):]
        record.parent_id = new_parent_id
        try:
            await session.commit()
        except IntegrityError as exc:
            await session.rollback()
            raise PathConflict("Another item already exists at this path", details={"path": new_path}) from exc
        logger.info("file_moved tenant_id=%s file_id=%s parent_id=%s", tenant_id, file_id, new_parent_id)
        return record

    async def recalculate(self, session: AsyncSession, tenant_id: str) -> Decimal:
        used = await self.quota_ledger.recalculate(session, tenant_id)
        await self._evaluate_storage_best_effort(session, tenant_id)
        return used

    async def bucket_stats(self, session: AsyncSession, tenant_id: str) -> BucketStats:
        """Compare what the tenant's bucket holds with the recalculated usage.

        Lists every object under the tenant's normalized key prefix and
        totals their sizes next to a fresh ``storage_used_gb``.
        """
        tenant = await tenants_repo.get_tenant(session, tenant_id)
        if tenant is None:
            raise TenantNotFound("Tenant not found", details={"tenant_id": tenant_id})
        config = await tenants_repo.get_storage_config(session, tenant_id)
        if config is None:
            raise StorageNotConfigured("Storage is not configured for this account")
        prefix = normalize_prefix(config.bucket_prefix or tenant.path_prefix)
        bucket_name = config.bucket_name
        # The trailing slash keeps "tenants/a" from matching "tenants/ab".
        objects = await self.object_storage.list(config, f"{prefix}/" if prefix else "")
        object_bytes = sum(max(item.size_bytes, 0) for item in objects)
        used = await self.quota_ledger.recalculate(session, tenant_id)
        object_gb = bytes_to_gb(object_bytes)
        logger.info(
            "bucket_stats tenant_id=%s objects=%s object_gb=%s used_gb=%s",
            tenant_id,
            len(objects),
            object_gb,
            used,
        )
        return BucketStats(
            tenant_id=tenant_id,
            bucket_name=bucket_name,
            prefix=prefix,
            object_count=len(objects),
            object_bytes=object_bytes,
            object_gb=object_gb,
            storage_used_gb=used,
            drift_gb=object_gb - used,
        )

    async def delete_tenant(
        self,
        session: AsyncSession,
        tenant_id: str,
        *,
        actor_id: str | None = None,
        actor_role: str | None = None,
        request_context: dict[str, str | None] | None = None,
    ) -> dict[str, int]:
        """Remove a tenant's stored objects, then the tenant and all its rows.

        Objects go first. If storage refuses any of them the tenant is kept,
        the files already removed are soft-deleted, and a retryable
        ``StorageBackendError`` lists what is left so the call can be repeated.
        """
        tenant = await tenants_repo.get_tenant(session, tenant_id)
        if tenant is None:
            raise TenantNotFound("Tenant not found", details={"tenant_id": tenant_id})
        tenant_name = tenant.name
        config = await tenants_repo.get_storage_config(session, tenant_id)
        records = await files_repo.live_files_with_keys(session, tenant_id)
        objects_deleted = 0
        if config is None:
            if records:
                logger.warning(
                    "tenant_delete_objects_unreachable tenant_id=%s files=%s", tenant_id, len(records)
                )
        else:
            failed: list[str] = []
            for record in records:
                if await self._delete_object(config, record) is not None:
                    failed.append(record.id)
                    continue
                files_repo.soft_delete(record, deleted_at=self._time_provider())
                objects_deleted += 1
            await session.commit()
            if failed:
                raise StorageBackendError(
                    "Some stored objects could not be deleted; the tenant was kept",
                    details={"tenant_id": tenant_id, "failed_file_ids": failed},
                )
        removed = await tenants_repo.delete_tenant_rows(session, tenant_id)
        await record_activity(
            session=session,
            tenant_id=tenant_id,
            actor_id=actor_id,
            actor_role=actor_role,
            action="tenant_deleted",
            details=f"Tenant {tenant_name} deleted",
            resource_type="tenant",
            resource_id=tenant_id,
            request_context=request_context,
            metadata={"objects_deleted": objects_deleted, **removed},
            occurred_at=self._time_provider(),
        )
        await session.commit()
        logger.info("tenant_deleted tenant_id=%s objects_deleted=%s", tenant_id, objects_deleted)
        return {"objects_deleted": objects_deleted, **removed}

    async def _recalculate_best_effort(self, session: AsyncSession, tenant_id: str) -> None:
        # The cached value self-heals on the next recalculation trigger.
        try:
            await self.quota_ledger.recalculate(session, tenant_id)
        except (SQLAlchemyError, StorageGateError) as exc:
            await session.rollback()
            logger.warning("storage_recalculation_failed tenant_id=%s", tenant_id, exc_info=exc)

    async def _evaluate_storage_best_effort(self, session: AsyncSession, tenant_id: str) -> None:
        try:
            await self.alert_engine.evaluate_storage(session, tenant_id)
        except Exception as exc:  # noqa: BLE001 - alerting never fails the triggering event
            await session.rollback()
            logger.warning("storage_alert_evaluation_failed tenant_id=%s", tenant_id, exc_info=exc)

    async def _evaluate_egress_best_effort(self, session: AsyncSession, tenant_id: str) -> None:
        try:
            await self.alert_engine.evaluate_egress(session, tenant_id)
        except Exception as exc:  # noqa: BLE001 - alerting never fails the triggering event
            await session.rollback()
            logger.warning("egress_alert_evaluation_failed tenant_id=%s", tenant_id, exc_info=exc)


def _ancestors_within(node: FileRecord, by_id: dict[str, FileRecord]) -> set[str]:
    # Only folders inside the current request can be held back.
    ancestors: set[str] = set()
    parent_id = node.parent_id
    while parent_id is not None and parent_id in by_id and parent_id not in ancestors:
        ancestors.add(parent_id)
        parent_id = by_id[parent_id].parent_id
    return ancestors


_usage_service: UsageAccountingService | None = None


def get_usage_service() -> UsageAccountingService:
    global _usage_service
    if _usage_service is None:
        _usage_service = UsageAccountingService()
    return _usage_service


def reset_usage_service() -> None:
    # Reset cached services for deterministic tests.
    global _usage_service
    _usage_service = None


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)
