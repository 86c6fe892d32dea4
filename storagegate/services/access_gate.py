from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal
import logging
from typing import Callable

from sqlalchemy.ext.asyncio import AsyncSession

from storagegate.core.config import BYTES_PER_GB
from storagegate.core.errors import (
    AccountSuspended,
    DownloadLimitExceeded,
    FileNotFound,
    InvalidEntryName,
    PathConflict,
    QuotaExceeded,
    StorageNotConfigured,
    TenantNotFound,
)
from storagegate.domain.models import (
    FILE_KIND_FILE,
    TENANT_STATUS_ACTIVE,
    FileRecord,
    StorageConfig,
    Tenant,
)
from storagegate.persistence.repos import files as files_repo
from storagegate.persistence.repos import tenants as tenants_repo
from storagegate.services import system_settings
from storagegate.services.egress_meter import EgressMeter
from storagegate.services.object_storage import build_storage_key
from storagegate.services.quota_ledger import QuotaLedger, STORAGE_PLACES


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class UploadGrant:
    tenant: Tenant
    storage_config: StorageConfig
    file_name: str
    logical_path: str
    storage_key: str
    parent_id: str | None
    # Abandoned unconfirmed upload at the same path and key that this upload replaces.
    supersedes: FileRecord | None = None


@dataclass(frozen=True)
class DownloadGrant:
    tenant: Tenant
    storage_config: StorageConfig
    file: FileRecord


class AccessGate:
    def __init__(
        self,
        *,
        time_provider: Callable[[], datetime] | None = None,
        quota_ledger: QuotaLedger | None = None,
        egress_meter: EgressMeter | None = None,
    ) -> None:
        self._time_provider = time_provider or _utc_now
        self._quota_ledger = quota_ledger or QuotaLedger()
        self._egress_meter = egress_meter or EgressMeter(time_provider=self._time_provider)

    async def authorize_upload(
        self,
        session: AsyncSession,
        tenant_id: str,
        *,
        file_name: str,
        size_bytes: int,
        parent_id: str | None = None,
    ) -> UploadGrant:
        """Decide whether a tenant may start an upload and reserve its key.

        Checks run in a fixed order and the first failure wins: tenant
        exists, tenant active, verified storage config, quota headroom,
        a live parent folder, then a valid name whose path and storage key
        no other live entry holds. A pending upload at the exact same path
        and key is superseded instead of reported as a conflict.
        """
        tenant = await _require_tenant(session, tenant_id)
        _require_active(tenant)
        config = await _require_storage_config(session, tenant_id)
        if await self._quota_ledger.would_exceed(session, tenant_id, size_bytes):
            requested = (Decimal(size_bytes) / Decimal(BYTES_PER_GB)).quantize(STORAGE_PLACES)
            logger.info(
                "upload_denied_quota tenant_id=%s used_gb=%s quota_gb=%s requested_gb=%s",
                tenant_id,
                tenant.storage_used_gb,
                tenant.storage_quota_gb,
                requested,
            )
            raise QuotaExceeded(
                "Upload would exceed the storage quota",
                details={
                    "used": str(tenant.storage_used_gb),
                    "limit": str(tenant.storage_quota_gb),
                    "requested": str(requested),
                },
            )
        parent_path: str | None = None
        if parent_id is not None:
            parent = await files_repo.get_live_folder(session, tenant_id, parent_id)
            if parent is None:
                raise FileNotFound("Parent folder not found", details={"parent_id": parent_id})
            parent_path = parent.path
        name = validate_entry_name(file_name)
        logical_path = files_repo.join_path(parent_path, name)
        storage_key = build_storage_key(config.bucket_prefix or tenant.path_prefix, logical_path)
        supersedes = await _claim_upload_slot(session, tenant_id, logical_path, storage_key)
        return UploadGrant(
            tenant=tenant,
            storage_config=config,
            file_name=name,
            logical_path=logical_path,
            storage_key=storage_key,
            parent_id=parent_id,
            supersedes=supersedes,
        )

    async def authorize_download(self, session: AsyncSession, tenant_id: str, file_id: str) -> DownloadGrant:
        """Decide whether a tenant may download one of its confirmed files.

        Order: tenant exists, file is a live confirmed file owned by the
        tenant, tenant active, egress block (read fresh from settings), then
        a verified storage config.
        """
        tenant = await _require_tenant(session, tenant_id)
        record = await files_repo.get_file(session, tenant_id, file_id)
        if (
            record is None
            or record.deleted_at is not None
            or record.kind != FILE_KIND_FILE
            or record.confirmed_at is None
        ):
            raise FileNotFound("File not found", details={"file_id": file_id})
        _require_active(tenant)
        if await system_settings.block_downloads_on_overage(session):
            used = await self._egress_meter.current_month_usage(session, tenant_id)
            limit = Decimal(tenant.egress_free_limit_gb or 0)
            if used >= limit:
                logger.info(
                    "download_denied_egress tenant_id=%s used_gb=%s limit_gb=%s", tenant_id, used, limit
                )
                raise DownloadLimitExceeded(
                    "Monthly free egress limit reached",
                    details={"used": str(used), "limit": str(limit)},
                )
        config = await _require_storage_config(session, tenant_id)
        return DownloadGrant(tenant=tenant, storage_config=config, file=record)


def validate_entry_name(name: str) -> str:
    # Names are single path segments; an inner slash would alias a nested path.
    clean = name.strip()
    if not clean or clean in {".", ".."} or "/" in clean:
        raise InvalidEntryName("Name must be a single non-empty path segment", details={"name": name})
    return clean


async def ensure_path_free(
    session: AsyncSession, tenant_id: str, path: str, *, exclude_id: str | None = None
) -> None:
    holder = await files_repo.find_live_by_path(session, tenant_id, path)
    if holder is not None and holder.id != exclude_id:
        raise PathConflict(
            "Another item already exists at this path",
            details={"path": path, "file_id": holder.id},
        )


async def _claim_upload_slot(
    session: AsyncSession, tenant_id: str, path: str, storage_key: str
) -> FileRecord | None:
    supersedes: FileRecord | None = None
    holder = await files_repo.find_live_by_path(session, tenant_id, path)
    if holder is not None:
        if holder.kind != FILE_KIND_FILE or holder.confirmed_at is not None or holder.storage_key != storage_key:
            raise PathConflict(
                "Another item already exists at this path",
                details={"path": path, "file_id": holder.id},
            )
        supersedes = holder
    key_holder = await files_repo.find_live_by_storage_key(session, tenant_id, storage_key)
    if key_holder is not None and (supersedes is None or key_holder.id != supersedes.id):
        logger.info(
            "upload_denied_key_in_use tenant_id=%s storage_key=%s file_id=%s",
            tenant_id,
            storage_key,
            key_holder.id,
        )
        raise PathConflict(
            "The storage key for this path is held by another file",
            details={"path": path, "file_id": key_holder.id},
        )
    return supersedes


async def _require_tenant(session: AsyncSession, tenant_id: str) -> Tenant:
    tenant = await tenants_repo.get_tenant(session, tenant_id)
    if tenant is None:
        raise TenantNotFound("Tenant not found", details={"tenant_id": tenant_id})
    return tenant


def _require_active(tenant: Tenant) -> None:
    if tenant.status != TENANT_STATUS_ACTIVE:
        raise AccountSuspended("Account is suspended", details={"status": tenant.status})


async def _require_storage_config(session: AsyncSession, tenant_id: str) -> StorageConfig:
    config = await tenants_repo.get_verified_storage_config(session, tenant_id)
    if config is None:
        raise StorageNotConfigured("Storage is not configured for this account")
    return config


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)
