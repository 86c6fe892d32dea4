from __future__ import annotations

from decimal import Decimal
from uuid import uuid4

from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession

from storagegate.domain.models import (
    AccessSession,
    Alert,
    DownloadHistory,
    EgressRecord,
    FileRecord,
    StorageConfig,
    Tenant,
)


async def get_tenant(session: AsyncSession, tenant_id: str) -> Tenant | None:
    result = await session.execute(select(Tenant).where(Tenant.id == tenant_id))
    return result.scalar_one_or_none()


async def list_tenant_ids(session: AsyncSession) -> list[str]:
    # Stable ordering keeps batch jobs deterministic across runs.
    result = await session.execute(select(Tenant.id).order_by(Tenant.created_at, Tenant.id))
    return [row for row in result.scalars().all()]


async def list_tenants(
    session: AsyncSession, *, status: str | None = None, limit: int = 100, offset: int = 0
) -> list[Tenant]:
    stmt = select(Tenant)
    if status:
        stmt = stmt.where(Tenant.status == status)
    result = await session.execute(
        stmt.order_by(Tenant.created_at, Tenant.id).limit(limit).offset(offset)
    )
    return list(result.scalars().all())


async def create_tenant(
    session: AsyncSession,
    *,
    name: str,
    email: str,
    storage_quota_gb: Decimal,
    egress_free_limit_gb: Decimal,
    company: str | None = None,
    path_prefix: str | None = None,
    tenant_id: str | None = None,
) -> Tenant:
    # Usage starts at zero; the ledger owns every later change to it.
    tenant = Tenant(
        id=tenant_id or uuid4().hex,
        name=name,
        email=email,
        company=company,
        storage_quota_gb=storage_quota_gb,
        storage_used_gb=Decimal("0.00"),
        egress_free_limit_gb=egress_free_limit_gb,
        status="active",
        path_prefix=path_prefix,
    )
    session.add(tenant)
    return tenant


async def get_storage_config(session: AsyncSession, tenant_id: str) -> StorageConfig | None:
    result = await session.execute(select(StorageConfig).where(StorageConfig.tenant_id == tenant_id))
    return result.scalar_one_or_none()


async def get_verified_storage_config(session: AsyncSession, tenant_id: str) -> StorageConfig | None:
    # Unverified configs are treated the same as missing ones by the gate.
    result = await session.execute(
        select(StorageConfig).where(
            StorageConfig.tenant_id == tenant_id,
            StorageConfig.is_verified.is_(True),
        )
    )
    return result.scalar_one_or_none()


async def put_storage_config(
    session: AsyncSession,
    tenant_id: str,
    *,
    bucket_name: str,
    endpoint: str,
    region: str,
    access_key_id: str,
    secret_access_key: str,
    bucket_prefix: str | None = None,
) -> StorageConfig:
    # Replacing credentials always drops verification until the bucket is re-checked.
    config = await get_storage_config(session, tenant_id)
    if config is None:
        config = StorageConfig(id=uuid4().hex, tenant_id=tenant_id)
        session.add(config)
    config.bucket_name = bucket_name
    config.endpoint = endpoint
    config.region = region
    config.access_key_id = access_key_id
    config.secret_access_key = secret_access_key
    config.bucket_prefix = bucket_prefix
    config.is_verified = False
    config.last_verified_at = None
    return config


async def delete_tenant_rows(session: AsyncSession, tenant_id: str) -> dict[str, int]:
    """Delete a tenant and every row it owns, children before parents.

    Explicit deletes keep the cascade independent of backend foreign key
    enforcement (SQLite leaves it off by default). Activity rows are kept
    as the audit trail. The caller commits.
    """
    removed: dict[str, int] = {}
    for model in (DownloadHistory, Alert, EgressRecord, AccessSession, FileRecord, StorageConfig):
        result = await session.execute(delete(model).where(model.tenant_id == tenant_id))
        removed[model.__tablename__] = int(result.rowcount or 0)
    result = await session.execute(delete(Tenant).where(Tenant.id == tenant_id))
    removed[Tenant.__tablename__] = int(result.rowcount or 0)
    return removed
