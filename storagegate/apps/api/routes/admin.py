from __future__ import annotations

from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Literal

from fastapi import APIRouter, Depends, HTTPException, Query, Request
from pydantic import BaseModel, Field
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from storagegate.apps.api.deps import Principal, get_db, request_context, require_admin, usage_service
from storagegate.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from storagegate.apps.api.response import SuccessEnvelope, success_response
from storagegate.core.errors import StorageNotConfigured, TenantNotFound
from storagegate.domain.models import StorageConfig, Tenant
from storagegate.persistence.repos import tenants as tenants_repo
from storagegate.services import system_settings, usage_dashboard
from storagegate.services.activity import list_activity, record_activity
from storagegate.services.usage_accounting import UsageAccountingService


router = APIRouter(prefix="/admin", tags=["admin"], responses=DEFAULT_ERROR_RESPONSES)


class TenantResponse(BaseModel):
    id: str
    name: str
    email: str
    company: str | None
    status: str
    storage_quota_gb: float
    storage_used_gb: float
    egress_free_limit_gb: float
    path_prefix: str | None
    created_at: str | None


class CreateTenantRequest(BaseModel):
    name: str = Field(min_length=1, max_length=255)
    email: str = Field(min_length=3, max_length=320, pattern=r"^[^@\s]+@[^@\s]+$")
    company: str | None = Field(default=None, max_length=255)
    path_prefix: str | None = Field(default=None, max_length=512)
    # Omitted limits fall back to the current system settings.
    storage_quota_gb: float | None = Field(default=None, ge=0)
    egress_free_limit_gb: float | None = Field(default=None, ge=0)

    model_config = {"extra": "forbid"}


class TenantStatusRequest(BaseModel):
    status: Literal["active", "suspended"]


class TenantQuotaRequest(BaseModel):
    storage_quota_gb: float | None = Field(default=None, ge=0)
    egress_free_limit_gb: float | None = Field(default=None, ge=0)


class StorageConfigRequest(BaseModel):
    bucket_name: str = Field(min_length=3, max_length=63)
    endpoint: str = Field(min_length=1, max_length=512)
    region: str = Field(min_length=1, max_length=64)
    access_key_id: str = Field(min_length=1)
    secret_access_key: str = Field(min_length=1)
    bucket_prefix: str | None = Field(default=None, max_length=512)

    model_config = {"extra": "forbid"}


class StorageConfigResponse(BaseModel):
    # Credentials are write-only and never echoed back.
    bucket_name: str
    endpoint: str
    region: str
    bucket_prefix: str | None
    is_verified: bool
    last_verified_at: str | None


class SettingUpdateRequest(BaseModel):
    value: Any


class BucketStatsResponse(BaseModel):
    tenant_id: str
    bucket_name: str
    prefix: str
    object_count: int
    object_bytes: int
    object_gb: float
    storage_used_gb: float
    drift_gb: float


class ActivityEntryResponse(BaseModel):
    id: str
    tenant_id: str | None
    actor_id: str | None
    actor_role: str | None
    action: str
    details: str | None
    resource_type: str | None
    resource_id: str | None
    ip_address: str | None
    metadata: dict[str, Any] | None
    created_at: str | None


class ActivityPageResponse(BaseModel):
    items: list[ActivityEntryResponse]
    total: int
    limit: int
    offset: int


def _tenant_response(tenant: Tenant) -> TenantResponse:
    return TenantResponse(
        id=tenant.id,
        name=tenant.name,
        email=tenant.email,
        company=tenant.company,
        status=tenant.status,
        storage_quota_gb=float(tenant.storage_quota_gb or 0),
        storage_used_gb=float(tenant.storage_used_gb or 0),
        egress_free_limit_gb=float(tenant.egress_free_limit_gb or 0),
        path_prefix=tenant.path_prefix,
        created_at=tenant.created_at.isoformat() if tenant.created_at else None,
    )


def _config_response(config: StorageConfig) -> StorageConfigResponse:
    return StorageConfigResponse(
        bucket_name=config.bucket_name,
        endpoint=config.endpoint,
        region=config.region,
        bucket_prefix=config.bucket_prefix,
        is_verified=bool(config.is_verified),
        last_verified_at=config.last_verified_at.isoformat() if config.last_verified_at else None,
    )


async def _require_tenant(db: AsyncSession, tenant_id: str) -> Tenant:
    tenant = await tenants_repo.get_tenant(db, tenant_id)
    if tenant is None:
        raise TenantNotFound("Tenant not found", details={"tenant_id": tenant_id})
    return tenant


def _gb(value: float) -> Decimal:
    return Decimal(str(value)).quantize(Decimal("0.01"))


@router.post("/tenants", status_code=201, response_model=SuccessEnvelope[TenantResponse])
async def create_tenant(
    request: Request,
    payload: CreateTenantRequest,
    principal: Principal = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
) -> dict:
    storage_quota = payload.storage_quota_gb
    if storage_quota is None:
        storage_quota = await system_settings.get_setting(db, system_settings.DEFAULT_STORAGE_QUOTA_GB)
    egress_limit = payload.egress_free_limit_gb
    if egress_limit is None:
        egress_limit = await system_settings.get_setting(db, system_settings.EGRESS_FREE_LIMIT_GB)
    tenant = await tenants_repo.create_tenant(
        db,
        name=payload.name,
        email=payload.email,
        company=payload.company,
        path_prefix=payload.path_prefix,
        storage_quota_gb=_gb(storage_quota),
        egress_free_limit_gb=_gb(egress_limit),
    )
    try:
        await db.commit()
    except IntegrityError as exc:
        await db.rollback()
        raise HTTPException(
            status_code=409,
            detail={"code": "TENANT_EMAIL_CONFLICT", "message": "A tenant with this email already exists"},
        ) from exc
    await record_activity(
        session=db,
        tenant_id=tenant.id,
        actor_id=principal.subject_id,
        actor_role=principal.role,
        action="tenant_created",
        details=f"Tenant {tenant.name} provisioned",
        resource_type="tenant",
        resource_id=tenant.id,
        request_context=request_context(request),
        commit=True,
    )
    return success_response(request=request, data=_tenant_response(tenant))


@router.get("/tenants", response_model=SuccessEnvelope[list[TenantResponse]])
async def list_tenants(
    request: Request,
    status: Literal["active", "suspended"] | None = Query(default=None),
    limit: int = Query(default=100, ge=1, le=500),
    offset: int = Query(default=0, ge=0),
    _principal: Principal = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
) -> dict:
    tenants = await tenants_repo.list_tenants(db, status=status, limit=limit, offset=offset)
    return success_response(request=request, data=[_tenant_response(tenant) for tenant in tenants])


@router.get("/tenants/{tenant_id}", response_model=SuccessEnvelope[dict[str, Any]])
async def get_tenant(
    tenant_id: str,
    request: Request,
    _principal: Principal = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
) -> dict:
    # Admins see the same usage view the tenant sees.
    data = await usage_dashboard.tenant_dashboard(db, tenant_id)
    return success_response(request=request, data=data)


@router.delete("/tenants/{tenant_id}", response_model=SuccessEnvelope[dict[str, int]])
async def delete_tenant(
    tenant_id: str,
    request: Request,
    principal: Principal = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
    service: UsageAccountingService = Depends(usage_service),
) -> dict:
    # Stored objects are removed before any row; a storage failure keeps the tenant.
    removed = await service.delete_tenant(
        db,
        tenant_id,
        actor_id=principal.subject_id,
        actor_role=principal.role,
        request_context=request_context(request),
    )
    return success_response(request=request, data=removed)


@router.get("/tenants/{tenant_id}/storage-stats", response_model=SuccessEnvelope[BucketStatsResponse])
async def tenant_storage_stats(
    tenant_id: str,
    request: Request,
    _principal: Principal = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
    service: UsageAccountingService = Depends(usage_service),
) -> dict:
    stats = await service.bucket_stats(db, tenant_id)
    data = BucketStatsResponse(
        tenant_id=stats.tenant_id,
        bucket_name=stats.bucket_name,
        prefix=stats.prefix,
        object_count=stats.object_count,
        object_bytes=stats.object_bytes,
        object_gb=float(stats.object_gb),
        storage_used_gb=float(stats.storage_used_gb),
        drift_gb=float(stats.drift_gb),
    )
    return success_response(request=request, data=data)


@router.patch("/tenants/{tenant_id}/status", response_model=SuccessEnvelope[TenantResponse])
async def update_tenant_status(
    tenant_id: str,
    request: Request,
    payload: TenantStatusRequest,
    principal: Principal = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
) -> dict:
    tenant = await _require_tenant(db, tenant_id)
    previous = tenant.status
    tenant.status = payload.status
    await record_activity(
        session=db,
        tenant_id=tenant_id,
        actor_id=principal.subject_id,
        actor_role=principal.role,
        action="tenant_status_changed",
        details=f"Status changed from {previous} to {payload.status}",
        resource_type="tenant",
        resource_id=tenant_id,
        request_context=request_context(request),
    )
    await db.commit()
    return success_response(request=request, data=_tenant_response(tenant))


@router.patch("/tenants/{tenant_id}/quotas", response_model=SuccessEnvelope[TenantResponse])
async def update_tenant_quotas(
    tenant_id: str,
    request: Request,
    payload: TenantQuotaRequest,
    principal: Principal = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
    service: UsageAccountingService = Depends(usage_service),
) -> dict:
    tenant = await _require_tenant(db, tenant_id)
    if payload.storage_quota_gb is not None:
        tenant.storage_quota_gb = _gb(payload.storage_quota_gb)
    if payload.egress_free_limit_gb is not None:
        tenant.egress_free_limit_gb = _gb(payload.egress_free_limit_gb)
    await record_activity(
        session=db,
        tenant_id=tenant_id,
        actor_id=principal.subject_id,
        actor_role=principal.role,
        action="tenant_quotas_changed",
        resource_type="tenant",
        resource_id=tenant_id,
        request_context=request_context(request),
        metadata=payload.model_dump(exclude_none=True),
    )
    await db.commit()
    # A lowered quota can cross a threshold without any file changing.
    await service.recalculate(db, tenant_id)
    tenant = await _require_tenant(db, tenant_id)
    return success_response(request=request, data=_tenant_response(tenant))


@router.put("/tenants/{tenant_id}/storage-config", response_model=SuccessEnvelope[StorageConfigResponse])
async def put_storage_config(
    tenant_id: str,
    request: Request,
    payload: StorageConfigRequest,
    principal: Principal = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
) -> dict:
    await _require_tenant(db, tenant_id)
    config = await tenants_repo.put_storage_config(db, tenant_id, **payload.model_dump())
    await record_activity(
        session=db,
        tenant_id=tenant_id,
        actor_id=principal.subject_id,
        actor_role=principal.role,
        action="storage_config_updated",
        resource_type="storage_config",
        resource_id=config.id,
        request_context=request_context(request),
        metadata={"bucket_name": payload.bucket_name, "endpoint": payload.endpoint},
    )
    await db.commit()
    return success_response(request=request, data=_config_response(config))


@router.post(
    "/tenants/{tenant_id}/storage-config/verify",
    response_model=SuccessEnvelope[StorageConfigResponse],
)
async def verify_storage_config(
    tenant_id: str,
    request: Request,
    _principal: Principal = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
    service: UsageAccountingService = Depends(usage_service),
) -> dict:
    await _require_tenant(db, tenant_id)
    config = await tenants_repo.get_storage_config(db, tenant_id)
    if config is None:
        raise StorageNotConfigured("Storage is not configured for this account")
    verified = await service.object_storage.verify(config)
    config.is_verified = verified
    config.last_verified_at = datetime.now(timezone.utc) if verified else None
    await db.commit()
    return success_response(request=request, data=_config_response(config))


@router.post("/tenants/{tenant_id}/recalculate", response_model=SuccessEnvelope[TenantResponse])
async def recalculate_tenant(
    tenant_id: str,
    request: Request,
    _principal: Principal = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
    service: UsageAccountingService = Depends(usage_service),
) -> dict:
    await service.recalculate(db, tenant_id)
    tenant = await _require_tenant(db, tenant_id)
    return success_response(request=request, data=_tenant_response(tenant))


@router.get("/settings", response_model=SuccessEnvelope[dict[str, Any]])
async def get_settings_values(
    request: Request,
    _principal: Principal = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
) -> dict:
    return success_response(request=request, data=await system_settings.get_all_settings(db))


@router.put("/settings/{key}", response_model=SuccessEnvelope[dict[str, Any]])
async def put_setting_value(
    key: str,
    request: Request,
    payload: SettingUpdateRequest,
    principal: Principal = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
) -> dict:
    value = await system_settings.put_setting(db, key, payload.value, updated_by=principal.subject_id)
    return success_response(request=request, data={"key": key, "value": value})


@router.get("/stats", response_model=SuccessEnvelope[dict[str, Any]])
async def stats(
    request: Request,
    _principal: Principal = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
) -> dict:
    return success_response(request=request, data=await usage_dashboard.system_stats(db))


@router.get("/activity", response_model=SuccessEnvelope[ActivityPageResponse])
async def activity_log(
    request: Request,
    tenant_id: str | None = Query(default=None),
    action: str | None = Query(default=None),
    resource_type: str | None = Query(default=None),
    since: datetime | None = Query(default=None),
    until: datetime | None = Query(default=None),
    limit: int = Query(default=50, ge=1, le=500),
    offset: int = Query(default=0, ge=0),
    _principal: Principal = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
) -> dict:
    entries, total = await list_activity(
        db,
        tenant_id=tenant_id,
        action=action,
        resource_type=resource_type,
        since=since,
        until=until,
        limit=limit,
        offset=offset,
    )
    data = ActivityPageResponse(
        items=[
            ActivityEntryResponse(
                id=entry.id,
                tenant_id=entry.tenant_id,
                actor_id=entry.actor_id,
                actor_role=entry.actor_role,
                action=entry.action,
                details=entry.details,
                resource_type=entry.resource_type,
                resource_id=entry.resource_id,
                ip_address=entry.ip_address,
                metadata=entry.metadata_json,
                created_at=entry.created_at.isoformat() if entry.created_at else None,
            )
            for entry in entries
        ],
        total=total,
        limit=limit,
        offset=offset,
    )
    return success_response(request=request, data=data)


@router.post("/maintenance/monthly-reset", response_model=SuccessEnvelope[dict[str, int]])
async def monthly_reset(
    request: Request,
    _principal: Principal = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
    service: UsageAccountingService = Depends(usage_service),
) -> dict:
    deleted = await service.alert_engine.reset_monthly(db)
    return success_response(request=request, data={"deleted": deleted})
