from __future__ import annotations

from datetime import datetime

from fastapi import APIRouter, Depends, Query, Request
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from storagegate.apps.api.deps import (
    Principal,
    get_db,
    request_context,
    require_active_tenant,
    require_tenant_principal,
    usage_service,
)
from storagegate.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from storagegate.apps.api.response import SuccessEnvelope, success_response
from storagegate.domain.models import FileRecord
from storagegate.persistence.repos import files as files_repo
from storagegate.services.usage_accounting import UsageAccountingService


router = APIRouter(prefix="/files", tags=["files"], responses=DEFAULT_ERROR_RESPONSES)


class FileResponse(BaseModel):
    id: str
    name: str
    kind: str
    path: str
    parent_id: str | None
    size_bytes: int
    mime_type: str | None
    confirmed: bool
    created_at: str | None
    modified_at: str | None


class CreateFolderRequest(BaseModel):
    name: str = Field(min_length=1, max_length=255)
    parent_id: str | None = None

    model_config = {"extra": "forbid"}


class UploadUrlRequest(BaseModel):
    file_name: str = Field(min_length=1, max_length=255)
    size_bytes: int = Field(ge=0)
    mime_type: str | None = Field(default=None, max_length=255)
    parent_id: str | None = None

    model_config = {"extra": "forbid"}


class UploadUrlResponse(BaseModel):
    file_id: str
    upload_url: str
    storage_key: str
    path: str
    expires_in: int


class ConfirmUploadRequest(BaseModel):
    etag: str | None = Field(default=None, max_length=255)


class DownloadUrlResponse(BaseModel):
    file_id: str
    download_url: str
    file_name: str
    size_bytes: int
    expires_in: int
    egress_used_gb: float


class DeleteFilesRequest(BaseModel):
    file_ids: list[str] = Field(min_length=1, max_length=1000)


class DeleteFailureResponse(BaseModel):
    file_id: str
    reason: str


class DeleteFilesResponse(BaseModel):
    deleted: list[str]
    failed: list[DeleteFailureResponse]


class MoveFileRequest(BaseModel):
    # Null moves the entry to the tenant root.
    parent_id: str | None = None


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value else None


def _to_response(record: FileRecord) -> FileResponse:
    return FileResponse(
        id=record.id,
        name=record.name,
        kind=record.kind,
        path=record.path,
        parent_id=record.parent_id,
        size_bytes=int(record.size_bytes or 0),
        mime_type=record.mime_type,
        confirmed=record.confirmed_at is not None,
        created_at=_iso(record.created_at),
        modified_at=_iso(record.modified_at),
    )


@router.get("", response_model=SuccessEnvelope[list[FileResponse]])
async def list_files(
    request: Request,
    parent_id: str | None = Query(default=None),
    include_pending: bool = Query(default=False),
    principal: Principal = Depends(require_tenant_principal),
    db: AsyncSession = Depends(get_db),
) -> dict:
    """List one folder level, matching the dashboard file counts.

    Uploads that were started but never confirmed are hidden unless
    ``include_pending`` is set; they then appear with ``confirmed: false``.
    """
    records = await files_repo.list_children(
        db, principal.tenant_id, parent_id, include_pending=include_pending
    )
    return success_response(request=request, data=[_to_response(record) for record in records])


@router.post("/folders", status_code=201, response_model=SuccessEnvelope[FileResponse])
async def create_folder(
    request: Request,
    payload: CreateFolderRequest,
    principal: Principal = Depends(require_active_tenant),
    db: AsyncSession = Depends(get_db),
    service: UsageAccountingService = Depends(usage_service),
) -> dict:
    folder = await service.create_folder(
        db,
        principal.tenant_id,
        name=payload.name,
        parent_id=payload.parent_id,
        actor_id=principal.subject_id,
    )
    return success_response(request=request, data=_to_response(folder))


@router.post("/upload-url", status_code=201, response_model=SuccessEnvelope[UploadUrlResponse])
async def create_upload_url(
    request: Request,
    payload: UploadUrlRequest,
    principal: Principal = Depends(require_tenant_principal),
    db: AsyncSession = Depends(get_db),
    service: UsageAccountingService = Depends(usage_service),
) -> dict:
    ticket = await service.initiate_upload(
        db,
        principal.tenant_id,
        file_name=payload.file_name,
        size_bytes=payload.size_bytes,
        mime_type=payload.mime_type,
        parent_id=payload.parent_id,
        actor_id=principal.subject_id,
        request_context=request_context(request),
    )
    data = UploadUrlResponse(
        file_id=ticket.file_id,
        upload_url=ticket.upload_url,
        storage_key=ticket.storage_key,
        path=ticket.logical_path,
        expires_in=ticket.expires_in,
    )
    return success_response(request=request, data=data)


@router.post("/{file_id}/confirm", response_model=SuccessEnvelope[FileResponse])
async def confirm_upload(
    file_id: str,
    request: Request,
    payload: ConfirmUploadRequest,
    principal: Principal = Depends(require_tenant_principal),
    db: AsyncSession = Depends(get_db),
    service: UsageAccountingService = Depends(usage_service),
) -> dict:
    record = await service.confirm_upload(db, principal.tenant_id, file_id, etag=payload.etag)
    return success_response(request=request, data=_to_response(record))


@router.post("/{file_id}/download-url", response_model=SuccessEnvelope[DownloadUrlResponse])
async def create_download_url(
    file_id: str,
    request: Request,
    principal: Principal = Depends(require_tenant_principal),
    db: AsyncSession = Depends(get_db),
    service: UsageAccountingService = Depends(usage_service),
) -> dict:
    ticket = await service.issue_download(
        db,
        principal.tenant_id,
        file_id,
        actor_id=principal.subject_id,
        request_context=request_context(request),
    )
    data = DownloadUrlResponse(
        file_id=ticket.file_id,
        download_url=ticket.download_url,
        file_name=ticket.file_name,
        size_bytes=ticket.size_bytes,
        expires_in=ticket.expires_in,
        egress_used_gb=float(ticket.egress_used_gb),
    )
    return success_response(request=request, data=data)


@router.post("/delete", response_model=SuccessEnvelope[DeleteFilesResponse])
async def delete_files(
    request: Request,
    payload: DeleteFilesRequest,
    principal: Principal = Depends(require_tenant_principal),
    db: AsyncSession = Depends(get_db),
    service: UsageAccountingService = Depends(usage_service),
) -> dict:
    outcome = await service.delete_files(
        db,
        principal.tenant_id,
        payload.file_ids,
        actor_id=principal.subject_id,
        request_context=request_context(request),
    )
    data = DeleteFilesResponse(
        deleted=outcome.deleted,
        failed=[DeleteFailureResponse(file_id=item.file_id, reason=item.reason) for item in outcome.failed],
    )
    return success_response(request=request, data=data)


@router.post("/{file_id}/move", response_model=SuccessEnvelope[FileResponse])
async def move_file(
    file_id: str,
    request: Request,
    payload: MoveFileRequest,
    principal: Principal = Depends(require_active_tenant),
    db: AsyncSession = Depends(get_db),
    service: UsageAccountingService = Depends(usage_service),
) -> dict:
    record = await service.move_file(db, principal.tenant_id, file_id, new_parent_id=payload.parent_id)
    return success_response(request=request, data=_to_response(record))
