from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Depends, Query, Request
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from storagegate.apps.api.deps import Principal, get_db, require_tenant_principal, usage_service
from storagegate.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from storagegate.apps.api.response import SuccessEnvelope, success_response
from storagegate.domain.models import Alert
from storagegate.services import usage_dashboard
from storagegate.services.usage_accounting import UsageAccountingService


router = APIRouter(prefix="/usage", tags=["usage"], responses=DEFAULT_ERROR_RESPONSES)


class AlertResponse(BaseModel):
    id: str
    kind: str
    threshold_percent: int
    message: str
    is_read: bool
    is_dismissed: bool
    created_at: str | None


class EgressMonthResponse(BaseModel):
    month: str
    egress_used_gb: float


def _alert_response(alert: Alert) -> AlertResponse:
    return AlertResponse(
        id=alert.id,
        kind=alert.kind,
        threshold_percent=int(alert.threshold_percent),
        message=alert.message,
        is_read=bool(alert.is_read),
        is_dismissed=bool(alert.is_dismissed),
        created_at=alert.created_at.isoformat() if alert.created_at else None,
    )


@router.get("/dashboard", response_model=SuccessEnvelope[dict[str, Any]])
async def dashboard(
    request: Request,
    principal: Principal = Depends(require_tenant_principal),
    db: AsyncSession = Depends(get_db),
) -> dict:
    data = await usage_dashboard.tenant_dashboard(db, principal.tenant_id)
    return success_response(request=request, data=data)


@router.get("/alerts", response_model=SuccessEnvelope[list[AlertResponse]])
async def list_alerts(
    request: Request,
    unread_only: bool = Query(default=False),
    include_dismissed: bool = Query(default=False),
    limit: int = Query(default=50, ge=1, le=200),
    principal: Principal = Depends(require_tenant_principal),
    db: AsyncSession = Depends(get_db),
    service: UsageAccountingService = Depends(usage_service),
) -> dict:
    alerts = await service.alert_engine.list_alerts(
        db,
        principal.tenant_id,
        unread_only=unread_only,
        include_dismissed=include_dismissed,
        limit=limit,
    )
    return success_response(request=request, data=[_alert_response(alert) for alert in alerts])


@router.post("/alerts/{alert_id}/read", response_model=SuccessEnvelope[AlertResponse])
async def mark_alert_read(
    alert_id: str,
    request: Request,
    principal: Principal = Depends(require_tenant_principal),
    db: AsyncSession = Depends(get_db),
    service: UsageAccountingService = Depends(usage_service),
) -> dict:
    alert = await service.alert_engine.mark_read(db, principal.tenant_id, alert_id)
    return success_response(request=request, data=_alert_response(alert))


@router.post("/alerts/{alert_id}/dismiss", response_model=SuccessEnvelope[AlertResponse])
async def dismiss_alert(
    alert_id: str,
    request: Request,
    principal: Principal = Depends(require_tenant_principal),
    db: AsyncSession = Depends(get_db),
    service: UsageAccountingService = Depends(usage_service),
) -> dict:
    alert = await service.alert_engine.dismiss(db, principal.tenant_id, alert_id)
    return success_response(request=request, data=_alert_response(alert))


@router.get("/downloads", response_model=SuccessEnvelope[dict[str, Any]])
async def downloads(
    request: Request,
    limit: int = Query(default=50, ge=1),
    offset: int = Query(default=0, ge=0),
    principal: Principal = Depends(require_tenant_principal),
    db: AsyncSession = Depends(get_db),
) -> dict:
    data = await usage_dashboard.download_history(db, principal.tenant_id, limit=limit, offset=offset)
    return success_response(request=request, data=data)


@router.get("/egress", response_model=SuccessEnvelope[list[EgressMonthResponse]])
async def egress_history(
    request: Request,
    months: int = Query(default=12, ge=1, le=120),
    principal: Principal = Depends(require_tenant_principal),
    db: AsyncSession = Depends(get_db),
    service: UsageAccountingService = Depends(usage_service),
) -> dict:
    records = await service.egress_meter.history(db, principal.tenant_id, months=months)
    data = [
        EgressMonthResponse(month=record.month_key, egress_used_gb=float(record.egress_used_gb or 0))
        for record in records
    ]
    return success_response(request=request, data=data)
