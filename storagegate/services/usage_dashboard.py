from __future__ import annotations

from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Callable

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from storagegate.core.config import get_settings
from storagegate.core.errors import TenantNotFound
from storagegate.domain.models import (
    ALERT_EGRESS_LIMIT,
    ALERT_EGRESS_WARNING,
    ALERT_STORAGE_LIMIT,
    ALERT_STORAGE_WARNING,
    FILE_KIND_FILE,
    FILE_KIND_FOLDER,
    Alert,
    DownloadHistory,
    EgressRecord,
    FileRecord,
    Tenant,
)
from storagegate.persistence.repos import files as files_repo
from storagegate.persistence.repos import tenants as tenants_repo
from storagegate.services.activity import recent_activity
from storagegate.services.egress_meter import EgressMeter, month_key
from storagegate.services.quota_ledger import STORAGE_PLACES, percent_of


def _gb(value: Decimal | None) -> float:
    # JSON consumers get plain numbers rounded to the storage precision.
    return float(Decimal(value or 0).quantize(STORAGE_PLACES))


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value else None


async def tenant_dashboard(
    session: AsyncSession,
    tenant_id: str,
    *,
    time_provider: Callable[[], datetime] | None = None,
) -> dict[str, Any]:
    # Read-only view combining cached storage usage with live egress for the month.
    tenant = await tenants_repo.get_tenant(session, tenant_id)
    if tenant is None:
        raise TenantNotFound("Tenant not found", details={"tenant_id": tenant_id})
    clock = time_provider or _utc_now
    meter = EgressMeter(time_provider=clock)
    egress_used = await meter.current_month_usage(session, tenant_id)
    egress_limit = Decimal(tenant.egress_free_limit_gb or 0)
    storage_used = Decimal(tenant.storage_used_gb or 0)
    storage_quota = Decimal(tenant.storage_quota_gb or 0)
    counts = await files_repo.count_live_by_kind(session, tenant_id)
    unread = await session.execute(
        select(func.count())
        .select_from(Alert)
        .where(
            Alert.tenant_id == tenant_id,
            Alert.is_read.is_(False),
            Alert.is_dismissed.is_(False),
        )
    )
    activity = await recent_activity(session, tenant_id, limit=get_settings().recent_activity_limit)
    return {
        "tenant_id": tenant.id,
        "name": tenant.name,
        "status": tenant.status,
        "month": meter.current_month_key(),
        "storage": {
            "quota_gb": _gb(storage_quota),
            "used_gb": _gb(storage_used),
            "percent": float(percent_of(storage_used, storage_quota)),
        },
        "egress": {
            "free_limit_gb": _gb(egress_limit),
            "used_gb": float(egress_used),
            "percent": float(percent_of(egress_used, egress_limit)),
            "chargeable_gb": float(max(egress_used - egress_limit, Decimal("0"))),
        },
        "files": counts[FILE_KIND_FILE],
        "folders": counts[FILE_KIND_FOLDER],
        "unread_alerts": int(unread.scalar() or 0),
        "recent_activity": [
            {
                "action": entry.action,
                "details": entry.details,
                "created_at": _iso(entry.created_at),
            }
            for entry in activity
        ],
    }


async def system_stats(
    session: AsyncSession,
    *,
    time_provider: Callable[[], datetime] | None = None,
) -> dict[str, Any]:
    # Platform-wide aggregates for the admin overview.
    now = (time_provider or _utc_now)()
    by_status = await session.execute(select(Tenant.status, func.count()).group_by(Tenant.status))
    status_counts = {status: int(total or 0) for status, total in by_status.all()}
    storage_total = await session.execute(select(func.sum(Tenant.storage_used_gb)))
    egress_total = await session.execute(
        select(func.sum(EgressRecord.egress_used_gb)).where(EgressRecord.month_key == month_key(now))
    )
    file_total = await session.execute(
        select(func.count())
        .select_from(FileRecord)
        .where(
            FileRecord.kind == FILE_KIND_FILE,
            FileRecord.deleted_at.is_(None),
            FileRecord.confirmed_at.is_not(None),
        )
    )
    alert_counts = await session.execute(
        select(Alert.kind, func.count())
        .where(Alert.is_read.is_(False))
        .group_by(Alert.kind)
    )
    unread_by_kind = {kind: int(total or 0) for kind, total in alert_counts.all()}
    return {
        "tenants": {
            "total": sum(status_counts.values()),
            "active": status_counts.get("active", 0),
            "suspended": status_counts.get("suspended", 0),
        },
        "total_storage_gb": _gb(storage_total.scalar()),
        "month": month_key(now),
        "total_egress_gb": _gb(egress_total.scalar()),
        "total_files": int(file_total.scalar() or 0),
        "unread_storage_alerts": unread_by_kind.get(ALERT_STORAGE_WARNING, 0)
        + unread_by_kind.get(ALERT_STORAGE_LIMIT, 0),
        "unread_egress_alerts": unread_by_kind.get(ALERT_EGRESS_WARNING, 0)
        + unread_by_kind.get(ALERT_EGRESS_LIMIT, 0),
    }


async def download_history(
    session: AsyncSession,
    tenant_id: str,
    *,
    limit: int = 50,
    offset: int = 0,
) -> dict[str, Any]:
    # Clamp paging so a single request cannot pull the whole table.
    max_page = get_settings().download_history_max_page_size
    limit = min(max(limit, 1), max_page)
    offset = max(offset, 0)
    total = await session.execute(
        select(func.count()).select_from(DownloadHistory).where(DownloadHistory.tenant_id == tenant_id)
    )
    rows = await session.execute(
        select(DownloadHistory)
        .where(DownloadHistory.tenant_id == tenant_id)
        .order_by(DownloadHistory.downloaded_at.desc(), DownloadHistory.id)
        .limit(limit)
        .offset(offset)
    )
    return {
        "items": [
            {
                "id": row.id,
                "file_id": row.file_id,
                "file_name": row.file_name,
                "file_size_bytes": int(row.file_size_bytes or 0),
                "status": row.status,
                "downloaded_at": _iso(row.downloaded_at),
            }
            for row in rows.scalars().all()
        ],
        "total": int(total.scalar() or 0),
        "limit": limit,
        "offset": offset,
    }


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)
