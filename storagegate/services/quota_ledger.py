from __future__ import annotations

from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
import logging
from typing import Any

from sqlalchemy.ext.asyncio import AsyncSession

from storagegate.core.config import BYTES_PER_GB
from storagegate.core.errors import AccountingInconsistency, TenantNotFound
from storagegate.persistence.repos import files as files_repo
from storagegate.persistence.repos import tenants as tenants_repo


logger = logging.getLogger(__name__)

STORAGE_PLACES = Decimal("0.01")
EGRESS_PLACES = Decimal("0.0001")
_ZERO = Decimal("0.00")


@dataclass(frozen=True)
class StorageSnapshot:
    # Quota and cached usage for dashboards and error payloads.
    quota_gb: Decimal
    used_gb: Decimal
    remaining_gb: Decimal
    percent: Decimal


def bytes_to_gb(value: int | Decimal, places: Decimal = STORAGE_PLACES) -> Decimal:
    # Exact decimal division; only the final value is rounded.
    return (Decimal(value) / Decimal(BYTES_PER_GB)).quantize(places, rounding=ROUND_HALF_UP)


def percent_of(used: Decimal, limit: Decimal) -> Decimal:
    # Zero or negative limits have no meaningful ratio.
    if limit <= 0:
        return _ZERO
    return (Decimal(used) / Decimal(limit) * 100).quantize(STORAGE_PLACES, rounding=ROUND_HALF_UP)


def _clean_aggregate(tenant_id: str, raw: Any) -> Decimal:
    # Missing rows sum to NULL, which means zero usage.
    if raw is None:
        return _ZERO
    try:
        total = Decimal(raw)
    except (InvalidOperation, TypeError, ValueError):
        total = Decimal("NaN")
    if total.is_nan() or total < 0:
        error = AccountingInconsistency(
            "Storage aggregate is not a non-negative number",
            details={"tenant_id": tenant_id, "aggregate": str(raw)},
        )
        logger.error("accounting_inconsistency tenant_id=%s aggregate=%s", tenant_id, raw, exc_info=error)
        return _ZERO
    return bytes_to_gb(total)


class QuotaLedger:
    async def recalculate(self, session: AsyncSession, tenant_id: str) -> Decimal:
        """Recompute cached storage usage from the authoritative file records.

        Idempotent: the result depends only on confirmed, live file sizes.
        Alerts are not evaluated here; callers decide whether to follow up.
        """
        tenant = await tenants_repo.get_tenant(session, tenant_id)
        if tenant is None:
            raise TenantNotFound("Tenant not found", details={"tenant_id": tenant_id})
        raw = await files_repo.sum_confirmed_bytes(session, tenant_id)
        used = _clean_aggregate(tenant_id, raw)
        tenant.storage_used_gb = used
        await session.commit()
        logger.info("storage_recalculated tenant_id=%s used_gb=%s", tenant_id, used)
        return used

    async def would_exceed(self, session: AsyncSession, tenant_id: str, additional_bytes: int) -> bool:
        tenant = await tenants_repo.get_tenant(session, tenant_id)
        if tenant is None:
            raise TenantNotFound("Tenant not found", details={"tenant_id": tenant_id})
        projected = Decimal(tenant.storage_used_gb or 0) + Decimal(max(additional_bytes, 0)) / Decimal(BYTES_PER_GB)
        return projected > Decimal(tenant.storage_quota_gb or 0)

    async def snapshot(self, session: AsyncSession, tenant_id: str) -> StorageSnapshot:
        tenant = await tenants_repo.get_tenant(session, tenant_id)
        if tenant is None:
            raise TenantNotFound("Tenant not found", details={"tenant_id": tenant_id})
        quota = Decimal(tenant.storage_quota_gb or 0).quantize(STORAGE_PLACES)
        used = Decimal(tenant.storage_used_gb or 0).quantize(STORAGE_PLACES)
        return StorageSnapshot(
            quota_gb=quota,
            used_gb=used,
            remaining_gb=max(quota - used, _ZERO),
            percent=percent_of(used, quota),
        )
