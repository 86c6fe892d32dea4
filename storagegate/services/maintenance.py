from __future__ import annotations

from datetime import datetime, timedelta, timezone
import logging
from typing import Callable, Literal

from sqlalchemy import delete
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from storagegate.core.config import get_settings
from storagegate.core.errors import StorageGateError
from storagegate.domain.models import AccessSession
from storagegate.persistence.db import SessionLocal
from storagegate.persistence.repos import tenants as tenants_repo
from storagegate.services.activity import record_activity
from storagegate.services.alerts import AlertEngine
from storagegate.services.quota_ledger import QuotaLedger


logger = logging.getLogger(__name__)

MaintenanceTask = Literal[
    "reset_monthly_alerts",
    "prune_sessions",
    "recalculate_storage",
]


async def reset_monthly_alerts(
    session: AsyncSession, *, time_provider: Callable[[], datetime] | None = None
) -> int:
    # Safe to re-run: only alerts from earlier months are deleted.
    return await AlertEngine(time_provider=time_provider).reset_monthly(session)


async def prune_expired_sessions(
    session: AsyncSession, *, time_provider: Callable[[], datetime] | None = None
) -> int:
    # Keep a short grace window after expiry before rows are removed.
    settings = get_settings()
    now = (time_provider or _utc_now)()
    cutoff = now - timedelta(hours=settings.access_session_retention_hours)
    result = await session.execute(delete(AccessSession).where(AccessSession.expires_at < cutoff))
    deleted = int(result.rowcount or 0)
    await record_activity(
        session=session,
        tenant_id=None,
        actor_id="system",
        actor_role="admin",
        action="session_cleanup",
        details="Expired sessions cleaned up",
        metadata={"deleted": deleted},
        occurred_at=now,
    )
    return deleted


async def recalculate_all_tenants(session: AsyncSession) -> int:
    # Drift correction: one tenant failing does not stop the sweep.
    ledger = QuotaLedger()
    recalculated = 0
    for tenant_id in await tenants_repo.list_tenant_ids(session):
        try:
            await ledger.recalculate(session, tenant_id)
        except (SQLAlchemyError, StorageGateError) as exc:
            await session.rollback()
            logger.warning("storage_recalculation_failed tenant_id=%s", tenant_id, exc_info=exc)
            continue
        recalculated += 1
    logger.info("storage_recalculation_sweep recalculated=%s", recalculated)
    return recalculated


async def run_maintenance_task(task: MaintenanceTask) -> int:
    # Each task runs in its own session and commits its own work.
    async with SessionLocal() as session:
        if task == "reset_monthly_alerts":
            return await reset_monthly_alerts(session)
        if task == "prune_sessions":
            deleted = await prune_expired_sessions(session)
            await session.commit()
            return deleted
        if task == "recalculate_storage":
            return await recalculate_all_tenants(session)
    raise ValueError(f"Unknown maintenance task: {task}")


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)
