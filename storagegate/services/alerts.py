from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal
import logging
from typing import Callable
from uuid import uuid4

from sqlalchemy import delete, exists, select
from sqlalchemy.ext.asyncio import AsyncSession

from storagegate.core.errors import AlertNotFound, TenantNotFound
from storagegate.domain.models import (
    ALERT_EGRESS_LIMIT,
    ALERT_EGRESS_WARNING,
    ALERT_STORAGE_LIMIT,
    ALERT_STORAGE_WARNING,
    Alert,
)
from storagegate.persistence.repos import tenants as tenants_repo
from storagegate.services import system_settings
from storagegate.services.activity import record_activity
from storagegate.services.egress_meter import EgressMeter


logger = logging.getLogger(__name__)

_LIMIT_THRESHOLD = 100


@dataclass(frozen=True)
class AlertFamily:
    # One usage dimension: its alert kinds, threshold setting and wording.
    warning_kind: str
    limit_kind: str
    thresholds_key: str
    subject: str
    limit_message: str


EGRESS_FAMILY = AlertFamily(
    warning_kind=ALERT_EGRESS_WARNING,
    limit_kind=ALERT_EGRESS_LIMIT,
    thresholds_key=system_settings.EGRESS_ALERT_THRESHOLDS,
    subject="free egress limit",
    limit_message="You have exceeded your free egress limit!",
)

STORAGE_FAMILY = AlertFamily(
    warning_kind=ALERT_STORAGE_WARNING,
    limit_kind=ALERT_STORAGE_LIMIT,
    thresholds_key=system_settings.STORAGE_ALERT_THRESHOLDS,
    subject="storage quota",
    limit_message="You have exceeded your storage quota!",
)


class AlertEngine:
    def __init__(
        self,
        *,
        time_provider: Callable[[], datetime] | None = None,
        egress_meter: EgressMeter | None = None,
    ) -> None:
        # Share the clock with the meter so both agree on the current month.
        self._time_provider = time_provider or _utc_now
        self._egress_meter = egress_meter or EgressMeter(time_provider=self._time_provider)

    async def evaluate_egress(self, session: AsyncSession, tenant_id: str) -> Alert | None:
        tenant = await tenants_repo.get_tenant(session, tenant_id)
        if tenant is None:
            raise TenantNotFound("Tenant not found", details={"tenant_id": tenant_id})
        used = await self._egress_meter.current_month_usage(session, tenant_id)
        return await self._evaluate(
            session,
            tenant_id,
            used=used,
            limit=Decimal(tenant.egress_free_limit_gb or 0),
            family=EGRESS_FAMILY,
        )

    async def evaluate_storage(self, session: AsyncSession, tenant_id: str) -> Alert | None:
        tenant = await tenants_repo.get_tenant(session, tenant_id)
        if tenant is None:
            raise TenantNotFound("Tenant not found", details={"tenant_id": tenant_id})
        return await self._evaluate(
            session,
            tenant_id,
            used=Decimal(tenant.storage_used_gb or 0),
            limit=Decimal(tenant.storage_quota_gb or 0),
            family=STORAGE_FAMILY,
        )

    async def _evaluate(
        self,
        session: AsyncSession,
        tenant_id: str,
        *,
        used: Decimal,
        limit: Decimal,
        family: AlertFamily,
    ) -> Alert | None:
        """Raise at most one alert for the highest threshold reached.

        Thresholds are checked from highest to lowest and the first one
        reached decides the outcome, even when it is already covered for the
        month. Limit alerts (threshold >= 100) only de-duplicate against
        unread ones, so a read limit alert can be raised again.
        """
        if limit <= 0:
            return None
        percent = used / limit * 100
        thresholds = await system_settings.alert_thresholds(session, family.thresholds_key)
        now = self._time_provider()
        month_start = _month_start(now)
        for threshold in sorted(thresholds, reverse=True):
            if percent < threshold:
                continue
            is_limit = threshold >= _LIMIT_THRESHOLD
            kind = family.limit_kind if is_limit else family.warning_kind
            if await self._already_alerted(
                session, tenant_id, kind, threshold, month_start, unread_only=is_limit
            ):
                return None
            message = (
                family.limit_message
                if is_limit
                else f"You have used {threshold}% of your {family.subject}"
            )
            alert = Alert(
                id=uuid4().hex,
                tenant_id=tenant_id,
                kind=kind,
                threshold_percent=threshold,
                message=message,
                is_read=False,
                is_dismissed=False,
                created_at=now,
            )
            session.add(alert)
            await session.commit()
            logger.info(
                "alert_raised tenant_id=%s kind=%s threshold=%s percent=%.2f",
                tenant_id,
                kind,
                threshold,
                percent,
            )
            return alert
        return None

    async def _already_alerted(
        self,
        session: AsyncSession,
        tenant_id: str,
        kind: str,
        threshold: int,
        month_start: datetime,
        *,
        unread_only: bool,
    ) -> bool:
        # Check-then-insert; two racing evaluations may both insert and that is tolerated.
        conditions = [
            Alert.tenant_id == tenant_id,
            Alert.kind == kind,
            Alert.threshold_percent == threshold,
            Alert.created_at >= month_start,
        ]
        if unread_only:
            conditions.append(Alert.is_read.is_(False))
        result = await session.execute(select(exists().where(*conditions)))
        return bool(result.scalar())

    async def reset_monthly(self, session: AsyncSession) -> int:
        """Delete egress alerts raised before the current month.

        Egress history is untouched. Re-running within the same month deletes
        nothing further.
        """
        now = self._time_provider()
        month_start = _month_start(now)
        result = await session.execute(
            delete(Alert).where(
                Alert.kind.in_([ALERT_EGRESS_WARNING, ALERT_EGRESS_LIMIT]),
                Alert.created_at < month_start,
            )
        )
        deleted = int(result.rowcount or 0)
        await session.commit()
        await record_activity(
            session=session,
            tenant_id=None,
            actor_id="system",
            actor_role="admin",
            action="monthly_egress_reset",
            details="Monthly egress alerts cleared",
            metadata={"deleted": deleted, "month_start": month_start.isoformat()},
            occurred_at=now,
            commit=True,
        )
        logger.info("monthly_egress_reset deleted=%s month_start=%s", deleted, month_start.isoformat())
        return deleted

    async def list_alerts(
        self,
        session: AsyncSession,
        tenant_id: str,
        *,
        unread_only: bool = False,
        include_dismissed: bool = False,
        limit: int = 50,
    ) -> list[Alert]:
        stmt = select(Alert).where(Alert.tenant_id == tenant_id)
        if unread_only:
            stmt = stmt.where(Alert.is_read.is_(False))
        if not include_dismissed:
            stmt = stmt.where(Alert.is_dismissed.is_(False))
        result = await session.execute(
            stmt.order_by(Alert.created_at.desc(), Alert.id).limit(max(limit, 1))
        )
        return list(result.scalars().all())

    async def mark_read(self, session: AsyncSession, tenant_id: str, alert_id: str) -> Alert:
        alert = await self._get_owned(session, tenant_id, alert_id)
        alert.is_read = True
        await session.commit()
        return alert

    async def dismiss(self, session: AsyncSession, tenant_id: str, alert_id: str) -> Alert:
        alert = await self._get_owned(session, tenant_id, alert_id)
        alert.is_dismissed = True
        await session.commit()
        return alert

    async def _get_owned(self, session: AsyncSession, tenant_id: str, alert_id: str) -> Alert:
        # Foreign alerts look exactly like missing ones.
        result = await session.execute(
            select(Alert).where(Alert.id == alert_id, Alert.tenant_id == tenant_id)
        )
        alert = result.scalar_one_or_none()
        if alert is None:
            raise AlertNotFound("Alert not found", details={"alert_id": alert_id})
        return alert


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _month_start(now: datetime) -> datetime:
    # First instant of the UTC calendar month.
    return datetime(now.year, now.month, 1, tzinfo=timezone.utc)
