from __future__ import annotations

from datetime import datetime, timezone
from decimal import Decimal
import logging
from typing import Callable
from uuid import uuid4

from sqlalchemy import select
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.ext.asyncio import AsyncSession

from storagegate.domain.models import EgressRecord
from storagegate.persistence.db import dialect_name
from storagegate.services.quota_ledger import EGRESS_PLACES, bytes_to_gb


logger = logging.getLogger(__name__)

_ZERO = Decimal("0")


def month_key(now: datetime) -> str:
    # Calendar month bucket in UTC, e.g. "2026-10".
    return f"{now.year:04d}-{now.month:02d}"


def _insert_for(session: AsyncSession):
    # Both dialects expose on_conflict_do_update with the same signature.
    if dialect_name(session) == "postgresql":
        return pg_insert
    return sqlite_insert


class EgressMeter:
    def __init__(self, *, time_provider: Callable[[], datetime] | None = None) -> None:
        # Allow time injection for deterministic month rollover tests.
        self._time_provider = time_provider or _utc_now

    def current_month_key(self) -> str:
        return month_key(self._time_provider())

    async def record(self, session: AsyncSession, tenant_id: str, size_bytes: int) -> Decimal:
        """Add a download's size to the tenant's current-month egress.

        A single ``INSERT ... ON CONFLICT DO UPDATE`` statement performs the
        increment in the database, so concurrent calls never lose updates.
        Returns the new current-month total in GB.
        """
        key = self.current_month_key()
        delta = bytes_to_gb(max(size_bytes, 0), EGRESS_PLACES)
        insert = _insert_for(session)
        stmt = insert(EgressRecord).values(
            id=uuid4().hex,
            tenant_id=tenant_id,
            month_key=key,
            egress_used_gb=delta,
        )
        stmt = stmt.on_conflict_do_update(
            index_elements=[EgressRecord.tenant_id, EgressRecord.month_key],
            set_={
                "egress_used_gb": EgressRecord.egress_used_gb + stmt.excluded.egress_used_gb,
                "updated_at": _utc_now(),
            },
        )
        await session.execute(stmt)
        await session.commit()
        total = await self.usage_for_month(session, tenant_id, key)
        logger.info("egress_recorded tenant_id=%s month=%s delta_gb=%s total_gb=%s", tenant_id, key, delta, total)
        return total

    async def current_month_usage(self, session: AsyncSession, tenant_id: str) -> Decimal:
        return await self.usage_for_month(session, tenant_id, self.current_month_key())

    async def usage_for_month(self, session: AsyncSession, tenant_id: str, key: str) -> Decimal:
        # Read the column directly so a stale identity-mapped row is never returned.
        result = await session.execute(
            select(EgressRecord.egress_used_gb).where(
                EgressRecord.tenant_id == tenant_id,
                EgressRecord.month_key == key,
            )
        )
        value = result.scalar_one_or_none()
        if value is None:
            return _ZERO.quantize(EGRESS_PLACES)
        return Decimal(value).quantize(EGRESS_PLACES)

    async def history(self, session: AsyncSession, tenant_id: str, *, months: int = 12) -> list[EgressRecord]:
        # Month keys sort lexicographically in calendar order.
        result = await session.execute(
            select(EgressRecord)
            .where(EgressRecord.tenant_id == tenant_id)
            .order_by(EgressRecord.month_key.desc())
            .limit(max(months, 1))
        )
        return list(result.scalars().all())


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)
