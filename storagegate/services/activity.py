from __future__ import annotations

from datetime import datetime, timezone
import logging
from typing import Any
from uuid import uuid4

from sqlalchemy import func, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
from starlette.requests import Request

from storagegate.domain.models import ActivityLog
from storagegate.persistence.db import SessionLocal


logger = logging.getLogger(__name__)

_SENSITIVE_KEY_PATTERNS = ["access_key", "secret", "token", "authorization", "password"]
_REDACTED_VALUE = "[REDACTED]"


def sanitize_metadata(value: Any) -> Any:
    # Recursively scrub credential-like fields before they reach the log table.
    if isinstance(value, dict):
        sanitized: dict[str, Any] = {}
        for raw_key, raw_value in value.items():
            key = str(raw_key)
            if any(pattern in key.lower() for pattern in _SENSITIVE_KEY_PATTERNS):
                sanitized[key] = _REDACTED_VALUE
            else:
                sanitized[key] = sanitize_metadata(raw_value)
        return sanitized
    if isinstance(value, list):
        return [sanitize_metadata(item) for item in value]
    return value


def get_request_context(request: Request | None) -> dict[str, str | None]:
    if request is None:
        return {"request_id": None, "ip_address": None, "user_agent": None}
    request_id = request.headers.get("X-Request-Id")
    ip_address = request.client.host if request.client else None
    user_agent = request.headers.get("user-agent")
    return {"request_id": request_id, "ip_address": ip_address, "user_agent": user_agent}


async def record_activity(
    *,
    session: AsyncSession | None = None,
    tenant_id: str | None,
    action: str,
    details: str | None = None,
    actor_id: str | None = None,
    actor_role: str | None = None,
    resource_type: str | None = None,
    resource_id: str | None = None,
    request_context: dict[str, str | None] | None = None,
    metadata: dict[str, Any] | None = None,
    occurred_at: datetime | None = None,
    commit: bool = False,
) -> None:
    # Activity rows are informational; a failed write never fails the caller.
    context = request_context or {}
    entry = ActivityLog(
        id=uuid4().hex,
        tenant_id=tenant_id,
        actor_id=actor_id,
        actor_role=actor_role,
        action=action,
        details=details,
        resource_type=resource_type,
        resource_id=resource_id,
        request_id=context.get("request_id"),
        ip_address=context.get("ip_address"),
        user_agent=context.get("user_agent"),
        metadata_json=sanitize_metadata(metadata or {}),
        created_at=occurred_at or datetime.now(timezone.utc),
    )

    if session is None:
        async with SessionLocal() as own_session:
            try:
                own_session.add(entry)
                await own_session.commit()
            except SQLAlchemyError as exc:
                await own_session.rollback()
                logger.warning("activity_write_failed action=%s tenant_id=%s", action, tenant_id, exc_info=exc)
        return

    try:
        session.add(entry)
        if commit:
            await session.commit()
    except SQLAlchemyError as exc:
        if commit:
            await session.rollback()
        logger.warning("activity_write_failed action=%s tenant_id=%s", action, tenant_id, exc_info=exc)


async def recent_activity(session: AsyncSession, tenant_id: str, *, limit: int) -> list[ActivityLog]:
    result = await session.execute(
        select(ActivityLog)
        .where(ActivityLog.tenant_id == tenant_id)
        .order_by(ActivityLog.created_at.desc(), ActivityLog.id)
        .limit(limit)
    )
    return list(result.scalars().all())


async def list_activity(
    session: AsyncSession,
    *,
    tenant_id: str | None = None,
    action: str | None = None,
    resource_type: str | None = None,
    since: datetime | None = None,
    until: datetime | None = None,
    limit: int = 50,
    offset: int = 0,
) -> tuple[list[ActivityLog], int]:
    # Returns one page, newest first, plus the total matching row count.
    filters = []
    if tenant_id:
        filters.append(ActivityLog.tenant_id == tenant_id)
    if action:
        filters.append(ActivityLog.action == action)
    if resource_type:
        filters.append(ActivityLog.resource_type == resource_type)
    if since is not None:
        filters.append(ActivityLog.created_at >= since)
    if until is not None:
        filters.append(ActivityLog.created_at <= until)
    count_stmt = select(func.count()).select_from(ActivityLog)
    stmt = select(ActivityLog)
    if filters:
        count_stmt = count_stmt.where(*filters)
        stmt = stmt.where(*filters)
    total = await session.scalar(count_stmt)
    result = await session.execute(
        stmt.order_by(ActivityLog.created_at.desc(), ActivityLog.id)
        .limit(limit)
        .offset(offset)
    )
    return list(result.scalars().all()), int(total or 0)
