from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
import hashlib
import secrets
from typing import Callable
from uuid import uuid4

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from storagegate.core.config import get_settings
from storagegate.domain.models import TENANT_STATUS_ACTIVE, AccessSession


ROLE_CLIENT = "client"
ROLE_ADMIN = "admin"
ROLES = frozenset({ROLE_CLIENT, ROLE_ADMIN})

CAPABILITY_ACTIVE_TENANT = "active_tenant"
CAPABILITY_ADMIN = "admin"

_TOKEN_PREFIX = "sgt_"


def normalize_role(role: str) -> str:
    normalized = role.strip().lower()
    if normalized not in ROLES:
        raise ValueError(f"Unsupported role: {role}")
    return normalized


def capabilities_for(*, role: str, tenant_status: str | None) -> frozenset[str]:
    # Computed once per request; handlers only test membership.
    capabilities: set[str] = set()
    if role == ROLE_ADMIN:
        capabilities.add(CAPABILITY_ADMIN)
    if tenant_status == TENANT_STATUS_ACTIVE:
        capabilities.add(CAPABILITY_ACTIVE_TENANT)
    return frozenset(capabilities)


def hash_token(raw_token: str) -> str:
    # SHA-256 keeps lookups deterministic without storing the secret.
    return hashlib.sha256(raw_token.encode("utf-8")).hexdigest()


@dataclass(frozen=True)
class IssuedSession:
    session_id: str
    token: str
    expires_at: datetime


async def issue_access_session(
    session: AsyncSession,
    *,
    subject_id: str,
    role: str,
    tenant_id: str | None,
    ttl_minutes: int | None = None,
    time_provider: Callable[[], datetime] | None = None,
) -> IssuedSession:
    # The raw token is returned once and never persisted.
    now = (time_provider or _utc_now)()
    ttl = ttl_minutes if ttl_minutes is not None else get_settings().access_session_ttl_minutes
    session_id = uuid4().hex
    raw_token = f"{_TOKEN_PREFIX}{session_id}_{secrets.token_urlsafe(32)}"
    expires_at = now + timedelta(minutes=ttl)
    session.add(
        AccessSession(
            id=session_id,
            token_hash=hash_token(raw_token),
            subject_id=subject_id,
            tenant_id=tenant_id,
            role=normalize_role(role),
            expires_at=expires_at,
            created_at=now,
        )
    )
    await session.commit()
    return IssuedSession(session_id=session_id, token=raw_token, expires_at=expires_at)


async def resolve_access_session(
    session: AsyncSession,
    raw_token: str,
    *,
    time_provider: Callable[[], datetime] | None = None,
) -> AccessSession | None:
    # Expired sessions resolve to None; pruning happens in the maintenance job.
    now = (time_provider or _utc_now)()
    result = await session.execute(
        select(AccessSession).where(
            AccessSession.token_hash == hash_token(raw_token),
            AccessSession.expires_at > now,
        )
    )
    return result.scalar_one_or_none()


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)
