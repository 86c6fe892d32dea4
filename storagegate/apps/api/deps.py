from __future__ import annotations

from datetime import datetime, timezone
from typing import AsyncGenerator, Callable

from fastapi import Depends, HTTPException, Request, status
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from storagegate.core.config import get_settings
from storagegate.core.errors import AccountSuspended
from storagegate.persistence.db import get_session
from storagegate.persistence.repos import tenants as tenants_repo
from storagegate.services.activity import get_request_context
from storagegate.services.authz import (
    CAPABILITY_ACTIVE_TENANT,
    CAPABILITY_ADMIN,
    ROLE_CLIENT,
    capabilities_for,
    normalize_role,
    resolve_access_session,
)
from storagegate.services.usage_accounting import UsageAccountingService, get_usage_service


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    # One AsyncSession per request; context manager ensures close on success/error.
    async with get_session() as session:
        yield session


class Principal(BaseModel):
    subject_id: str
    tenant_id: str | None
    role: str
    session_id: str
    auth_method: str = "access_session"
    capabilities: frozenset[str] = frozenset()


def _auth_error(message: str) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail={"code": "AUTH_UNAUTHORIZED", "message": message},
        headers={"WWW-Authenticate": "Bearer"},
    )


def _forbidden_error(message: str) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_403_FORBIDDEN,
        detail={"code": "AUTH_FORBIDDEN", "message": message},
    )


def _parse_bearer_token(header_value: str | None) -> str | None:
    if not header_value:
        return None
    parts = header_value.split()
    if len(parts) != 2 or parts[0].lower() != "bearer":
        raise _auth_error("Missing or invalid bearer token")
    return parts[1]


async def _with_capabilities(db: AsyncSession, principal: Principal) -> Principal:
    # Capabilities are resolved once per request from role and live tenant status.
    tenant_status: str | None = None
    if principal.tenant_id:
        tenant = await tenants_repo.get_tenant(db, principal.tenant_id)
        tenant_status = tenant.status if tenant else None
    capabilities = capabilities_for(role=principal.role, tenant_status=tenant_status)
    return principal.model_copy(update={"capabilities": capabilities})


def _principal_from_dev_headers(request: Request) -> Principal:
    # Header identities are accepted only when AUTH_DEV_BYPASS is set.
    try:
        role = normalize_role(request.headers.get("X-Role", ROLE_CLIENT))
    except ValueError as exc:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail={"code": "AUTH_INVALID_ROLE", "message": str(exc)},
        ) from exc
    tenant_id = request.headers.get("X-Tenant-Id")
    if role == ROLE_CLIENT and not tenant_id:
        raise _auth_error("X-Tenant-Id header is required in dev bypass mode")
    return Principal(
        subject_id=f"dev-{tenant_id or role}",
        tenant_id=tenant_id,
        role=role,
        session_id="dev-bypass",
        auth_method="dev_bypass",
    )


async def get_current_principal(
    request: Request,
    db: AsyncSession = Depends(get_db),
) -> Principal:
    settings = get_settings()
    bearer_token = _parse_bearer_token(request.headers.get(settings.auth_header))
    if not settings.auth_enabled or not bearer_token:
        if settings.auth_dev_bypass:
            return await _with_capabilities(db, _principal_from_dev_headers(request))
        if not settings.auth_enabled:
            raise _auth_error("Authentication disabled; set AUTH_DEV_BYPASS=true for dev access")
        raise _auth_error("Missing bearer token")

    access_session = await resolve_access_session(db, bearer_token)
    if access_session is None:
        raise _auth_error("Invalid or expired session")
    access_session.last_used_at = datetime.now(timezone.utc)
    await db.commit()
    principal = Principal(
        subject_id=access_session.subject_id,
        tenant_id=access_session.tenant_id,
        role=access_session.role,
        session_id=access_session.id,
    )
    return await _with_capabilities(db, principal)


async def require_tenant_principal(
    principal: Principal = Depends(get_current_principal),
) -> Principal:
    # File and usage routes act on the caller's own tenant; account status is left to the gate.
    if not principal.tenant_id:
        raise _forbidden_error("This operation requires a tenant-bound session")
    return principal


def require_capability(capability: str) -> Callable[..., object]:
    async def _dependency(principal: Principal = Depends(get_current_principal)) -> Principal:
        if capability in principal.capabilities:
            return principal
        # A tenant that lost active status gets the domain error rather than a generic 403.
        if capability == CAPABILITY_ACTIVE_TENANT and principal.tenant_id:
            raise AccountSuspended("Account is suspended")
        raise _forbidden_error(f"Missing capability: {capability}")

    return _dependency


require_active_tenant = require_capability(CAPABILITY_ACTIVE_TENANT)
require_admin = require_capability(CAPABILITY_ADMIN)


def usage_service() -> UsageAccountingService:
    return get_usage_service()


def request_context(request: Request) -> dict[str, str | None]:
    context = get_request_context(request)
    # Prefer the id assigned by the middleware so logs and rows line up.
    context["request_id"] = getattr(request.state, "request_id", None) or context["request_id"]
    return context
