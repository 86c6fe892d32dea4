from __future__ import annotations

import argparse
import asyncio
import sys

from storagegate.persistence.db import SessionLocal
from storagegate.persistence.repos import tenants as tenants_repo
from storagegate.services.authz import ROLE_ADMIN, issue_access_session, normalize_role


def _build_parser() -> argparse.ArgumentParser:
    # Sessions are normally issued by the external login service; this is for ops and local dev.
    parser = argparse.ArgumentParser(description="Issue a bearer access session")
    parser.add_argument("--subject", required=True, help="Subject identifier recorded on the session")
    parser.add_argument("--role", required=True, help="Role: client|admin")
    parser.add_argument("--tenant", default=None, help="Tenant id (required for client sessions)")
    parser.add_argument("--ttl-minutes", type=int, default=None, help="Override the default lifetime")
    return parser


async def _issue(args: argparse.Namespace) -> int:
    role = normalize_role(args.role)
    if role != ROLE_ADMIN and not args.tenant:
        print("--tenant is required for client sessions", file=sys.stderr)
        return 2
    async with SessionLocal() as session:
        if args.tenant and await tenants_repo.get_tenant(session, args.tenant) is None:
            print(f"tenant not found: {args.tenant}", file=sys.stderr)
            return 1
        issued = await issue_access_session(
            session,
            subject_id=args.subject,
            role=role,
            tenant_id=args.tenant,
            ttl_minutes=args.ttl_minutes,
        )
    # Print the raw token once; only its hash is stored.
    print(f"session_id={issued.session_id}")
    print(f"expires_at={issued.expires_at.isoformat()}")
    print(f"token={issued.token}")
    return 0


if __name__ == "__main__":
    sys.exit(asyncio.run(_issue(_build_parser().parse_args())))
