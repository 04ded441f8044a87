#!/usr/bin/env python3
"""Register the first admin principal and its organization.

Usage:
    ADMIN_USERNAME=admin ADMIN_EMAIL=admin@example.com ADMIN_PASSWORD=Secret123 \
        python scripts/bootstrap_admin.py

    python scripts/bootstrap_admin.py --username admin --email admin@example.com \
        --password Secret123 --organization system

Passing ``--organization system`` creates the platform organization whose
quotas are unlimited and whose admins may act on every organization.

Environment Variables:
    ADMIN_USERNAME, ADMIN_EMAIL, ADMIN_PASSWORD: credentials for the principal
    DATABASE_URL: PostgreSQL connection string (memory store when unset)
"""
from __future__ import annotations

import argparse
import asyncio
import os
import sys


async def bootstrap_admin(
    username: str,
    email: str,
    password: str,
    organization: str | None = None,
    dry_run: bool = False,
) -> dict:
    """Create the principal unless one already holds the email or username."""
    # Deferred so the env defaults set in main() are visible to Settings
    from tenantauth.service.errors import ServiceError
    from tenantauth.service.runtime import get_runtime

    runtime = get_runtime()
    for identifier in (email, username):
        existing = runtime.store.get_principal_by_identifier(identifier.strip().lower())
        if existing:
            print(f"Principal {identifier} already exists (id: {existing.id}, role: {existing.role})")
            return {"principal_id": existing.id, "status": "exists"}

    if dry_run:
        print(f"[DRY RUN] Would register {username} <{email}>")
        return {"principal_id": None, "status": "dry_run"}

    try:
        principal, org = await runtime.auth.register(
            username, email, password, organization_name=organization
        )
    except ServiceError as exc:
        print(f"Error: {exc.message}")
        return {"principal_id": None, "status": "failed", "error_code": exc.error_code}
    finally:
        await runtime.close()

    print(f"Created {principal.role} {principal.username} (id: {principal.id})")
    print(f"  Organization: {org.name} (id: {org.id})")
    return {"principal_id": principal.id, "organization_id": org.id, "status": "created"}


def main() -> int:
    parser = argparse.ArgumentParser(
        description="Bootstrap an admin principal for tenantauth",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument("--username", default=os.environ.get("ADMIN_USERNAME"))
    parser.add_argument("--email", default=os.environ.get("ADMIN_EMAIL"))
    parser.add_argument("--password", default=os.environ.get("ADMIN_PASSWORD"))
    parser.add_argument("--organization", default=None, help="Organization name")
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Show what would be done without making changes",
    )
    args = parser.parse_args()

    missing = [name for name in ("username", "email", "password") if not getattr(args, name)]
    if missing:
        print(f"Error: missing {', '.join('--' + name for name in missing)}")
        return 1

    if not os.environ.get("DATABASE_URL"):
        os.environ["USE_MEMORY_STORE"] = "true"
        os.environ.setdefault("SHARED_FS_ROOT", "/tmp/tenantauth-bootstrap")
        print("Note: using the file-backed memory store (set DATABASE_URL for PostgreSQL)")
    os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")

    result = asyncio.run(
        bootstrap_admin(
            args.username, args.email, args.password, args.organization, args.dry_run
        )
    )
    return 1 if result["status"] == "failed" else 0


if __name__ == "__main__":
    sys.exit(main())
