#!/usr/bin/env python3
"""Create the first AIVA administrator, or promote an existing account.

Workspaces can only be created and managed by admins, so a fresh deployment
needs one before anyone can share chats.

Usage:
    ADMIN_EMAIL=admin@example.com ADMIN_PASSWORD=ChangeMe123 python scripts/bootstrap_admin.py
    python scripts/bootstrap_admin.py --email admin@example.com --password ChangeMe123 \\
        --first-name Ada --last-name Admin --workspace "Operations"

Without DATABASE_URL or SQL_* variables the in-memory store is used, which
persists under SHARED_FS_ROOT.
"""
from __future__ import annotations

import argparse
import asyncio
import os
import sys
from pathlib import Path
from typing import Optional

ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))


async def bootstrap_admin(
    email: str,
    password: str,
    *,
    first_name: str = "Admin",
    last_name: str = "User",
    workspace_name: Optional[str] = None,
    dry_run: bool = False,
) -> dict:
    # Deferred so the environment defaults below apply before settings load
    from aiva.api.schemas import _validate_email, _validate_password_strength
    from aiva.service.runtime import get_runtime

    email = _validate_email(email)
    _validate_password_strength(password)
    runtime = get_runtime()

    user = runtime.store.get_user_by_email(email)
    if user and user.role == "admin":
        status = "already_admin"
    elif dry_run:
        return {"user_id": user.id if user else None, "email": email, "status": "dry_run"}
    elif user:
        await runtime.auth.set_user_role(user.id, "admin")
        status = "promoted"
    else:
        user, _session, _tokens = await runtime.auth.register(
            email, password, first_name=first_name, last_name=last_name, role="admin"
        )
        status = "created"

    result = {"user_id": user.id, "email": email, "status": status}
    if workspace_name and not dry_run:
        existing = [
            w for w in runtime.store.list_owned_workspaces(user.id) if w.name == workspace_name
        ]
        workspace = existing[0] if existing else runtime.store.create_workspace(
            user.id, workspace_name, description="Created by bootstrap_admin", is_shared=True
        )
        result["workspace_id"] = workspace.id
    return result


def main() -> None:
    parser = argparse.ArgumentParser(
        description="Bootstrap an AIVA admin user",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument("--email", default=os.environ.get("ADMIN_EMAIL"))
    parser.add_argument("--password", default=os.environ.get("ADMIN_PASSWORD"))
    parser.add_argument("--first-name", default="Admin")
    parser.add_argument("--last-name", default="User")
    parser.add_argument("--workspace", default=None, help="also create a shared workspace")
    parser.add_argument("--dry-run", action="store_true")
    args = parser.parse_args()

    if not args.email or not args.password:
        print("Error: --email/--password (or ADMIN_EMAIL/ADMIN_PASSWORD) are required")
        sys.exit(1)

    has_database = os.environ.get("DATABASE_URL") or os.environ.get("SQL_SERVER")
    if not has_database:
        os.environ["USE_MEMORY_STORE"] = "true"
        os.environ.setdefault("SHARED_FS_ROOT", "/tmp/aiva-bootstrap")
        print("Note: using the in-memory store (set DATABASE_URL for PostgreSQL)")
    # The bootstrap never calls the model, so the echo backend is enough
    os.environ.setdefault("TEST_MODE", "true")
    os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")

    try:
        result = asyncio.run(
            bootstrap_admin(
                args.email,
                args.password,
                first_name=args.first_name,
                last_name=args.last_name,
                workspace_name=args.workspace,
                dry_run=args.dry_run,
            )
        )
    except Exception as exc:
        print(f"Error: {exc}")
        sys.exit(1)

    print(f"{result['status']}: {result['email']} (id: {result['user_id']})")
    if result.get("workspace_id"):
        print(f"workspace: {result['workspace_id']}")


if __name__ == "__main__":
    main()
