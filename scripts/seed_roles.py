#!/usr/bin/env python3
"""Seed the roles required when roles and permissions are enabled.

Creates ``public`` and ``authenticated`` (registration fails without the
latter) and an ``admin`` role holding every CRUD permission on roles and
permissions. Optionally grants ``admin`` to an existing user.

Usage:
    python scripts/seed_roles.py
    python scripts/seed_roles.py --admin-email admin@example.com
    python scripts/seed_roles.py --dry-run

Environment Variables:
    DATABASE_URL: PostgreSQL connection string (optional, uses memory store if not set)
    ADMIN_EMAIL: Email of a user to promote to admin
"""
from __future__ import annotations

import argparse
import os
import sys
from pathlib import Path
from typing import Optional

ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))


def seed_roles(admin_email: Optional[str] = None, dry_run: bool = False) -> dict:
    """Create the default roles and optionally promote ``admin_email``.

    Returns:
        dict with the role ids by slug and the promotion status
    """
    # Import here to avoid loading config before env vars are set
    from gatehouse.service.authorization import Resource
    from gatehouse.service.runtime import get_runtime

    runtime = get_runtime()
    config = runtime.config

    if dry_run:
        existing = {
            slug: bool(runtime.store.get_role_by_slug(slug))
            for slug in ("public", "authenticated", "admin")
        }
        print(f"[DRY RUN] Existing roles: {existing}")
        return {"roles": {}, "status": "dry_run"}

    roles = runtime.access.seed_defaults(
        [Resource(config.role_resource), Resource(config.permission_resource)]
    )
    for slug, role in roles.items():
        print(f"Role {slug}: {role.id} ({len(role.permission_ids)} permissions)")
    result = {"roles": {slug: role.id for slug, role in roles.items()}, "status": "seeded"}

    if admin_email:
        user = runtime.store.get_user_by_email(admin_email)
        if not user:
            print(f"Error: no user with email {admin_email}")
            result["status"] = "admin_missing"
            return result
        admin_id = roles["admin"].id
        if admin_id in user.role_ids:
            print(f"User {admin_email} already has the admin role")
            result["status"] = "already_admin"
        else:
            runtime.store.update_user(user.id, role_ids=[*user.role_ids, admin_id])
            print(f"Granted admin to {admin_email} (id: {user.id})")
            result["status"] = "promoted"
    return result


def main():
    parser = argparse.ArgumentParser(
        description="Seed default roles for Gatehouse",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument(
        "--admin-email",
        default=os.environ.get("ADMIN_EMAIL"),
        help="Existing user to promote to admin (or set ADMIN_EMAIL env var)",
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Show what exists without making changes",
    )
    args = parser.parse_args()

    os.environ.setdefault("AUTH_ROLES_AND_PERMISSIONS", "true")
    if not os.environ.get("DATABASE_URL"):
        os.environ["USE_MEMORY_STORE"] = "true"
        print("Note: Using in-memory store (set DATABASE_URL for persistence)")
    os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")

    try:
        result = seed_roles(args.admin_email, args.dry_run)
    except Exception as e:
        print(f"Error: {e}")
        sys.exit(1)
    if result["status"] == "admin_missing":
        sys.exit(1)


if __name__ == "__main__":
    main()
