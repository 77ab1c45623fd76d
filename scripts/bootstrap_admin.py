#!/usr/bin/env python3
"""Create the first SUPER_ADMIN account, or promote an existing one.

Usage:
    ADMIN_EMAIL=root@example.com ADMIN_PASSWORD=Str0ngPassword python scripts/bootstrap_admin.py
    python scripts/bootstrap_admin.py --email root@example.com --password Str0ngPassword

Environment Variables:
    ADMIN_EMAIL: Email for the account
    ADMIN_PASSWORD: Password (8-100 chars with upper, lower and a digit)
    DATABASE_URL: PostgreSQL connection string (memory store when unset, useful only for dry runs)
"""
from __future__ import annotations

import argparse
import asyncio
import os
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))


async def bootstrap_admin(email: str, password: str, dry_run: bool = False) -> dict:
    """Returns a dict with user_id, email and status."""
    # Imported late so env defaults below apply before settings load
    from boxoffice.config import Role
    from boxoffice.service.directory import run_blocking
    from boxoffice.service.runtime import get_runtime

    runtime = get_runtime()
    try:
        existing = await run_blocking(runtime.store.find_by_email, email)
        if existing:
            if existing.role == Role.SUPER_ADMIN.value:
                print(f"User {email} is already SUPER_ADMIN (id: {existing.id})")
                return {"user_id": existing.id, "email": email, "status": "already_admin"}
            if dry_run:
                print(f"[DRY RUN] Would promote {email} to SUPER_ADMIN")
                return {"user_id": existing.id, "email": email, "status": "dry_run"}
            await runtime.auth.update_user(existing.id, role=Role.SUPER_ADMIN.value, is_active=True)
            return {"user_id": existing.id, "email": email, "status": "promoted"}

        if dry_run:
            print(f"[DRY RUN] Would create SUPER_ADMIN {email}")
            return {"user_id": None, "email": email, "status": "dry_run"}

        user = await runtime.auth.create_user(email, password, role=Role.SUPER_ADMIN.value)
        return {"user_id": user.id, "email": user.email, "status": "created"}
    finally:
        await runtime.close()


def main():
    parser = argparse.ArgumentParser(
        description="Bootstrap a SUPER_ADMIN account for BoxOffice",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument("--email", default=os.environ.get("ADMIN_EMAIL"), help="Account email (or ADMIN_EMAIL)")
    parser.add_argument(
        "--password", default=os.environ.get("ADMIN_PASSWORD"), help="Account password (or ADMIN_PASSWORD)"
    )
    parser.add_argument("--dry-run", action="store_true", help="Show what would be done without making changes")
    args = parser.parse_args()

    if not args.email or not args.password:
        print("Error: --email/ADMIN_EMAIL and --password/ADMIN_PASSWORD are required")
        sys.exit(1)

    from boxoffice.api.schemas import _validate_email, _validate_new_password

    try:
        email = _validate_email(args.email)
        _validate_new_password(args.password)
    except ValueError as exc:
        print(f"Error: {exc}")
        sys.exit(1)

    if not os.environ.get("DATABASE_URL"):
        os.environ["USE_MEMORY_STORE"] = "true"
        print("Note: Using in-memory store (set DATABASE_URL for persistence)")
    os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")

    try:
        result = asyncio.run(bootstrap_admin(email, args.password, args.dry_run))
    except Exception as exc:
        print(f"Error: {exc}")
        sys.exit(1)

    if result["status"] == "created":
        print(f"Created SUPER_ADMIN {result['email']} (id: {result['user_id']})")
    elif result["status"] == "promoted":
        print(f"Promoted {result['email']} to SUPER_ADMIN (id: {result['user_id']})")


if __name__ == "__main__":
    main()
