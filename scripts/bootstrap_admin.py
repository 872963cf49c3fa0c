#!/usr/bin/env python3
"""Create the administrator account if it does not exist yet.

Usage:
    # Using the configured defaults (DEFAULT_ADMIN_EMAIL / DEFAULT_ADMIN_PASSWORD):
    python scripts/bootstrap_admin.py

    # Or with command line args:
    python scripts/bootstrap_admin.py --email admin@example.com --password 'S3cure-enough'

Environment Variables:
    DEFAULT_ADMIN_EMAIL: Email for the admin user
    DEFAULT_ADMIN_PASSWORD: Password for the admin user
    DATABASE_URL: PostgreSQL connection string
    USE_MEMORY_STORE: Set to true for a throwaway in-memory run
"""
from __future__ import annotations

import argparse
import asyncio
import os
import sys
from pathlib import Path

# Add project root to path for imports
ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))


async def bootstrap_admin(email: str | None, password: str | None, dry_run: bool = False) -> dict:
    """Create the admin user unless one with that email exists.

    Returns:
        dict with user_id, email, and status ('created', 'exists' or 'dry_run')
    """
    # Import here to avoid loading config before env vars are set
    from cajauth.service.runtime import get_runtime

    runtime = get_runtime()
    email = email or runtime.settings.default_admin_email

    existing_user = runtime.store.get_user_by_email(email)
    if existing_user:
        print(f"User {email} already exists (id: {existing_user.id}, admin: {existing_user.is_admin})")
        return {"user_id": existing_user.id, "email": email, "status": "exists"}

    if dry_run:
        print(f"[DRY RUN] Would create admin user: {email}")
        return {"user_id": None, "email": email, "status": "dry_run"}

    user = await runtime.auth.ensure_default_admin(email, password)
    if user is None:
        # Lost a race with another bootstrapper
        return {"user_id": None, "email": email, "status": "exists"}
    print(f"Created admin user: {email} (id: {user.id})")
    return {"user_id": user.id, "email": email, "status": "created"}


def main():
    parser = argparse.ArgumentParser(
        description="Bootstrap the CAJ-Pro administrator account",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument(
        "--email",
        default=os.environ.get("DEFAULT_ADMIN_EMAIL"),
        help="Admin email (or set DEFAULT_ADMIN_EMAIL env var)",
    )
    parser.add_argument(
        "--password",
        default=os.environ.get("DEFAULT_ADMIN_PASSWORD"),
        help="Admin password (or set DEFAULT_ADMIN_PASSWORD env var)",
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Show what would be done without making changes",
    )

    args = parser.parse_args()

    if args.password is not None and len(args.password) < 6:
        print("Error: Password must be at least 6 characters")
        sys.exit(1)

    if not os.environ.get("DATABASE_URL") and not os.environ.get("USE_MEMORY_STORE"):
        print("Error: set DATABASE_URL (or USE_MEMORY_STORE=true for a dry run)")
        sys.exit(1)

    try:
        result = asyncio.run(bootstrap_admin(args.email, args.password, args.dry_run))
    except Exception as e:
        print(f"Error: {e}")
        sys.exit(1)

    if result["status"] == "created":
        print("\nAdmin user created successfully!")
        print(f"  Email: {result['email']}")
        print(f"  User ID: {result['user_id']}")
    elif result["status"] == "exists":
        print("\nNo changes needed - user already exists.")


if __name__ == "__main__":
    main()
