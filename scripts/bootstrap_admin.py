#!/usr/bin/env python3
"""Create or promote an admin account.

Usage:
    # Using environment variables:
    ADMIN_USERNAME=admin ADMIN_EMAIL=admin@example.com ADMIN_PASSWORD=SecurePassword123! \
        python scripts/bootstrap_admin.py

    # Or with command line args:
    python scripts/bootstrap_admin.py --username admin --email admin@example.com \
        --password SecurePassword123!

Environment Variables:
    ADMIN_USERNAME: Username for the admin account
    ADMIN_EMAIL: Email for the admin account
    ADMIN_PASSWORD: Password for the admin account (must meet complexity requirements)
    ADMIN_FULL_NAME: Display name (defaults to "Administrator")
    DATABASE_URL: PostgreSQL connection string (optional, uses memory store if not set)
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


def validate_password(password: str) -> bool:
    """At least 12 characters drawn from 3 or more character classes."""
    if len(password) < 12:
        return False
    has_upper = any(c.isupper() for c in password)
    has_lower = any(c.islower() for c in password)
    has_digit = any(c.isdigit() for c in password)
    has_special = any(c in "!@#$%^&*()_+-=[]{}|;':\",./<>?" for c in password)
    return sum([has_upper, has_lower, has_digit, has_special]) >= 3


async def bootstrap_admin(
    username: str,
    email: str,
    password: str,
    full_name: str = "Administrator",
    dry_run: bool = False,
) -> dict:
    """Create the admin, or promote an existing account with that username or email.

    Returns:
        dict with user_id, username, and status
        ('created', 'promoted', 'already_admin' or 'dry_run')
    """
    # Import here so the env defaults in main() apply before settings load
    from throttlecove.service.runtime import get_runtime
    from throttlecove.storage.models import Role

    runtime = get_runtime()

    existing_user = runtime.store.get_user_by_username(username) or runtime.store.get_user_by_email(
        email.strip().lower()
    )

    if existing_user:
        if existing_user.role == Role.ADMIN:
            print(f"User {existing_user.username} already exists as admin (id: {existing_user.id})")
            return {
                "user_id": existing_user.id,
                "username": existing_user.username,
                "status": "already_admin",
            }

        if dry_run:
            print(f"[DRY RUN] Would promote existing user {existing_user.username} to admin")
            return {"user_id": existing_user.id, "username": existing_user.username, "status": "dry_run"}

        runtime.store.update_user_role(existing_user.id, Role.ADMIN)
        print(f"Promoted existing user {existing_user.username} to admin (id: {existing_user.id})")
        return {
            "user_id": existing_user.id,
            "username": existing_user.username,
            "status": "promoted",
        }

    if dry_run:
        print(f"[DRY RUN] Would create admin user: {username}")
        return {"user_id": None, "username": username, "status": "dry_run"}

    result = await runtime.auth.register(username, email, password, full_name)
    runtime.store.update_user_role(result.user.id, Role.ADMIN)
    # Drop the registration session; its token still carries the old role
    await runtime.auth.logout(result.session.id)

    print(f"Created admin user: {username} (id: {result.user.id})")
    return {
        "user_id": result.user.id,
        "username": username,
        "status": "created",
    }


def main():
    parser = argparse.ArgumentParser(
        description="Bootstrap an admin account for ThrottleCove",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument(
        "--username",
        default=os.environ.get("ADMIN_USERNAME"),
        help="Admin username (or set ADMIN_USERNAME env var)",
    )
    parser.add_argument(
        "--email",
        default=os.environ.get("ADMIN_EMAIL"),
        help="Admin email (or set ADMIN_EMAIL env var)",
    )
    parser.add_argument(
        "--password",
        default=os.environ.get("ADMIN_PASSWORD"),
        help="Admin password (or set ADMIN_PASSWORD env var)",
    )
    parser.add_argument(
        "--full-name",
        default=os.environ.get("ADMIN_FULL_NAME", "Administrator"),
        help="Display name (or set ADMIN_FULL_NAME env var)",
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Show what would be done without making changes",
    )

    args = parser.parse_args()

    for flag, value in (("username", args.username), ("email", args.email), ("password", args.password)):
        if not value:
            print(f"Error: --{flag} or ADMIN_{flag.upper()} environment variable required")
            sys.exit(1)

    if not validate_password(args.password):
        print("Error: Password must be at least 12 characters with 3+ character classes")
        print("       (uppercase, lowercase, digits, special characters)")
        sys.exit(1)

    if not os.environ.get("SHARED_FS_ROOT"):
        os.environ["SHARED_FS_ROOT"] = "/tmp/throttlecove-bootstrap"

    # Use memory store if no database configured
    if not os.environ.get("DATABASE_URL"):
        os.environ["USE_MEMORY_STORE"] = "true"
        print("Note: Using in-memory store persisted under SHARED_FS_ROOT (set DATABASE_URL for Postgres)")

    os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")

    try:
        result = asyncio.run(
            bootstrap_admin(
                args.username, args.email, args.password, args.full_name, args.dry_run
            )
        )
    except Exception as e:
        print(f"Error: {e}")
        sys.exit(1)

    if result["status"] == "created":
        print("\nAdmin user created successfully!")
        print(f"  Username: {result['username']}")
        print(f"  User ID: {result['user_id']}")
    elif result["status"] == "promoted":
        print("\nExisting user promoted to admin!")
    elif result["status"] == "already_admin":
        print("\nNo changes needed - user is already an admin.")


if __name__ == "__main__":
    main()
