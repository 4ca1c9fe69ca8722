#!/usr/bin/env python3
"""Create the initial accounts of a fresh installation.

Usage:
    # Using environment variables:
    ADMIN_USERNAME=admin ADMIN_PASSWORD=ChangeMe2024 python scripts/bootstrap_admin.py

    # Or with command line args, also creating the password-less guest account:
    python scripts/bootstrap_admin.py --username admin --password ChangeMe2024 --guest

Environment Variables:
    ADMIN_USERNAME: Username of the administrator account (default: admin)
    ADMIN_PASSWORD: Password for the administrator (8 to 50 characters)
    ADMIN_EMAIL: Address used for password recovery mail (optional)
    DATABASE_URL: PostgreSQL connection string (optional, uses memory store if not set)
"""
from __future__ import annotations

import argparse
import os
import sys
from pathlib import Path

# Add project root to path for imports
ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))


def validate_password(password: str) -> bool:
    """Apply the same length bounds the reset and change endpoints enforce."""
    from docauth.api.schemas import PASSWORD_MAX_LENGTH, PASSWORD_MIN_LENGTH

    return PASSWORD_MIN_LENGTH <= len(password.strip()) <= PASSWORD_MAX_LENGTH


def bootstrap_accounts(
    username: str,
    password: str,
    email: str = "",
    *,
    create_guest: bool = False,
    dry_run: bool = False,
) -> dict:
    """Create the administrator and, optionally, the guest account.

    Existing accounts are left alone.

    Returns:
        dict with the admin user_id and a status per account
        ('created', 'exists' or 'dry_run')
    """
    # Import here to avoid loading config before env vars are set
    from docauth.service.runtime import get_runtime

    runtime = get_runtime()
    result: dict = {"username": username, "user_id": None}

    existing = runtime.store.get_user_by_username(username)
    if existing:
        print(f"User {username} already exists (id: {existing.id})")
        result.update(user_id=existing.id, admin="exists")
    elif dry_run:
        print(f"[DRY RUN] Would create user: {username}")
        result["admin"] = "dry_run"
    else:
        password_hash, algo = runtime.credentials.hash_password(password.strip())
        user = runtime.store.create_user(
            username, email, password_hash=password_hash, password_algo=algo
        )
        print(f"Created user: {username} (id: {user.id})")
        result.update(user_id=user.id, admin="created")

    if create_guest:
        guest_name = runtime.settings.guest_username
        if runtime.store.get_user_by_username(guest_name):
            result["guest"] = "exists"
        elif dry_run:
            print(f"[DRY RUN] Would create guest account: {guest_name}")
            result["guest"] = "dry_run"
        else:
            # the guest logs in without a password, so none is stored
            guest = runtime.store.create_user(guest_name)
            print(f"Created guest account: {guest_name} (id: {guest.id})")
            result["guest"] = "created"
            if not runtime.settings.guest_login_enabled:
                print("Note: set GUEST_LOGIN_ENABLED=true to allow guest logins")

    return result


def main():
    parser = argparse.ArgumentParser(
        description="Create the initial accounts for Docauth",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument(
        "--username",
        default=os.environ.get("ADMIN_USERNAME", "admin"),
        help="Admin username (or set ADMIN_USERNAME env var)",
    )
    parser.add_argument(
        "--password",
        default=os.environ.get("ADMIN_PASSWORD"),
        help="Admin password (or set ADMIN_PASSWORD env var)",
    )
    parser.add_argument(
        "--email",
        default=os.environ.get("ADMIN_EMAIL", ""),
        help="Admin email for recovery mail (or set ADMIN_EMAIL env var)",
    )
    parser.add_argument(
        "--guest",
        action="store_true",
        help="Also create the password-less guest account",
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Show what would be done without making changes",
    )

    args = parser.parse_args()

    if not args.password:
        print("Error: --password or ADMIN_PASSWORD environment variable required")
        sys.exit(1)

    if not validate_password(args.password):
        print("Error: Password must be between 8 and 50 characters")
        sys.exit(1)

    if not os.environ.get("SHARED_FS_ROOT"):
        os.environ["SHARED_FS_ROOT"] = "/tmp/docauth-bootstrap"

    # Use memory store if no database configured
    if not os.environ.get("DATABASE_URL"):
        os.environ["USE_MEMORY_STORE"] = "true"
        print("Note: Using in-memory store (set DATABASE_URL for persistence)")

    os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")

    try:
        result = bootstrap_accounts(
            args.username,
            args.password,
            args.email,
            create_guest=args.guest,
            dry_run=args.dry_run,
        )
    except Exception as e:
        print(f"Error: {e}")
        sys.exit(1)

    if result.get("admin") == "created":
        print("\nAdministrator created successfully!")
        print(f"  Username: {result['username']}")
        print(f"  User ID: {result['user_id']}")
    elif result.get("admin") == "exists":
        print("\nNo changes needed for the administrator.")


if __name__ == "__main__":
    main()
