#!/usr/bin/env python3
"""Create or promote a portal admin account.

Usage:
    # Using environment variables:
    ADMIN_USERNAME=registrar ADMIN_EMAIL=registrar@example.edu ADMIN_PASSWORD=SecurePassword123! \
        python scripts/bootstrap_admin.py

    # Or with command line args:
    python scripts/bootstrap_admin.py --username registrar --email registrar@example.edu \
        --password SecurePassword123! --mfa

Environment Variables:
    ADMIN_USERNAME: Username for the admin account
    ADMIN_EMAIL: Email for the admin account
    ADMIN_PASSWORD: Password for the admin account (must meet complexity requirements)
    DATABASE_URL: PostgreSQL connection string (uses the memory store if not set)
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
    """Check password meets complexity requirements."""
    if len(password) < 12:
        return False
    has_upper = any(c.isupper() for c in password)
    has_lower = any(c.islower() for c in password)
    has_digit = any(c.isdigit() for c in password)
    has_special = any(c in "!@#$%^&*()_+-=[]{}|;':\",./<>?" for c in password)
    return sum([has_upper, has_lower, has_digit, has_special]) >= 3


def bootstrap_admin(
    store,
    username: str,
    email: str,
    password: str,
    *,
    mfa: bool = False,
    dry_run: bool = False,
) -> dict:
    """Create an admin account, or promote and reactivate an existing one.

    Returns:
        dict with account_id, username and status
        ('created', 'promoted', 'already_admin' or 'dry_run')
    """
    from argon2 import PasswordHasher, Type

    existing = store.get_account_by_identifier(username) or store.get_account_by_identifier(
        email
    )

    if existing:
        if existing.role == "admin" and existing.is_active:
            print(f"Account {existing.username} is already an active admin (id: {existing.id})")
            return {"account_id": existing.id, "username": existing.username, "status": "already_admin"}

        if dry_run:
            print(f"[DRY RUN] Would promote existing account {existing.username} to admin")
            return {"account_id": existing.id, "username": existing.username, "status": "dry_run"}

        store.update_account(existing.id, role="admin", is_active=True)
        print(f"Promoted existing account {existing.username} to admin (id: {existing.id})")
        return {"account_id": existing.id, "username": existing.username, "status": "promoted"}

    if dry_run:
        print(f"[DRY RUN] Would create admin account: {username}")
        return {"account_id": None, "username": username, "status": "dry_run"}

    password_hash = PasswordHasher(type=Type.ID).hash(password)
    account = store.create_account(
        username,
        email,
        password_hash,
        role="admin",
        is_active=True,
        mfa_email_enabled=mfa,
    )
    print(f"Created admin account: {username} (id: {account.id})")
    return {"account_id": account.id, "username": username, "status": "created"}


def main():
    parser = argparse.ArgumentParser(
        description="Bootstrap an admin account for the portal",
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
        "--mfa",
        action="store_true",
        help="Require an emailed verification code at sign-in",
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

    if not os.environ.get("DATABASE_URL"):
        os.environ["USE_MEMORY_STORE"] = "true"
        print("Note: Using in-memory store (set DATABASE_URL for persistence)")

    from uniportal.config import get_settings
    from uniportal.service.runtime import build_store

    try:
        store = build_store(get_settings())
        result = bootstrap_admin(
            store,
            args.username,
            args.email,
            args.password,
            mfa=args.mfa,
            dry_run=args.dry_run,
        )
        if result["status"] == "created":
            print("\nAdmin account created successfully!")
            print(f"  Username: {result['username']}")
            print(f"  Account ID: {result['account_id']}")
        elif result["status"] == "promoted":
            print("\nExisting account promoted to admin!")
        elif result["status"] == "already_admin":
            print("\nNo changes needed - account is already an admin.")

    except Exception as e:
        print(f"Error: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
