#!/usr/bin/env python3
"""Create or promote the devpanel admin account from the command line.

Usage:
    ADMIN_EMAIL=admin@example.com ADMIN_PASSWORD='Str0ng!Passw0rd' python scripts/bootstrap_admin.py

    python scripts/bootstrap_admin.py --email admin@example.com --password 'Str0ng!Passw0rd'

The email must be on ADMIN_ALLOWED_EMAILS; when that variable is unset the
given email is allowed for this run only. DATABASE_URL selects Postgres,
otherwise the in-memory store is used (useful only as a dry check).
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
    """Create the admin user, or promote an existing user with that email.

    Returns:
        dict with user_id, email, and status
    """
    # Imported late so the environment below is in place before settings load
    from portfolio_auth.service.admin import ADMIN_ROLE, email_allowed, username_from_email
    from portfolio_auth.service.errors import EmailNotAuthorizedError
    from portfolio_auth.service.passwords import PASSWORD_ALGO
    from portfolio_auth.service.runtime import get_runtime
    from portfolio_auth.storage.models import User

    runtime = get_runtime()
    if not email_allowed(email, runtime.settings.admin_allowed_emails):
        raise EmailNotAuthorizedError()

    existing = runtime.store.get_user_by_email(email)
    if existing:
        if existing.role == ADMIN_ROLE:
            print(f"User {email} already exists as admin (id: {existing.id})")
            return {"user_id": existing.id, "email": email, "status": "already_admin"}
        if dry_run:
            print(f"[DRY RUN] Would promote existing user {email} to admin")
            return {"user_id": existing.id, "email": email, "status": "dry_run"}
        existing.role = ADMIN_ROLE
        existing.is_verified = True
        runtime.store.save_user(existing)
        print(f"Promoted existing user {email} to admin (id: {existing.id})")
        return {"user_id": existing.id, "email": email, "status": "promoted"}

    password_hash = runtime.passwords.hash(password)
    if dry_run:
        print(f"[DRY RUN] Would create admin user: {email}")
        return {"user_id": None, "email": email, "status": "dry_run"}

    username = username_from_email(email)
    while runtime.store.get_user_by_username(username):
        username = f"{username}_admin"
    user = runtime.store.create_user(
        User.new(email, username, role=ADMIN_ROLE, is_verified=True)
    )
    runtime.store.save_password(user.id, password_hash, PASSWORD_ALGO)
    print(f"Created admin user: {email} (id: {user.id})")
    return {"user_id": user.id, "email": email, "status": "created"}


def main():
    parser = argparse.ArgumentParser(
        description="Bootstrap the portfolio devpanel admin",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
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
        "--dry-run",
        action="store_true",
        help="Show what would be done without making changes",
    )

    args = parser.parse_args()

    if not args.email:
        print("Error: --email or ADMIN_EMAIL environment variable required")
        sys.exit(1)

    if not args.password:
        print("Error: --password or ADMIN_PASSWORD environment variable required")
        sys.exit(1)

    email = args.email.strip().lower()
    os.environ.setdefault("ADMIN_ALLOWED_EMAILS", email)

    if not os.environ.get("DATABASE_URL"):
        os.environ["USE_MEMORY_STORE"] = "true"
        os.environ.setdefault("APP_ENV", "development")
        print("Note: Using in-memory store (set DATABASE_URL for persistence)")

    os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")

    from portfolio_auth.config import ConfigurationError
    from portfolio_auth.service.errors import ServiceError

    try:
        result = asyncio.run(bootstrap_admin(email, args.password, args.dry_run))
    except ConfigurationError as e:
        print("Error: configuration invalid:")
        for problem in e.problems:
            print(f"  - {problem}")
        sys.exit(1)
    except ServiceError as e:
        print(f"Error: {e.message}")
        sys.exit(1)

    if result["status"] == "created":
        print("\nAdmin user created successfully!")
        print(f"  Email: {result['email']}")
        print(f"  User ID: {result['user_id']}")
    elif result["status"] == "promoted":
        print("\nExisting user promoted to admin!")
    elif result["status"] == "already_admin":
        print("\nNo changes needed - user is already an admin.")


if __name__ == "__main__":
    main()
