#!/usr/bin/env python3
"""Create or promote an administrator account.

Usage:
    ADMIN_EMAIL=admin@example.com ADMIN_PASSWORD=changeme python scripts/bootstrap_admin.py

    python scripts/bootstrap_admin.py --email admin@example.com --password changeme --name Admin

Environment Variables:
    ADMIN_EMAIL: Email for the admin user
    ADMIN_PASSWORD: Password for a newly created admin user
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


def bootstrap_admin(
    email: str,
    password: str,
    name: str = "Administrator",
    *,
    runtime=None,
    dry_run: bool = False,
) -> dict:
    """Create a verified credentials admin, or promote an existing account.

    Returns:
        dict with user_id, email, and status ('created', 'promoted',
        'already_admin' or 'dry_run')
    """
    # Import here to avoid loading config before env vars are set
    from gatehouse.service.runtime import get_runtime
    from gatehouse.storage.models import AuthMethod, UserRole

    runtime = runtime or get_runtime()
    existing_user = runtime.store.find_user_by_email(email)

    if existing_user:
        if existing_user.role is UserRole.ADMIN:
            print(f"User {email} already exists as admin (id: {existing_user.id})")
            return {"user_id": existing_user.id, "email": email, "status": "already_admin"}

        if dry_run:
            print(f"[DRY RUN] Would promote existing user {email} to admin")
            return {"user_id": existing_user.id, "email": email, "status": "dry_run"}

        runtime.store.update_user(existing_user.id, role=UserRole.ADMIN)
        print(f"Promoted existing user {email} to admin (id: {existing_user.id})")
        return {"user_id": existing_user.id, "email": email, "status": "promoted"}

    if dry_run:
        print(f"[DRY RUN] Would create admin user: {email}")
        return {"user_id": None, "email": email, "status": "dry_run"}

    user = runtime.store.create_user(
        email=email,
        display_name=name,
        password_hash=runtime.auth.hash_password(password),
        auth_method=AuthMethod.CREDENTIALS,
        role=UserRole.ADMIN,
        is_verified=True,
    )
    print(f"Created admin user: {user.email} (id: {user.id})")
    return {"user_id": user.id, "email": user.email, "status": "created"}


def main():
    parser = argparse.ArgumentParser(
        description="Bootstrap an admin user for Gatehouse",
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
    parser.add_argument("--name", default="Administrator", help="Display name")
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

    from gatehouse.api.schemas import MIN_PASSWORD_LENGTH

    if len(args.password) < MIN_PASSWORD_LENGTH:
        print(f"Error: Password must be at least {MIN_PASSWORD_LENGTH} characters")
        sys.exit(1)

    # Use memory store if no database configured
    if not os.environ.get("DATABASE_URL"):
        os.environ["USE_MEMORY_STORE"] = "true"
        os.environ.setdefault("MEMORY_STORE_ROOT", "/tmp/gatehouse-bootstrap")
        print("Note: Using in-memory store (set DATABASE_URL for persistence)")

    # sessions are never touched here
    os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")

    try:
        result = bootstrap_admin(
            args.email, args.password, args.name, dry_run=args.dry_run
        )
    except Exception as e:
        print(f"Error: {e}")
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
