#!/usr/bin/env python3
"""Create the first super admin, or promote an existing account to one.

Usage:
    # Using environment variables:
    ADMIN_EMAIL=root@farm.example ADMIN_PASSWORD='Harvest-Moon-2024' ADMIN_PHONE=+15550100 \
        python scripts/bootstrap_admin.py

    # Or with command line args:
    python scripts/bootstrap_admin.py --email root@farm.example --password 'Harvest-Moon-2024' \
        --name "Ops Root" --phone +15550100

Environment Variables:
    ADMIN_EMAIL: Email for the super admin
    ADMIN_PASSWORD: Password (at least 12 characters, 3 of 4 character classes)
    ADMIN_NAME: Display name (default "Super Admin")
    ADMIN_PHONE: Phone number, required when the account does not exist yet
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

SUPER_ADMIN = "super_admin"


def validate_password(password: str) -> bool:
    """Check password meets complexity requirements."""
    if len(password) < 12:
        return False
    has_upper = any(c.isupper() for c in password)
    has_lower = any(c.islower() for c in password)
    has_digit = any(c.isdigit() for c in password)
    has_special = any(not c.isalnum() for c in password)
    return sum([has_upper, has_lower, has_digit, has_special]) >= 3


def bootstrap_admin(
    email: str,
    password: str,
    *,
    name: str = "Super Admin",
    phone: str | None = None,
    dry_run: bool = False,
) -> dict:
    """Create or promote a super admin.

    Returns:
        dict with user_id, email, and status
        ('created', 'promoted', 'already_super_admin' or 'dry_run')
    """
    # Import here to avoid loading config before env vars are set
    from agrilink.service.runtime import get_runtime

    runtime = get_runtime()
    email = runtime.auth.normalize_email(email)
    existing_user = runtime.store.get_user_by_email(email)

    if existing_user:
        if existing_user.role == SUPER_ADMIN:
            print(f"User {email} is already a super admin (id: {existing_user.id})")
            return {
                "user_id": existing_user.id,
                "email": email,
                "status": "already_super_admin",
            }
        if dry_run:
            print(f"[DRY RUN] Would promote existing user {email} to super admin")
            return {"user_id": existing_user.id, "email": email, "status": "dry_run"}
        runtime.store.update_user_role(existing_user.id, SUPER_ADMIN)
        print(f"Promoted existing user {email} to super admin (id: {existing_user.id})")
        return {"user_id": existing_user.id, "email": email, "status": "promoted"}

    if not phone:
        raise ValueError("--phone or ADMIN_PHONE is required to create a new account")

    if dry_run:
        print(f"[DRY RUN] Would create super admin: {email}")
        return {"user_id": None, "email": email, "status": "dry_run"}

    # Self-service registration only grants buyer/farmer; promote afterwards
    user, _ = runtime.auth.register(name=name, email=email, password=password, phone=phone)
    runtime.store.update_user_role(user.id, SUPER_ADMIN)
    print(f"Created super admin: {email} (id: {user.id})")
    return {"user_id": user.id, "email": email, "status": "created"}


def main():
    parser = argparse.ArgumentParser(
        description="Bootstrap a super admin for AgriLink",
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
        "--name",
        default=os.environ.get("ADMIN_NAME", "Super Admin"),
        help="Display name (or set ADMIN_NAME env var)",
    )
    parser.add_argument(
        "--phone",
        default=os.environ.get("ADMIN_PHONE"),
        help="Phone number for a new account (or set ADMIN_PHONE env var)",
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

    if not validate_password(args.password):
        print("Error: Password must be at least 12 characters with 3+ character classes")
        print("       (uppercase, lowercase, digits, special characters)")
        sys.exit(1)

    if not os.environ.get("SHARED_FS_ROOT"):
        os.environ["SHARED_FS_ROOT"] = "/tmp/agrilink-bootstrap"

    # Use memory store if no database configured
    if not os.environ.get("DATABASE_URL"):
        os.environ["USE_MEMORY_STORE"] = "true"
        print("Note: Using in-memory store (set DATABASE_URL for persistence)")

    os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")

    try:
        result = bootstrap_admin(
            args.email,
            args.password,
            name=args.name,
            phone=args.phone,
            dry_run=args.dry_run,
        )
    except Exception as e:
        print(f"Error: {e}")
        sys.exit(1)

    if result["status"] == "created":
        print("\nSuper admin created successfully!")
        print(f"  Email: {result['email']}")
        print(f"  User ID: {result['user_id']}")
    elif result["status"] == "promoted":
        print("\nExisting user promoted to super admin!")
    elif result["status"] == "already_super_admin":
        print("\nNo changes needed - user is already a super admin.")


if __name__ == "__main__":
    main()
