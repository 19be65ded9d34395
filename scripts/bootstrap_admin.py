#!/usr/bin/env python3
"""Create a MANAGER or ADMIN account, or promote an existing user.

Registration only ever produces USER accounts, so the first privileged
account has to come from here.

Usage:
    # Using environment variables:
    ADMIN_EMAIL=admin@example.com ADMIN_PASSWORD='Secure#Pass1' python scripts/bootstrap_admin.py

    # Or with command line args:
    python scripts/bootstrap_admin.py --email lead@example.com --password 'Secure#Pass1' --role MANAGER

Environment Variables:
    ADMIN_EMAIL: Email for the account
    ADMIN_PASSWORD: Password for the account (same strength rules as registration)
    DATABASE_URL: PostgreSQL connection string (optional, uses memory store if not set)
"""
from __future__ import annotations

import argparse
import os
import secrets
import sys
from pathlib import Path

# Add project root to path for imports
ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))

PRIVILEGED_ROLES = ("MANAGER", "ADMIN")


def bootstrap_account(
    runtime,
    email: str,
    password: str,
    *,
    role: str = "ADMIN",
    first_name: str = "Admin",
    last_name: str = "User",
    dry_run: bool = False,
) -> dict:
    """Create or promote ``email`` to ``role``.

    Returns:
        dict with user_id, email, role and status
        ('created', 'promoted', 'unchanged' or 'dry_run')
    """
    from issuetrack.service.auth import password_strength_errors
    from issuetrack.storage.models import Role

    target = Role(role)
    email = email.strip().lower()
    existing_user = runtime.store.get_user_by_email(email)

    if existing_user:
        if existing_user.role == target:
            print(f"User {email} already has role {target.value} (id: {existing_user.id})")
            return {
                "user_id": existing_user.id,
                "email": email,
                "role": target.value,
                "status": "unchanged",
            }
        if dry_run:
            print(f"[DRY RUN] Would change {email} to {target.value}")
            return {"user_id": existing_user.id, "email": email, "role": target.value, "status": "dry_run"}
        runtime.store.update_user_role(existing_user.id, target)
        print(f"Promoted existing user {email} to {target.value} (id: {existing_user.id})")
        return {
            "user_id": existing_user.id,
            "email": email,
            "role": target.value,
            "status": "promoted",
        }

    problems = password_strength_errors(password)
    if problems:
        raise ValueError(problems[0])

    if dry_run:
        print(f"[DRY RUN] Would create {target.value} account: {email}")
        return {"user_id": None, "email": email, "role": target.value, "status": "dry_run"}

    user = runtime.store.create_user(
        email, first_name, last_name, role=target, is_active=True, is_verified=True
    )
    runtime.auth.save_password(user.id, password)
    print(f"Created {target.value} account: {email} (id: {user.id})")
    return {"user_id": user.id, "email": email, "role": target.value, "status": "created"}


def main():
    parser = argparse.ArgumentParser(
        description="Bootstrap a MANAGER or ADMIN account for the issue tracker",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument(
        "--email",
        default=os.environ.get("ADMIN_EMAIL"),
        help="Account email (or set ADMIN_EMAIL env var)",
    )
    parser.add_argument(
        "--password",
        default=os.environ.get("ADMIN_PASSWORD"),
        help="Account password (or set ADMIN_PASSWORD env var)",
    )
    parser.add_argument("--role", choices=PRIVILEGED_ROLES, default="ADMIN")
    parser.add_argument("--first-name", default="Admin")
    parser.add_argument("--last-name", default="User")
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

    # signing secrets are required at startup but unused by this script
    os.environ.setdefault("JWT_SECRET", secrets.token_urlsafe(48))
    os.environ.setdefault("REFRESH_TOKEN_SECRET", secrets.token_urlsafe(48))

    if not os.environ.get("DATABASE_URL"):
        os.environ["USE_MEMORY_STORE"] = "true"
        print("Note: Using in-memory store (set DATABASE_URL for persistence)")

    os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")

    try:
        from issuetrack.service.runtime import get_runtime

        result = bootstrap_account(
            get_runtime(),
            args.email,
            args.password,
            role=args.role,
            first_name=args.first_name,
            last_name=args.last_name,
            dry_run=args.dry_run,
        )
    except Exception as e:
        print(f"Error: {e}")
        sys.exit(1)

    if result["status"] == "created":
        print(f"\n{result['role']} account created successfully!")
        print(f"  Email: {result['email']}")
        print(f"  User ID: {result['user_id']}")
    elif result["status"] == "promoted":
        print(f"\nExisting user promoted to {result['role']}!")
    elif result["status"] == "unchanged":
        print("\nNo changes needed.")


if __name__ == "__main__":
    main()
