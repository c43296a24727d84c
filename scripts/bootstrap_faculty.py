#!/usr/bin/env python3
"""Create a faculty or admin account, or reset its password and lockout.

Usage:
    FACULTY_USERNAME=jdoe FACULTY_PASSWORD=ChangeMe123 ORG_ID=100001 \
        python scripts/bootstrap_faculty.py --role faculty

    python scripts/bootstrap_faculty.py --username jdoe --password ChangeMe123 \
        --org-id 100001 --org-name "Springfield High" --role admin

Environment Variables:
    JWT_SECRET: required by the settings loader
    DATABASE_URL: PostgreSQL connection string (memory store if not set)
"""
from __future__ import annotations

import argparse
import os
import sys
from pathlib import Path

# Add project root to path for imports
ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))


def bootstrap_faculty(
    username: str,
    password: str,
    org_id: int,
    *,
    role: str = "faculty",
    org_name: str | None = None,
    full_name: str | None = None,
    dry_run: bool = False,
) -> dict:
    """Create or reset a staff account.

    Returns:
        dict with user_id, username and status ('created', 'reset' or 'dry_run')
    """
    # Import here to avoid loading config before env vars are set
    from schoolgate.service.runtime import get_runtime
    from schoolgate.storage.models import User

    runtime = get_runtime()
    store = runtime.store

    existing = store.get_staff_by_username(username)
    if existing:
        if dry_run:
            print(f"[DRY RUN] Would reset password and lockout for {username}")
            return {"user_id": existing.id, "username": username, "status": "dry_run"}
        store.set_password_hash(existing.id, runtime.auth.hash_password(password))
        store.reset_failed_logins(existing.id)
        if not existing.is_active:
            store.set_user_active(existing.id, True)
        print(f"Reset credentials for {username} (id: {existing.id})")
        return {"user_id": existing.id, "username": username, "status": "reset"}

    if dry_run:
        print(f"[DRY RUN] Would create {role} {username} in organization {org_id}")
        return {"user_id": None, "username": username, "status": "dry_run"}

    if store.get_organization(org_id) is None:
        if not org_name:
            raise ValueError(f"organization {org_id} does not exist; pass --org-name to create it")
        store.create_organization(org_id, org_name)
        print(f"Created organization {org_id} ({org_name})")

    user = store.create_user(
        User.new(
            role,
            org_id,
            username=username,
            full_name=full_name,
            password_hash=runtime.auth.hash_password(password),
        )
    )
    print(f"Created {role} {username} (id: {user.id})")
    return {"user_id": user.id, "username": username, "status": "created"}


def main():
    parser = argparse.ArgumentParser(
        description="Bootstrap a faculty/admin account",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument("--username", default=os.environ.get("FACULTY_USERNAME"))
    parser.add_argument("--password", default=os.environ.get("FACULTY_PASSWORD"))
    parser.add_argument("--org-id", type=int, default=os.environ.get("ORG_ID"))
    parser.add_argument("--org-name", default=os.environ.get("ORG_NAME"))
    parser.add_argument("--full-name", default=None)
    parser.add_argument("--role", choices=("faculty", "admin"), default="faculty")
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Show what would be done without making changes",
    )
    args = parser.parse_args()

    if not args.username or not 3 <= len(args.username) <= 50:
        print("Error: --username (3-50 characters) or FACULTY_USERNAME required")
        sys.exit(1)
    if not args.password or len(args.password) < 8:
        print("Error: --password (8+ characters) or FACULTY_PASSWORD required")
        sys.exit(1)
    if args.org_id is None:
        print("Error: --org-id or ORG_ID required")
        sys.exit(1)

    if not os.environ.get("DATABASE_URL"):
        os.environ["USE_MEMORY_STORE"] = "true"
        print("Note: Using in-memory store (set DATABASE_URL for persistence)")
    os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")

    try:
        result = bootstrap_faculty(
            args.username,
            args.password,
            int(args.org_id),
            role=args.role,
            org_name=args.org_name,
            full_name=args.full_name,
            dry_run=args.dry_run,
        )
    except Exception as e:
        print(f"Error: {e}")
        sys.exit(1)

    if result["status"] == "created":
        print("\nAccount created successfully!")
    elif result["status"] == "reset":
        print("\nPassword reset and lockout cleared.")


if __name__ == "__main__":
    main()
