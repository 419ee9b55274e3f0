#!/usr/bin/env python3
"""Bootstrap a Developer account for initial setup.

Usage:
    # Using environment variables:
    ADMIN_EMAIL=dev@example.com ADMIN_PASSWORD='SecurePassword123!' python scripts/bootstrap_admin.py

    # Or with command line args:
    python scripts/bootstrap_admin.py --email dev@example.com --password 'SecurePassword123!'

Environment Variables:
    ADMIN_EMAIL: Email for the Developer account
    ADMIN_NAME: Display name (defaults to the email's local part)
    ADMIN_PASSWORD: Password (must meet the account password rules)
    DATABASE_URL: PostgreSQL connection string (optional, uses memory store if not set)
"""
from __future__ import annotations

import argparse
import os
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))


def bootstrap_developer(email: str, name: str, password: str, dry_run: bool = False) -> dict:
    """Create a Developer account, or promote an existing account.

    Returns:
        dict with user_id, email, and status ('created', 'promoted',
        'already_developer' or 'dry_run')
    """
    # Imported late so the environment is configured before settings load
    from admauth.service.runtime import get_runtime
    from admauth.storage.models import Rank

    runtime = get_runtime()
    existing = runtime.store.get_account_by_email(email)

    if existing:
        if existing.rank is Rank.DEVELOPER:
            print(f"Account {email} already is a Developer (id: {existing.id})")
            return {"user_id": existing.id, "email": email, "status": "already_developer"}
        if dry_run:
            print(f"[DRY RUN] Would promote {email} from {existing.rank.value} to Developer")
            return {"user_id": existing.id, "email": email, "status": "dry_run"}
        runtime.store.update_account(existing.id, rank=Rank.DEVELOPER)
        print(f"Promoted {email} to Developer (id: {existing.id})")
        return {"user_id": existing.id, "email": email, "status": "promoted"}

    if dry_run:
        print(f"[DRY RUN] Would create Developer account: {email}")
        return {"user_id": None, "email": email, "status": "dry_run"}

    account = runtime.store.create_account(
        name, email, runtime.passwords.hash(password), Rank.DEVELOPER
    )
    print(f"Created Developer account: {email} (id: {account.id})")
    return {"user_id": account.id, "email": email, "status": "created"}


def main():
    parser = argparse.ArgumentParser(
        description="Bootstrap a Developer account for the ADM console",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument(
        "--email",
        default=os.environ.get("ADMIN_EMAIL"),
        help="Account email (or set ADMIN_EMAIL env var)",
    )
    parser.add_argument(
        "--name",
        default=os.environ.get("ADMIN_NAME"),
        help="Display name (or set ADMIN_NAME env var)",
    )
    parser.add_argument(
        "--password",
        default=os.environ.get("ADMIN_PASSWORD"),
        help="Account password (or set ADMIN_PASSWORD env var)",
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

    from admauth.service.passwords import password_strength_errors

    problems = password_strength_errors(args.password)
    if problems:
        for problem in problems:
            print(f"Error: {problem}")
        sys.exit(1)

    if not os.environ.get("SHARED_FS_ROOT"):
        os.environ["SHARED_FS_ROOT"] = "/tmp/admauth-bootstrap"

    if not os.environ.get("DATABASE_URL"):
        os.environ["USE_MEMORY_STORE"] = "true"
        print("Note: Using in-memory store (set DATABASE_URL for persistence)")

    os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")

    name = args.name or args.email.split("@", 1)[0]
    try:
        result = bootstrap_developer(args.email, name, args.password, args.dry_run)
    except Exception as e:
        print(f"Error: {e}")
        sys.exit(1)

    if result["status"] == "created":
        print("\nDeveloper account created successfully!")
        print(f"  Email: {result['email']}")
        print(f"  User ID: {result['user_id']}")
    elif result["status"] == "promoted":
        print("\nExisting account promoted to Developer!")
    elif result["status"] == "already_developer":
        print("\nNo changes needed - account already is a Developer.")


if __name__ == "__main__":
    main()
