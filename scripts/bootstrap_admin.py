#!/usr/bin/env python3
"""Create or promote an admin account in the configured store.

Usage:
    # Using environment variables:
    ADMIN_USERNAME=alice ADMIN_PASSWORD='s3cret-pass' python scripts/bootstrap_admin.py

    # Or with command line args:
    python scripts/bootstrap_admin.py --username alice --password 's3cret-pass'

Environment Variables:
    ADMIN_USERNAME: Username for the admin account
    ADMIN_PASSWORD: Password for the admin account
    SHARED_FS_ROOT: Directory holding the persisted store (default /tmp/venuehub-bootstrap)
"""
from __future__ import annotations

import argparse
import os
import sys
from pathlib import Path

# Add project root to path for imports
ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))

MIN_BOOTSTRAP_PASSWORD_LENGTH = 8


def bootstrap_admin(username: str, password: str, dry_run: bool = False) -> dict:
    """Create the admin account, or promote an existing account to admin.

    Returns:
        dict with account_id, username, and status
        ('created', 'promoted', 'already_admin' or 'dry_run')
    """
    # Import here so SHARED_FS_ROOT is read after the defaults below are applied
    from venuehub.service.runtime import get_runtime
    from venuehub.storage.models import Role

    runtime = get_runtime()
    existing = runtime.store.get_account_by_username(username)

    if existing:
        if existing.is_admin:
            print(f"Account {username} already exists as admin (id: {existing.id})")
            return {"account_id": existing.id, "username": username, "status": "already_admin"}
        if dry_run:
            print(f"[DRY RUN] Would promote existing account {username} to admin")
            return {"account_id": existing.id, "username": username, "status": "dry_run"}
        runtime.accounts.update_account(username, role=Role.ADMIN)
        print(f"Promoted existing account {username} to admin (id: {existing.id})")
        return {"account_id": existing.id, "username": username, "status": "promoted"}

    if dry_run:
        print(f"[DRY RUN] Would create admin account: {username}")
        return {"account_id": None, "username": username, "status": "dry_run"}

    account = runtime.accounts.create_account(username, password, Role.ADMIN)
    print(f"Created admin account: {username} (id: {account.id})")
    return {"account_id": account.id, "username": username, "status": "created"}


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(
        description="Bootstrap an admin account for VenueHub",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument(
        "--username",
        default=os.environ.get("ADMIN_USERNAME"),
        help="Admin username (or set ADMIN_USERNAME env var)",
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

    args = parser.parse_args(argv)

    if not args.username:
        print("Error: --username or ADMIN_USERNAME environment variable required")
        return 1

    if not args.password:
        print("Error: --password or ADMIN_PASSWORD environment variable required")
        return 1

    if len(args.password) < MIN_BOOTSTRAP_PASSWORD_LENGTH:
        print(f"Error: Password must be at least {MIN_BOOTSTRAP_PASSWORD_LENGTH} characters")
        return 1

    if not os.environ.get("SHARED_FS_ROOT"):
        os.environ["SHARED_FS_ROOT"] = "/tmp/venuehub-bootstrap"
        print("Note: SHARED_FS_ROOT not set; using /tmp/venuehub-bootstrap")

    try:
        result = bootstrap_admin(args.username, args.password, args.dry_run)
    except Exception as e:
        print(f"Error: {e}")
        return 1

    if result["status"] == "created":
        print("\nAdmin account created successfully!")
        print(f"  Username: {result['username']}")
        print(f"  Account ID: {result['account_id']}")
        print("  Next: log in and run /2fa/setup to get your emergency code.")
    elif result["status"] == "promoted":
        print("\nExisting account promoted to admin!")
    elif result["status"] == "already_admin":
        print("\nNo changes needed - account is already an admin.")
    return 0


if __name__ == "__main__":
    sys.exit(main())
