#!/usr/bin/env python3
"""Bootstrap an administrator or driver account for initial setup.

Usage:
    # Using environment variables:
    ADMIN_USERNAME=admin ADMIN_PASSWORD=SecurePassword123! python scripts/bootstrap_admin.py

    # Or with command line args:
    python scripts/bootstrap_admin.py --username admin --password SecurePassword123! --email ops@example.com

    # A driver account keyed by truck plate, forced to change the PIN on first login:
    python scripts/bootstrap_admin.py --driver "T991 EFN" --password 4821 --must-change

Environment Variables:
    ADMIN_USERNAME: Username for the admin account
    ADMIN_PASSWORD: Password for the admin account
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


async def bootstrap_account(
    identifier: str,
    password: str,
    *,
    driver: bool = False,
    email: str | None = None,
    must_change: bool = False,
    dry_run: bool = False,
) -> dict:
    """Create an admin or driver account, or promote an existing user to admin.

    Returns:
        dict with account_id, identifier, and status
    """
    # Import here to avoid loading config before env vars are set
    from fleetauth.service.identity import normalize_plate
    from fleetauth.service.runtime import get_runtime
    from fleetauth.storage.models import AccountKind, Role

    runtime = get_runtime()
    store = runtime.store

    if driver:
        plate = normalize_plate(identifier)
        if not plate:
            raise ValueError(f"{identifier!r} is not a valid truck plate")
        existing = store.get_driver_account(plate)
    else:
        existing = store.get_account_by_username(identifier)

    if existing:
        if driver or existing.role in (Role.ADMIN, Role.SUPER_ADMIN):
            print(f"Account {existing.identifier} already exists (id: {existing.id})")
            return {"account_id": existing.id, "identifier": existing.identifier, "status": "exists"}
        if dry_run:
            print(f"[DRY RUN] Would promote existing user {identifier} to admin")
            return {"account_id": existing.id, "identifier": identifier, "status": "dry_run"}
        existing.role = Role.ADMIN
        store.save_account(existing)
        print(f"Promoted existing user {identifier} to admin (id: {existing.id})")
        return {"account_id": existing.id, "identifier": identifier, "status": "promoted"}

    if dry_run:
        kind = "driver" if driver else "admin"
        print(f"[DRY RUN] Would create {kind} account: {identifier}")
        return {"account_id": None, "identifier": identifier, "status": "dry_run"}

    account = await runtime.auth.create_account(
        AccountKind.DRIVER if driver else AccountKind.STANDARD_USER,
        identifier,
        password,
        role=Role.DRIVER if driver else Role.ADMIN,
        email=email,
        must_change_credential=must_change,
    )
    print(f"Created account: {account.identifier} (id: {account.id})")
    return {"account_id": account.id, "identifier": account.identifier, "status": "created"}


def main():
    parser = argparse.ArgumentParser(
        description="Bootstrap an admin or driver account for the fleet auth service",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument(
        "--username",
        default=os.environ.get("ADMIN_USERNAME"),
        help="Admin username (or set ADMIN_USERNAME env var)",
    )
    parser.add_argument("--driver", help="Create a driver account for this truck plate instead")
    parser.add_argument(
        "--password",
        default=os.environ.get("ADMIN_PASSWORD"),
        help="Password or PIN (or set ADMIN_PASSWORD env var)",
    )
    parser.add_argument("--email", help="Contact email for password resets")
    parser.add_argument(
        "--must-change",
        action="store_true",
        help="Require a credential change on first login",
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Show what would be done without making changes",
    )

    args = parser.parse_args()

    identifier = args.driver or args.username
    if not identifier:
        print("Error: --username (or ADMIN_USERNAME) or --driver is required")
        sys.exit(1)

    if not args.password:
        print("Error: --password or ADMIN_PASSWORD environment variable required")
        sys.exit(1)

    if not os.environ.get("SHARED_FS_ROOT"):
        os.environ["SHARED_FS_ROOT"] = "/tmp/fleetauth-bootstrap"

    # Use memory store if no database configured
    if not os.environ.get("DATABASE_URL"):
        os.environ["USE_MEMORY_STORE"] = "true"
        print("Note: Using in-memory store (set DATABASE_URL for persistence)")

    os.environ.setdefault("TEST_MODE", "true")

    from fleetauth.service.errors import ServiceError

    try:
        result = asyncio.run(
            bootstrap_account(
                identifier,
                args.password,
                driver=bool(args.driver),
                email=args.email,
                must_change=args.must_change,
                dry_run=args.dry_run,
            )
        )
    except (ServiceError, ValueError) as e:
        print(f"Error: {getattr(e, 'message', e)}")
        sys.exit(1)

    if result["status"] == "created":
        print("\nAccount created successfully!")
        print(f"  Identifier: {result['identifier']}")
        print(f"  Account ID: {result['account_id']}")
    elif result["status"] == "promoted":
        print("\nExisting user promoted to admin!")
    elif result["status"] == "exists":
        print("\nNo changes needed.")


if __name__ == "__main__":
    main()
