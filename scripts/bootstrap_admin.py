#!/usr/bin/env python3
"""Create the first administrator account.

Usage:
    # Using environment variables:
    ADMIN_USERNAME=admin ADMIN_EMAIL=admin@example.com ADMIN_PASSWORD='Str0ng!Gym#Pass' python scripts/bootstrap_admin.py

    # Or with command line args:
    python scripts/bootstrap_admin.py --username admin --email admin@example.com --password 'Str0ng!Gym#Pass'

    # Omit the password to have one generated:
    python scripts/bootstrap_admin.py --username admin --email admin@example.com

Environment Variables:
    ADMIN_USERNAME, ADMIN_EMAIL, ADMIN_PASSWORD: account details
    DATABASE_URL: PostgreSQL connection string (uses memory store if not set)
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


async def bootstrap_admin(
    username: str, email: str, password: str | None, dry_run: bool = False
) -> dict:
    """Create an admin unless one already exists.

    Returns:
        dict with user_id, username, status and, when generated, the password
    """
    # Import here to avoid loading config before env vars are set
    from gymauth.service.passwords import generate_secure_password, validate_password_strength
    from gymauth.service.runtime import get_runtime
    from gymauth.storage.models import Role

    runtime = get_runtime()

    if not runtime.auth.needs_setup():
        print("An active administrator already exists; nothing to do")
        return {"user_id": None, "username": username, "status": "already_configured"}

    generated = password is None
    password = password or generate_secure_password()
    strength = validate_password_strength(password)
    if not strength.is_valid:
        for error in strength.errors:
            print(f"  - {error}")
        raise ValueError("Password does not meet security requirements")

    if dry_run:
        print(f"[DRY RUN] Would create admin user: {username} <{email}>")
        return {"user_id": None, "username": username, "status": "dry_run"}

    user = await runtime.auth.create_user(
        username,
        email,
        password,
        role=Role.ADMIN.value,
        must_change_password=generated,
    )
    print(f"Created admin user: {username} (id: {user.id})")
    return {
        "user_id": user.id,
        "username": username,
        "status": "created",
        "password": password if generated else None,
    }


def main():
    parser = argparse.ArgumentParser(
        description="Create the first Kranos Gym administrator",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument(
        "--username",
        default=os.environ.get("ADMIN_USERNAME", "admin"),
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
        help="Admin password (or set ADMIN_PASSWORD env var); generated when omitted",
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

    # Use memory store if no database configured
    if not os.environ.get("DATABASE_URL"):
        os.environ["USE_MEMORY_STORE"] = "true"
        os.environ.setdefault("DEV_MODE", "true")
        print("Note: Using in-memory store (set DATABASE_URL for persistence)")

    os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")

    try:
        result = asyncio.run(
            bootstrap_admin(args.username, args.email, args.password, args.dry_run)
        )
    except Exception as e:
        print(f"Error: {e}")
        sys.exit(1)

    if result["status"] == "created":
        print("\nAdmin user created successfully!")
        print(f"  Username: {result['username']}")
        print(f"  User ID: {result['user_id']}")
        if result.get("password"):
            print(f"  Temporary password: {result['password']}")
            print("  The password must be changed at first login.")


if __name__ == "__main__":
    main()
