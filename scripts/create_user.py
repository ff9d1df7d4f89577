#!/usr/bin/env python3
"""Create a user account directly against the configured store.

Usage:
    # Using environment variables:
    TASKVAULT_NAME=Ann TASKVAULT_EMAIL=ann@example.com TASKVAULT_PASSWORD=secret1 python scripts/create_user.py

    # Or with command line args:
    python scripts/create_user.py --name Ann --email ann@example.com --password secret1

Environment Variables:
    TASKVAULT_NAME / TASKVAULT_EMAIL / TASKVAULT_PASSWORD: account fields
    DATABASE_URL: PostgreSQL connection string (memory store if not set)
"""
from __future__ import annotations

import argparse
import asyncio
import os
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))


async def create_user(name: str, email: str, password: str, dry_run: bool = False) -> dict:
    """Register the account unless the email is taken.

    Returns:
        dict with user_id, email, and status ('created', 'exists' or 'dry_run')
    """
    # imported late so the environment tweaks in main() apply to settings
    from taskvault.api.schemas import RegisterRequest
    from taskvault.service.runtime import get_runtime

    request = RegisterRequest(name=name, email=email, password=password)
    runtime = get_runtime()

    existing = await asyncio.to_thread(runtime.store.get_user_by_email, request.email)
    if existing:
        print(f"User {request.email} already exists (id: {existing.id})")
        return {"user_id": existing.id, "email": request.email, "status": "exists"}

    if dry_run:
        print(f"[DRY RUN] Would create user: {request.email}")
        return {"user_id": None, "email": request.email, "status": "dry_run"}

    user, tokens = await runtime.auth.register(request.name, request.email, request.password)
    print(f"Created user: {user.email} (id: {user.id})")
    return {
        "user_id": user.id,
        "email": user.email,
        "status": "created",
        "access_token": tokens.access_token,
    }


def main():
    parser = argparse.ArgumentParser(
        description="Create a Taskvault user",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument("--name", default=os.environ.get("TASKVAULT_NAME"))
    parser.add_argument("--email", default=os.environ.get("TASKVAULT_EMAIL"))
    parser.add_argument("--password", default=os.environ.get("TASKVAULT_PASSWORD"))
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Show what would be done without making changes",
    )
    args = parser.parse_args()

    for field in ("name", "email", "password"):
        if not getattr(args, field):
            print(f"Error: --{field} or TASKVAULT_{field.upper()} environment variable required")
            sys.exit(1)

    if not os.environ.get("DATABASE_URL"):
        os.environ["USE_MEMORY_STORE"] = "true"
        os.environ.setdefault("SHARED_FS_ROOT", "/tmp/taskvault")
        print("Note: Using in-memory store (set DATABASE_URL for persistence)")

    try:
        result = asyncio.run(create_user(args.name, args.email, args.password, args.dry_run))
    except Exception as exc:
        print(f"Error: {exc}")
        sys.exit(1)

    if result["status"] == "created" and result.get("access_token"):
        print(f"  Access Token: {result['access_token'][:50]}...")


if __name__ == "__main__":
    main()
