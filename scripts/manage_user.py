#!/usr/bin/env python3
"""Account maintenance for operators.

Usage:
    python scripts/manage_user.py deactivate --email user@example.com
    python scripts/manage_user.py activate --email user@example.com
    python scripts/manage_user.py logout-all --email user@example.com
    python scripts/manage_user.py show --email user@example.com

Deactivating an account makes every request carrying one of its tokens fail
with "Account is deactivated." without touching the ledgers; ``logout-all``
revokes the tokens themselves. Sockets that are already open stay connected.

Environment Variables:
    JWT_SECRET, EMAIL_ENCRYPTION_KEY: the same secrets the server runs with
    DATABASE_URL / USE_MEMORY_STORE / SHARED_FS_ROOT: where users are stored
"""
from __future__ import annotations

import argparse
import asyncio
import json
import os
import sys
from pathlib import Path

# Add project root to path for imports
ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))

ACTIONS = ("activate", "deactivate", "logout-all", "show")


async def manage_user(action: str, email: str, dry_run: bool = False) -> dict:
    """Apply ``action`` to the account registered under ``email``.

    Returns:
        dict with user_id, action and status ('applied', 'unchanged',
        'dry_run' or 'not_found')
    """
    # Import here so settings are read after the CLI has adjusted the env
    from chatkeep.service.email_crypto import mask_email
    from chatkeep.service.runtime import get_runtime

    runtime = get_runtime()
    credentials = runtime.credentials
    user = await credentials.find_by_email(email)
    if user is None:
        return {"user_id": None, "action": action, "status": "not_found"}

    result = {"user_id": user.id, "action": action}
    if action == "show":
        public = credentials.to_public(user)
        # Operator output never carries the full address
        public["email"] = mask_email(public["email"])
        return {
            **result,
            "status": "unchanged",
            "user": public,
            "email_matches": credentials.crypto.verify_email(email, user.email),
            "active_tokens": len(user.valid_tokens),
            "revoked_tokens": len(user.blacklisted_tokens),
        }

    if action in ("activate", "deactivate"):
        target = action == "activate"
        if user.is_active == target:
            return {**result, "status": "unchanged"}
        if dry_run:
            return {**result, "status": "dry_run"}
        await credentials.set_active(user, target)
        return {**result, "status": "applied"}

    if dry_run:
        return {**result, "status": "dry_run", "tokens": len(user.valid_tokens)}
    revoked = len(user.valid_tokens)
    await credentials.logout_all_devices(user)
    return {**result, "status": "applied", "tokens": revoked}


def main():
    parser = argparse.ArgumentParser(
        description="Activate, deactivate or sign out a chatkeep account",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument("action", choices=ACTIONS)
    parser.add_argument(
        "--email",
        default=os.environ.get("TARGET_EMAIL"),
        help="Account email (or set TARGET_EMAIL env var)",
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Show what would be done without making changes",
    )
    args = parser.parse_args()

    if not args.email:
        print("Error: --email or TARGET_EMAIL environment variable required")
        sys.exit(1)

    try:
        result = asyncio.run(manage_user(args.action, args.email, args.dry_run))
    except Exception as e:
        print(f"Error: {e}")
        sys.exit(1)

    if result["status"] == "not_found":
        print(f"No account registered for {args.email}")
        sys.exit(2)
    print(json.dumps(result, indent=2, default=str))


if __name__ == "__main__":
    main()
