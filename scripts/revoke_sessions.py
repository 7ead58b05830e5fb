#!/usr/bin/env python3
"""Revoke every active session of a user (security-event response).

Usage:
    # By user id:
    python scripts/revoke_sessions.py --user-id 5b1c...

    # By username or email:
    python scripts/revoke_sessions.py --user alice@example.com

    # Show how many refresh tokens are active without changing anything:
    python scripts/revoke_sessions.py --user alice --dry-run

Environment Variables:
    DATABASE_URL: PostgreSQL connection string (required unless USE_MEMORY_STORE=true)
    JWT_SECRET: Signing key; must match the running service
    POSTGRES_ENSURE_SCHEMA: Create missing tables before running
"""
from __future__ import annotations

import argparse
import asyncio
import os
import sys
from pathlib import Path
from typing import Optional

# Add project root to path for imports
ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))


def count_active_tokens(store, user_id: str, now) -> Optional[int]:
    """Active refresh tokens for ``user_id`` when the store can enumerate them."""
    records = getattr(store, "refresh_tokens", None)
    if records is None:
        return None
    return sum(
        1 for r in list(records.values()) if r.user_id == user_id and r.is_active(now)
    )


async def revoke_sessions(
    runtime,
    *,
    user_id: Optional[str] = None,
    identifier: Optional[str] = None,
    dry_run: bool = False,
) -> dict:
    """Revoke all refresh tokens of one user.

    Returns:
        dict with user_id, status ('revoked', 'dry_run' or 'not_found') and
        the number of tokens revoked.
    """
    user = None
    if user_id:
        user = runtime.store.get_user(user_id)
    elif identifier:
        user = runtime.auth.lookup_user(identifier)
    if user is None:
        print(f"No user found for {user_id or identifier}")
        return {"user_id": user_id, "status": "not_found", "revoked": 0}

    if dry_run:
        active = count_active_tokens(runtime.store, user.id, runtime.clock.now())
        shown = "unknown" if active is None else active
        print(f"[DRY RUN] Would revoke active sessions of {user.username} (active: {shown})")
        return {"user_id": user.id, "status": "dry_run", "revoked": 0}

    count = await runtime.auth.revoke_all(user.id)
    print(f"Revoked {count} session(s) for {user.username} (id: {user.id})")
    return {"user_id": user.id, "status": "revoked", "revoked": count}


def main():
    parser = argparse.ArgumentParser(
        description="Revoke every session of a user",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    target = parser.add_mutually_exclusive_group(required=True)
    target.add_argument("--user-id", help="Internal user id")
    target.add_argument("--user", help="Username or email address")
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Show what would be done without making changes",
    )

    args = parser.parse_args()

    if not os.environ.get("DATABASE_URL") and not os.environ.get("USE_MEMORY_STORE"):
        print("Error: DATABASE_URL must point at the service database")
        sys.exit(1)
    # Refresh-token revocation does not need Redis
    os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")

    from cobalt_auth.service.runtime import get_runtime

    try:
        runtime = get_runtime()
        result = asyncio.run(
            revoke_sessions(
                runtime, user_id=args.user_id, identifier=args.user, dry_run=args.dry_run
            )
        )
    except Exception as e:
        print(f"Error: {e}")
        sys.exit(1)

    if result["status"] == "not_found":
        sys.exit(2)


if __name__ == "__main__":
    main()
