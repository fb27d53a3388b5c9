#!/usr/bin/env python3
"""Store the service identity's refresh token in the session store.

The service token cache reads the refresh token from the session row of
SERVICE_ACCOUNT_USER_ID and writes rotated tokens back to it, so seeding the
row once is enough for tokens to survive restarts.

Usage:
    SERVICE_ACCOUNT_SUBJECT=client-credentials@svc \
    SERVICE_ACCOUNT_REFRESH_TOKEN=v1.M... python scripts/seed_service_account.py

    python scripts/seed_service_account.py --subject svc|ingest --refresh-token v1.M... --verify

Environment Variables:
    SERVICE_ACCOUNT_SUBJECT: IdP subject of the service identity
    SERVICE_ACCOUNT_REFRESH_TOKEN: refresh token issued to the service identity
    DATABASE_URL: PostgreSQL connection string (memory store when unset)
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


async def seed_service_account(
    subject: str, refresh_token: str, *, label: str = "service", verify: bool = False, dry_run: bool = False
) -> dict:
    """Create the service user if needed and replace its session row.

    Returns:
        dict with user_id, session_id and status ('seeded', 'dry_run')
    """
    # Import here to avoid loading config before env vars are set
    from authbroker.service.runtime import get_runtime
    from authbroker.storage.models import ServiceAccountData

    runtime = get_runtime()
    user = runtime.store.get_user_by_subject(subject)
    if dry_run:
        print(f"[DRY RUN] Would store refresh token for {subject} (user exists: {user is not None})")
        return {"user_id": user.id if user else None, "session_id": None, "status": "dry_run"}

    if user is None:
        user = runtime.store.create_user(subject, name=label, role="service")
        print(f"Created service user {subject} (id: {user.id})")

    if verify:
        # Redeem once so a dead token is caught now rather than at first use
        bundle = await runtime.idp.refresh(refresh_token)
        refresh_token = bundle.refresh_token or refresh_token
        print(f"Refresh token accepted; access token valid for {bundle.expires_in}s")

    session = runtime.store.replace_session(
        user.id,
        refresh_token,
        ttl_days=runtime.settings.session_ttl_days,
        custom_data=ServiceAccountData(label=label),
    )
    return {"user_id": user.id, "session_id": session.id, "status": "seeded"}


def main():
    parser = argparse.ArgumentParser(
        description="Seed the service-account refresh token for authbroker",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument(
        "--subject",
        default=os.environ.get("SERVICE_ACCOUNT_SUBJECT"),
        help="IdP subject of the service identity (or set SERVICE_ACCOUNT_SUBJECT)",
    )
    parser.add_argument(
        "--refresh-token",
        default=os.environ.get("SERVICE_ACCOUNT_REFRESH_TOKEN"),
        help="Service refresh token (or set SERVICE_ACCOUNT_REFRESH_TOKEN)",
    )
    parser.add_argument("--label", default="service", help="Label stored with the session row")
    parser.add_argument(
        "--verify",
        action="store_true",
        help="Redeem the token against the IdP before storing it",
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Show what would be done without making changes",
    )

    args = parser.parse_args()

    if not args.subject:
        print("Error: --subject or SERVICE_ACCOUNT_SUBJECT environment variable required")
        sys.exit(1)
    if not args.refresh_token:
        print("Error: --refresh-token or SERVICE_ACCOUNT_REFRESH_TOKEN environment variable required")
        sys.exit(1)

    if not os.environ.get("DATABASE_URL"):
        os.environ["USE_MEMORY_STORE"] = "true"
        print("Note: Using in-memory store (set DATABASE_URL for persistence)")
    os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")

    try:
        result = asyncio.run(
            seed_service_account(
                args.subject,
                args.refresh_token,
                label=args.label,
                verify=args.verify,
                dry_run=args.dry_run,
            )
        )
    except Exception as e:
        print(f"Error: {e}")
        sys.exit(1)

    if result["status"] == "seeded":
        print("\nService account seeded.")
        print(f"  User ID: {result['user_id']}")
        print(f"  Session ID: {result['session_id']}")
        print(f"  Set SERVICE_ACCOUNT_USER_ID={result['user_id']} for the broker.")


if __name__ == "__main__":
    main()
