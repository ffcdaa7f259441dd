#!/usr/bin/env python3
"""Delete refresh tokens that expired longer ago than the retention window.

Expired and rotated tokens are kept for a while so replays can still be
recognised and audited; after the retention window they carry no value.

Usage:
    # Using the configured retention (REFRESH_TOKEN_RETENTION_DAYS, default 30):
    DATABASE_URL=postgresql://... python scripts/purge_refresh_tokens.py

    # Explicit window, report only:
    python scripts/purge_refresh_tokens.py --retention-days 90 --dry-run

Environment Variables:
    DATABASE_URL: PostgreSQL connection string (uses the memory store if not set)
    REFRESH_TOKEN_RETENTION_DAYS: default retention window in days
"""
from __future__ import annotations

import argparse
import os
import sys
from datetime import timedelta
from pathlib import Path

# Add project root to path for imports
ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))


def purge(retention_days: int, dry_run: bool = False) -> dict:
    """Purge expired tokens older than ``retention_days``.

    Returns:
        dict with the cutoff timestamp and the number of rows removed
    """
    # Import here to avoid loading config before env vars are set
    from tokenchain.service.runtime import get_runtime
    from tokenchain.storage.models import utcnow

    runtime = get_runtime()
    cutoff = utcnow() - timedelta(days=retention_days)

    if dry_run:
        print(f"[DRY RUN] Would delete refresh tokens that expired before {cutoff.isoformat()}")
        return {"cutoff": cutoff.isoformat(), "deleted": 0, "status": "dry_run"}

    deleted = runtime.store.purge_expired(cutoff)
    runtime.close()
    return {"cutoff": cutoff.isoformat(), "deleted": deleted, "status": "purged"}


def main():
    parser = argparse.ArgumentParser(
        description="Purge expired refresh tokens past the retention window",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument(
        "--retention-days",
        type=int,
        default=None,
        help="Days to keep expired tokens (or set REFRESH_TOKEN_RETENTION_DAYS)",
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Show what would be done without making changes",
    )

    args = parser.parse_args()

    if not os.environ.get("DATABASE_URL"):
        os.environ["USE_MEMORY_STORE"] = "true"
        print("Note: Using in-memory store (set DATABASE_URL to purge the database)")

    retention_days = args.retention_days
    if retention_days is None:
        from tokenchain.config import get_settings

        retention_days = get_settings().refresh_token_retention_days

    if retention_days < 0:
        print("Error: --retention-days must not be negative")
        sys.exit(1)

    try:
        result = purge(retention_days, args.dry_run)
    except Exception as e:
        print(f"Error: {e}")
        sys.exit(1)

    if result["status"] == "purged":
        print(f"Deleted {result['deleted']} refresh tokens expired before {result['cutoff']}")


if __name__ == "__main__":
    main()
