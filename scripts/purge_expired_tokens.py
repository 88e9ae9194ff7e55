#!/usr/bin/env python3
"""Delete expired token records once and exit.

Useful from cron when the in-process scheduler is disabled
(TOKEN_PURGE_ENABLED=false) or to clean up after a long outage.

Usage:
    DATABASE_URL=postgresql://... python scripts/purge_expired_tokens.py
    python scripts/purge_expired_tokens.py --dry-run
"""
from __future__ import annotations

import argparse
import asyncio
import sys
from pathlib import Path

# Add project root to path for imports
ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))


async def purge_once(dry_run: bool = False) -> dict:
    """Run one sweep through the scheduler so the Redis lock is honoured."""
    from authlineage.service.runtime import get_runtime

    runtime = get_runtime()
    if dry_run:
        print("[DRY RUN] Would delete token records whose expires_at has passed")
        return {"status": "dry_run", "purged": 0}
    purged = await runtime.purge.run_once()
    if purged is None:
        return {"status": "skipped", "purged": 0}
    return {"status": "purged", "purged": purged}


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(
        description="Purge expired authentication token records",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Show what would be done without making changes",
    )
    args = parser.parse_args(argv)

    try:
        result = asyncio.run(purge_once(args.dry_run))
    except Exception as e:
        print(f"Error: {e}")
        return 1

    if result["status"] == "skipped":
        print("Another node holds the purge lock; nothing done.")
    elif result["status"] == "purged":
        print(f"Purged {result['purged']} expired token record(s).")
    return 0


if __name__ == "__main__":
    sys.exit(main())
