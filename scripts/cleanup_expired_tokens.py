#!/usr/bin/env python3
"""Delete refresh tokens whose whole rotation chain has expired.

Rows are kept while any later link of their chain is still alive, so breach
forensics keep working until the chain is dead everywhere.

Usage:
    python scripts/cleanup_expired_tokens.py
    python scripts/cleanup_expired_tokens.py --dry-run
    python scripts/cleanup_expired_tokens.py --before 2025-01-01T00:00:00+00:00

Environment Variables:
    DATABASE_URL: PostgreSQL connection string
    USE_MEMORY_STORE / MEMORY_STORE_PERSIST: purge the persisted dev store instead
"""
from __future__ import annotations

import argparse
import asyncio
import os
import sys
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))


def parse_before(value: str) -> datetime:
    try:
        parsed = datetime.fromisoformat(value)
    except ValueError as exc:
        raise argparse.ArgumentTypeError(f"not an ISO-8601 timestamp: {value}") from exc
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


async def cleanup(before: Optional[datetime] = None, dry_run: bool = False) -> dict:
    # Import late so env defaults below apply before settings load
    from sessionguard.service.runtime import get_runtime

    runtime = get_runtime()
    result = await runtime.authority.purge_expired(before, dry_run=dry_run)
    await runtime.close()
    return result


def main(argv: Optional[list[str]] = None) -> int:
    parser = argparse.ArgumentParser(
        description="Purge expired refresh-token chains",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument(
        "--before",
        type=parse_before,
        default=None,
        help="Purge chains that expired before this ISO-8601 time (default: now)",
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Count what would be deleted without deleting",
    )
    args = parser.parse_args(argv)

    if not os.environ.get("DATABASE_URL") and not os.environ.get("USE_MEMORY_STORE"):
        os.environ["USE_MEMORY_STORE"] = "true"
        os.environ.setdefault("MEMORY_STORE_PERSIST", "true")
        print("Note: DATABASE_URL not set, purging the persisted memory store")
    os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")

    try:
        result = asyncio.run(cleanup(args.before, args.dry_run))
    except Exception as e:
        print(f"Error: {e}")
        return 1

    if result["dry_run"]:
        print(f"[DRY RUN] {result['refresh_tokens']} refresh token(s) would be deleted")
    else:
        print(f"Deleted {result['refresh_tokens']} expired refresh token(s)")
        print(f"Pruned {result['blacklist_entries']} blacklist entr(ies)")
    return 0


if __name__ == "__main__":
    sys.exit(main())
