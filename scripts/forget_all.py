#!/usr/bin/env python3
"""Rotate every account's persistence token, logging every user out.

Usage:
    # Against the configured database:
    DATABASE_URL=postgresql://app@db/app python scripts/forget_all.py

    # Preview how many accounts would be touched:
    python scripts/forget_all.py --dry-run

    # Smaller windows for a busy database:
    python scripts/forget_all.py --page-size 20

Environment Variables:
    DATABASE_URL: PostgreSQL connection string
    USE_MEMORY_STORE: set to true to sweep the JSON-backed development store
    PERSISTOKEN_PAGE_SIZE: default page size (overridden by --page-size)

Exit status is 0 when every token was rotated, 2 when some rotations failed
(their ids are printed so they can be re-swept), 1 on any other error.
"""
from __future__ import annotations

import argparse
import signal
import sys
import threading
from pathlib import Path

# Add project root to path for imports
ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))


def run(page_size: int | None, dry_run: bool) -> int:
    # Import here to avoid loading config before env vars are set
    from persistoken.logging import set_correlation_id
    from persistoken.service.invalidation import BulkInvalidator
    from persistoken.service.runtime import get_runtime

    # One correlation id for every log line of this run
    set_correlation_id()
    runtime = get_runtime()
    total = runtime.store.count_accounts()

    if dry_run:
        print(f"[DRY RUN] Would rotate persistence tokens for {total} account(s)")
        return 0

    invalidator = runtime.invalidator
    if page_size:
        invalidator = BulkInvalidator(runtime.store, runtime.rotation, page_size=page_size)

    cancel = threading.Event()
    previous_handler = signal.signal(signal.SIGINT, lambda *_: cancel.set())

    print(f"Rotating persistence tokens for {total} account(s)...")
    try:
        result = invalidator.invalidate_all(cancel)
    finally:
        signal.signal(signal.SIGINT, previous_handler)

    print(f"  Pages fetched: {result.pages_fetched}")
    print(f"  Rotated:       {result.rotated}")
    print(f"  Failed:        {result.failed_count}")
    if result.cancelled:
        print("\nSweep interrupted; re-run to cover the remaining accounts.")
        return 1
    if result.failures:
        print("\nAccounts still holding their old token:")
        for failure in result.failures:
            print(f"  {failure.record_id}: {failure.error}")
        return 2
    print("\nAll sessions invalidated.")
    return 0


def main():
    parser = argparse.ArgumentParser(
        description="Invalidate every persistence token",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument(
        "--page-size",
        type=int,
        default=None,
        help="Accounts per page (defaults to PERSISTOKEN_PAGE_SIZE or 50)",
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Count accounts without rotating anything",
    )

    args = parser.parse_args()

    if args.page_size is not None and args.page_size < 1:
        print("Error: --page-size must be at least 1")
        sys.exit(1)

    try:
        sys.exit(run(args.page_size, args.dry_run))
    except Exception as e:
        print(f"Error: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
