#!/usr/bin/env python3
"""
Backfill referral codes for accounts that do not have one yet.

Each account without a `referral_code` gets a unique MOOV-XXXXXX code and
zeroed referral ledger fields (referrals_count, free_months, filleuls).
Existing codes are never replaced.

Usage:
    # Dry run (shows what would be updated)
    python scripts/generate_referral_codes.py --dry-run

    # Actually perform updates
    python scripts/generate_referral_codes.py
"""

import argparse
import os
import sys

# Add functions directory to path for imports
sys.path.insert(0, os.path.join(os.path.dirname(__file__), "../functions"))

from shared.referral_utils import generate_unique_referral_code  # noqa: E402
from shared.user_store import UserStore  # noqa: E402


def backfill(store: UserStore, dry_run: bool = False) -> dict:
    """Assign codes to every account lacking one. Returns counters for the summary."""
    stats = {"scanned": 0, "updated": 0, "skipped": 0}

    for user in store.scan_without_referral_code():
        stats["scanned"] += 1
        label = user.get("email") or user["pk"]
        code = generate_unique_referral_code(store)

        if dry_run:
            print(f"[dry-run] {label}: would assign {code}")
            stats["updated"] += 1
            continue

        if store.assign_referral_code(user["pk"], code):
            print(f"{label}: {code}")
            stats["updated"] += 1
        else:
            # Code assigned concurrently since the scan
            stats["skipped"] += 1

    return stats


def main():
    parser = argparse.ArgumentParser(description="Backfill referral codes for existing accounts")
    parser.add_argument("--dry-run", action="store_true", help="Show what would change without writing")
    args = parser.parse_args()

    stats = backfill(UserStore(), dry_run=args.dry_run)

    print(
        f"Done: {stats['updated']} accounts {'would be ' if args.dry_run else ''}updated, "
        f"{stats['skipped']} skipped, {stats['scanned']} scanned."
    )


if __name__ == "__main__":
    main()
