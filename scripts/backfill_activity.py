#!/usr/bin/env python3
"""Backfill daily activity metrics for wallets over an explicit date range."""

from __future__ import annotations

import argparse
import logging
import sys
from datetime import UTC, date, datetime, time, timedelta
from pathlib import Path

PROJECT_ROOT = Path(__file__).resolve().parent.parent
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from wallet_analytics import activity, feed, ops_events, store

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(levelname)s - %(message)s",
    datefmt="%H:%M:%S",
)
LOGGER = logging.getLogger("backfill_activity")


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description=__doc__)
    parser.add_argument("--start", type=date.fromisoformat, required=True, help="First date (YYYY-MM-DD).")
    parser.add_argument("--end", type=date.fromisoformat, required=True, help="Last date, inclusive (YYYY-MM-DD).")
    parser.add_argument(
        "--wallet",
        dest="wallets",
        action="append",
        help="Wallet id to backfill (repeatable; defaults to every registered wallet).",
    )
    parser.add_argument(
        "--force-refresh",
        action="store_true",
        help="Bypass the HTTP cache when fetching events.",
    )
    parser.add_argument("--db-path", type=Path, help="Optional DuckDB path override.")
    return parser.parse_args()


def main() -> int:
    args = parse_args()
    if args.start > args.end:
        LOGGER.error("--start must not be after --end")
        return 1
    wallet_ids = args.wallets or store.load_wallets(db_path=args.db_path)["wallet_id"].tolist()
    since = datetime.combine(args.start, time.min, tzinfo=UTC)
    until = datetime.combine(args.end + timedelta(days=1), time.min, tzinfo=UTC) - timedelta(microseconds=1)

    totals = {"accepted": 0, "duplicates": 0, "out_of_range": 0}
    for idx, wallet_id in enumerate(sorted(set(wallet_ids)), start=1):
        events = feed.fetch_wallet_events(
            wallet_id, since=since, until=until, force_refresh=args.force_refresh
        )
        result = activity.aggregate(
            wallet_id,
            events,
            "backfill",
            date_range=(args.start, args.end),
            db_path=args.db_path,
        )
        for key in totals:
            totals[key] += getattr(result, key)
        LOGGER.info(
            "%s: accepted=%d duplicates=%d dates=%d",
            wallet_id,
            result.accepted,
            result.duplicates,
            len(result.dates_touched),
        )
        ops_events.emit_progress("backfill", idx, len(wallet_ids), detail=wallet_id)

    print(
        f"Backfilled {len(wallet_ids)} wallets: {totals['accepted']} events accepted, "
        f"{totals['duplicates']} duplicates, {totals['out_of_range']} out of range"
    )
    return 0


if __name__ == "__main__":
    sys.exit(main())
