#!/usr/bin/env python3
"""Precompute retention, funnel and score snapshots so dashboards can reuse them."""

from __future__ import annotations

import argparse
import sys
from pathlib import Path

PROJECT_ROOT = Path(__file__).resolve().parent.parent
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from wallet_analytics import analytics_cache


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description=__doc__)
    parser.add_argument(
        "--cohort-limit",
        type=int,
        default=12,
        help="Number of most recent cohorts per type to keep (default: 12).",
    )
    parser.add_argument(
        "--db-path",
        type=Path,
        help="Optional DuckDB path override (defaults to data/cache/wallet_analytics.duckdb).",
    )
    return parser.parse_args()


def main() -> None:
    args = parse_args()
    meta = analytics_cache.refresh_analytics_cache(
        cohort_limit=args.cohort_limit,
        db_path=args.db_path,
    )
    print(
        "Analytics cache refreshed at "
        f"{meta.generated_at.isoformat()} (cohorts={meta.cohort_limit}, wallets={meta.wallet_count})"
    )


if __name__ == "__main__":
    main()
