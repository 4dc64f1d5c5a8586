#!/usr/bin/env python3
"""
Quick status checker for batch recomputation jobs.

Usage:
    python scripts/check_batch_status.py [--job-id batch-20240201T000000]

Displays wallets completed per job, first/last completion time, and the
productivity score summary.
"""
import argparse
import sys
from pathlib import Path

sys.path.insert(0, str(Path(__file__).parent.parent))

from wallet_analytics import store
from wallet_analytics.scoring import summarize_scores


def main():
    parser = argparse.ArgumentParser(description="Check batch job status")
    parser.add_argument("--job-id", type=str, help="Only show this job")
    parser.add_argument("--db-path", type=Path, help="Optional DuckDB path override")
    args = parser.parse_args()

    db_path = args.db_path or store.DUCKDB_PATH
    print("=" * 80)
    print("BATCH STATUS")
    print("=" * 80)

    if not db_path.exists():
        print("Database does not exist yet")
        print(f"Expected location: {db_path}")
        print("\nRun 'python scripts/run_batch.py' to start a batch")
        return 1

    status = store.batch_status(args.job_id, db_path=db_path)
    if status.empty:
        print("No batch progress recorded")
    else:
        for row in status.itertuples(index=False):
            print(
                f"{row.job_id}: {row.wallets_completed} wallets "
                f"({row.started_at} -> {row.last_completed_at})"
            )

    summary = summarize_scores(store.load_scores(db_path=db_path))
    print("\nScores:")
    for key, value in summary.items():
        print(f"  {key}: {value}")
    return 0


if __name__ == "__main__":
    sys.exit(main())
