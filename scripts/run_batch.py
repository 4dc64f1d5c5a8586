#!/usr/bin/env python3
"""Recompute activity, cohorts, funnel and productivity scores for a wallet batch."""

from __future__ import annotations

import argparse
import logging
import sys
from datetime import UTC, datetime
from pathlib import Path

PROJECT_ROOT = Path(__file__).resolve().parent.parent
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from wallet_analytics import config as cfg
from wallet_analytics import feed, pipeline, store
from wallet_analytics.http_utils import TransientHTTPError
from wallet_analytics.period_utils import as_utc

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(levelname)s - %(message)s",
    datefmt="%H:%M:%S",
)
LOGGER = logging.getLogger("run_batch")


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description=__doc__)
    parser.add_argument(
        "--wallets-file",
        type=Path,
        help="Text file with one wallet id per line (defaults to every registered wallet).",
    )
    parser.add_argument(
        "--as-of",
        type=str,
        help="Evaluation time (ISO 8601, UTC). Defaults to now.",
    )
    parser.add_argument(
        "--job-id",
        type=str,
        help="Resumable job id; rerun with the same id to skip completed wallets.",
    )
    parser.add_argument(
        "--max-workers",
        type=int,
        default=cfg.DEFAULT_MAX_WORKERS,
        help="Concurrent wallets (default: WALLET_ANALYTICS_MAX_WORKERS or 8).",
    )
    parser.add_argument(
        "--refresh-registry",
        action="store_true",
        help="Fetch created_at/wallet_type from the wallet registry before scoring.",
    )
    parser.add_argument(
        "--db-path",
        type=Path,
        help="Optional DuckDB path override (defaults to data/cache/wallet_analytics.duckdb).",
    )
    return parser.parse_args()


def _load_wallet_ids(args: argparse.Namespace) -> list[str]:
    if args.wallets_file:
        lines = args.wallets_file.read_text(encoding="utf-8").splitlines()
        return [line.strip() for line in lines if line.strip()]
    return store.load_wallets(db_path=args.db_path)["wallet_id"].tolist()


def main() -> int:
    args = parse_args()
    as_of = as_utc(args.as_of) if args.as_of else datetime.now(UTC)
    wallet_ids = _load_wallet_ids(args)
    if not wallet_ids:
        LOGGER.warning("No wallets to process")
        return 0

    records = None
    if args.refresh_registry:
        try:
            records = feed.fetch_wallet_records(wallet_ids)
        except TransientHTTPError as exc:
            LOGGER.error("Wallet registry unavailable: %s", exc)
            return 1

    try:
        result = pipeline.run_batch(
            wallet_ids,
            as_of=as_of,
            wallet_records=records,
            job_id=args.job_id,
            max_workers=args.max_workers,
            db_path=args.db_path,
        )
    except store.PersistenceError as exc:
        LOGGER.error("Batch aborted: %s", exc)
        return 2
    finally:
        store.close_connections()

    print(
        f"Job {result.job_id}: processed {len(result.processed)} wallets, "
        f"skipped {len(result.skipped)}, {result.conflicts} conflict retries, "
        f"{len(result.missing_creation)} without creation date"
    )
    return 0


if __name__ == "__main__":
    sys.exit(main())
