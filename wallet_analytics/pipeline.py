"""Batch orchestration: per-wallet aggregate -> cohorts -> funnel -> score."""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable, Iterable, Mapping, Sequence
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta
from pathlib import Path

import pandas as pd

from . import config as cfg
from . import store
from .activity import AggregationResult, TransactionEvent, aggregate
from .cohorts import assign_wallet_cohorts, refresh_cohort_retention
from .feed import fetch_wallet_events
from .funnel import DEFAULT_POLICY as DEFAULT_FUNNEL_POLICY
from .funnel import FunnelEvaluation, FunnelPolicy, evaluate_wallet
from .ops_events import emit_progress
from .period_utils import COHORT_TYPES, as_utc
from .scoring import DEFAULT_POLICY as DEFAULT_SCORING_POLICY
from .scoring import ProductivityScore, ScoringPolicy, recalculate_wallet

LOGGER = logging.getLogger(__name__)

EventSource = Callable[[str], Iterable[TransactionEvent]]

MAX_CONFLICT_RETRIES = cfg.env_int("SCORE_CONFLICT_RETRIES", 3)

_LOCKS_GUARD = threading.Lock()
_WALLET_LOCKS: dict[str, threading.Lock] = {}


def _wallet_lock(wallet_id: str) -> threading.Lock:
    with _LOCKS_GUARD:
        lock = _WALLET_LOCKS.get(wallet_id)
        if lock is None:
            lock = threading.Lock()
            _WALLET_LOCKS[wallet_id] = lock
        return lock


def complete_through(as_of: datetime) -> date:
    """Last calendar day fully covered by events observed up to ``as_of``."""
    return (as_utc(as_of) + timedelta(microseconds=1)).date() - timedelta(days=1)


@dataclass
class WalletOutcome:
    wallet_id: str
    aggregation: AggregationResult
    funnel: FunnelEvaluation
    score: ProductivityScore
    attempts: int = 1


@dataclass
class BatchResult:
    job_id: str
    as_of: datetime
    processed: list[str] = field(default_factory=list)
    skipped: list[str] = field(default_factory=list)
    conflicts: int = 0
    missing_creation: list[str] = field(default_factory=list)
    outcomes: dict[str, WalletOutcome] = field(default_factory=dict)
    cohorts: pd.DataFrame | None = None


def process_wallet(
    wallet_id: str,
    events: Iterable[TransactionEvent],
    *,
    as_of: datetime,
    created_at: datetime | None = None,
    scoring_policy: ScoringPolicy = DEFAULT_SCORING_POLICY,
    funnel_policy: FunnelPolicy = DEFAULT_FUNNEL_POLICY,
    max_conflict_retries: int = MAX_CONFLICT_RETRIES,
    db_path: Path | None = None,
) -> WalletOutcome:
    """Run the full per-wallet pipeline under the wallet's lock.

    A score conflict reruns every step; all of them are idempotent.
    """
    as_of = as_utc(as_of)
    visible = [event for event in events if as_utc(event.block_timestamp) <= as_of]
    with _wallet_lock(wallet_id):
        attempt = 0
        while True:
            attempt += 1
            aggregation = aggregate(
                wallet_id,
                visible,
                "incremental",
                created_at=created_at,
                complete_through=complete_through(as_of),
                db_path=db_path,
            )
            if created_at is not None:
                assign_wallet_cohorts(wallet_id, created_at, db_path=db_path)
            funnel_eval = evaluate_wallet(
                wallet_id, as_of, created_at=created_at, policy=funnel_policy, db_path=db_path
            )
            try:
                score = recalculate_wallet(wallet_id, as_of, policy=scoring_policy, db_path=db_path)
            except store.ConcurrentRecalculationConflict as exc:
                if attempt >= max_conflict_retries:
                    raise
                LOGGER.warning("Retrying %s after score conflict: %s", wallet_id, exc)
                continue
            return WalletOutcome(wallet_id, aggregation, funnel_eval, score, attempt)


def _created_lookup(wallet_ids: Sequence[str], db_path: Path | None) -> dict[str, datetime | None]:
    wallets = store.load_wallets(wallet_ids, db_path=db_path)
    lookup: dict[str, datetime | None] = {wallet_id: None for wallet_id in wallet_ids}
    for row in wallets.itertuples(index=False):
        lookup[row.wallet_id] = None if pd.isna(row.created_at) else row.created_at.to_pydatetime()
    return lookup


def _default_source(as_of: datetime) -> EventSource:
    return lambda wallet_id: fetch_wallet_events(wallet_id, until=as_of)


def run_batch(
    wallet_ids: Iterable[str],
    *,
    as_of: datetime,
    events_by_wallet: Mapping[str, Iterable[TransactionEvent]] | None = None,
    event_source: EventSource | None = None,
    wallet_records: pd.DataFrame | None = None,
    job_id: str | None = None,
    max_workers: int = cfg.DEFAULT_MAX_WORKERS,
    scoring_policy: ScoringPolicy = DEFAULT_SCORING_POLICY,
    funnel_policy: FunnelPolicy = DEFAULT_FUNNEL_POLICY,
    refresh_retention: bool = True,
    db_path: Path | None = None,
) -> BatchResult:
    """Recompute every wallet as of ``as_of`` and then refresh cohort retention.

    Wallets already recorded as completed for ``job_id`` are skipped, so an
    interrupted job can be rerun with the same id. ``PersistenceError`` stops
    the batch.
    """
    as_of = as_utc(as_of)
    ordered = sorted({str(wallet_id) for wallet_id in wallet_ids if wallet_id})
    job_id = job_id or f"batch-{as_of:%Y%m%dT%H%M%S}"
    result = BatchResult(job_id=job_id, as_of=as_of)

    if wallet_records is not None and not wallet_records.empty:
        store.upsert_wallets(wallet_records, db_path=db_path)

    done = store.load_completed_wallets(job_id, db_path=db_path)
    result.skipped = [wallet_id for wallet_id in ordered if wallet_id in done]
    todo = [wallet_id for wallet_id in ordered if wallet_id not in done]
    if result.skipped:
        LOGGER.info("Job %s: skipping %d wallets completed earlier", job_id, len(result.skipped))

    if events_by_wallet is not None:
        source: EventSource = lambda wallet_id: events_by_wallet.get(wallet_id, [])
    else:
        source = event_source or _default_source(as_of)
    created = _created_lookup(todo, db_path)

    def run_one(wallet_id: str) -> WalletOutcome:
        outcome = process_wallet(
            wallet_id,
            source(wallet_id),
            as_of=as_of,
            created_at=created.get(wallet_id),
            scoring_policy=scoring_policy,
            funnel_policy=funnel_policy,
            db_path=db_path,
        )
        store.mark_wallet_completed(job_id, wallet_id, db_path=db_path)
        return outcome

    total = len(ordered)
    finished = len(result.skipped)
    if todo:
        with ThreadPoolExecutor(max_workers=max(1, min(max_workers, len(todo)))) as executor:
            future_to_wallet = {executor.submit(run_one, wallet_id): wallet_id for wallet_id in todo}
            try:
                for future in as_completed(future_to_wallet):
                    wallet_id = future_to_wallet[future]
                    outcome = future.result()
                    result.outcomes[wallet_id] = outcome
                    result.conflicts += outcome.attempts - 1
                    if outcome.aggregation.missing_creation_date:
                        result.missing_creation.append(wallet_id)
                    finished += 1
                    emit_progress("wallets", finished, total, detail=wallet_id)
            except store.PersistenceError:
                for pending in future_to_wallet:
                    pending.cancel()
                LOGGER.error("Job %s stopped after a persistence failure", job_id)
                raise
    result.processed = [wallet_id for wallet_id in todo if wallet_id in result.outcomes]
    result.missing_creation.sort()

    if refresh_retention:
        frames = [refresh_cohort_retention(cohort_type, as_of=as_of, db_path=db_path) for cohort_type in COHORT_TYPES]
        frames = [frame for frame in frames if not frame.empty]
        result.cohorts = pd.concat(frames, ignore_index=True) if frames else pd.DataFrame(columns=store.COHORT_COLUMNS)
        emit_progress("retention", 1, 1, detail=f"{len(result.cohorts)} cohorts")

    LOGGER.info(
        "Job %s: processed=%d skipped=%d conflicts=%d missing_creation=%d",
        job_id,
        len(result.processed),
        len(result.skipped),
        result.conflicts,
        len(result.missing_creation),
    )
    return result
