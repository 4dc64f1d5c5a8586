"""DuckDB persistence for activity metrics, cohorts, funnel stages and scores.

One connection is kept per database file; every public function works on its
own cursor of it, so worker threads never open or close the file themselves.
Each call runs under a bounded tenacity retry. Writes are serialized
in-process; lock and transaction conflicts are retried with jittered backoff
and surface as ``PersistenceError`` once the retry budget is exhausted.
"""

from __future__ import annotations

import functools
import logging
import threading
from collections.abc import Iterable, Sequence
from datetime import UTC, date, datetime
from pathlib import Path
from typing import Any, Callable, TypeVar

import duckdb
import pandas as pd
from tenacity import (
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    stop_after_delay,
    wait_exponential_jitter,
)

from . import config as cfg
from .period_utils import as_utc

LOGGER = logging.getLogger(__name__)

F = TypeVar("F", bound=Callable[..., Any])

DUCKDB_PATH = cfg.DUCKDB_PATH

ACTIVITY_COLUMNS = [
    "wallet_id",
    "activity_date",
    "transaction_count",
    "total_volume",
    "total_fees",
    "transfers_count",
    "swaps_count",
    "bridges_count",
    "shielded_count",
    "is_active",
    "is_returning",
    "days_since_creation",
    "sequence_complexity_score",
    "creation_date_known",
]
EVENT_COLUMNS = [
    "wallet_id",
    "txid",
    "block_timestamp",
    "activity_date",
    "tx_type",
    "tx_subtype",
    "value",
    "fee",
    "counterparty_type",
    "feature_used",
]
COHORT_COLUMNS = [
    "cohort_type",
    "period_start",
    "wallet_count",
    "retention_1",
    "retention_2",
    "retention_3",
    "retention_4",
    "final_periods",
    "updated_at",
]
SCORE_COLUMNS = [
    "wallet_id",
    "total_score",
    "retention_score",
    "adoption_score",
    "activity_score",
    "diversity_score",
    "status",
    "risk_level",
    "previous_total_score",
    "calculated_at",
]
TASK_COLUMNS = [
    "wallet_id",
    "component",
    "state",
    "created_at",
    "baseline",
    "baseline_at",
    "completed_at",
    "completed_value",
    "effectiveness",
]

_WRITE_LOCK = threading.RLock()
_DATABASES: dict[str, duckdb.DuckDBPyConnection] = {}
_DATABASES_GUARD = threading.Lock()


class PersistenceError(RuntimeError):
    """Raised when a storage operation still fails after the retry budget."""


class ConcurrentRecalculationConflict(RuntimeError):
    """Raised when a score was recalculated by someone else since it was read."""

    def __init__(self, wallet_id: str, expected: datetime | None, found: datetime | None):
        super().__init__(
            f"Score for {wallet_id} changed underneath us "
            f"(expected calculated_at={expected}, found={found})"
        )
        self.wallet_id = wallet_id
        self.expected = expected
        self.found = found


def _utc_now() -> datetime:
    return datetime.now(UTC)


def _resolve_db_path(db_path: Path | None = None) -> Path:
    if db_path is not None:
        return Path(db_path)
    return DUCKDB_PATH


def _connect(*, db_path: Path | None = None) -> duckdb.DuckDBPyConnection:
    """Return a fresh cursor on the shared connection for the database file."""
    path = _resolve_db_path(db_path)
    key = str(path.resolve())
    with _DATABASES_GUARD:
        database = _DATABASES.get(key)
        if database is None:
            path.parent.mkdir(parents=True, exist_ok=True)
            database = duckdb.connect(str(path))
            try:
                _ensure_schema(database)
            except duckdb.Error:
                database.close()
                raise
            _DATABASES[key] = database
        return database.cursor()


def close_connections() -> None:
    """Close every shared connection (the next call reconnects)."""
    with _DATABASES_GUARD:
        for database in _DATABASES.values():
            database.close()
        _DATABASES.clear()


def _ensure_schema(conn: duckdb.DuckDBPyConnection) -> None:
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS wallets (
            wallet_id VARCHAR PRIMARY KEY,
            created_at TIMESTAMP,
            wallet_type VARCHAR,
            updated_at TIMESTAMP
        );
        """
    )
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS processed_events (
            wallet_id VARCHAR,
            txid VARCHAR,
            block_timestamp TIMESTAMP,
            activity_date DATE,
            tx_type VARCHAR,
            tx_subtype VARCHAR,
            value DOUBLE,
            fee DOUBLE,
            counterparty_type VARCHAR,
            feature_used VARCHAR,
            ingested_at TIMESTAMP,
            PRIMARY KEY (wallet_id, txid)
        );
        """
    )
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS wallet_activity_metrics (
            wallet_id VARCHAR,
            activity_date DATE,
            transaction_count BIGINT,
            total_volume DOUBLE,
            total_fees DOUBLE,
            transfers_count BIGINT,
            swaps_count BIGINT,
            bridges_count BIGINT,
            shielded_count BIGINT,
            is_active BOOLEAN,
            is_returning BOOLEAN,
            days_since_creation INTEGER,
            sequence_complexity_score INTEGER,
            creation_date_known BOOLEAN,
            PRIMARY KEY (wallet_id, activity_date)
        );
        """
    )
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS aggregation_watermarks (
            wallet_id VARCHAR PRIMARY KEY,
            aggregated_through DATE,
            updated_at TIMESTAMP
        );
        """
    )
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS wallet_cohorts (
            cohort_type VARCHAR,
            period_start DATE,
            wallet_count BIGINT,
            retention_1 DOUBLE,
            retention_2 DOUBLE,
            retention_3 DOUBLE,
            retention_4 DOUBLE,
            final_periods INTEGER,
            updated_at TIMESTAMP,
            PRIMARY KEY (cohort_type, period_start)
        );
        """
    )
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS cohort_assignments (
            wallet_id VARCHAR,
            cohort_type VARCHAR,
            period_start DATE,
            assigned_at TIMESTAMP,
            PRIMARY KEY (wallet_id, cohort_type)
        );
        """
    )
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS funnel_stages (
            wallet_id VARCHAR,
            stage VARCHAR,
            stage_index INTEGER,
            achieved_at TIMESTAMP,
            recorded_at TIMESTAMP,
            PRIMARY KEY (wallet_id, stage)
        );
        """
    )
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS productivity_scores (
            wallet_id VARCHAR PRIMARY KEY,
            total_score INTEGER,
            retention_score DOUBLE,
            adoption_score DOUBLE,
            activity_score DOUBLE,
            diversity_score DOUBLE,
            status VARCHAR,
            risk_level VARCHAR,
            previous_total_score INTEGER,
            calculated_at TIMESTAMP
        );
        """
    )
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS score_tasks (
            wallet_id VARCHAR,
            component VARCHAR,
            state VARCHAR,
            created_at TIMESTAMP,
            baseline DOUBLE,
            baseline_at TIMESTAMP,
            completed_at TIMESTAMP,
            completed_value DOUBLE,
            effectiveness DOUBLE,
            PRIMARY KEY (wallet_id, component, created_at)
        );
        """
    )
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS batch_progress (
            job_id VARCHAR,
            wallet_id VARCHAR,
            completed_at TIMESTAMP,
            PRIMARY KEY (job_id, wallet_id)
        );
        """
    )


def _persistent(func: F) -> F:
    """Wrap a storage function with bounded retries and error translation."""
    retry_cfg = cfg.DEFAULT_PERSISTENCE_RETRY
    retrying = retry(
        retry=retry_if_exception_type((duckdb.IOException, duckdb.TransactionException)),
        wait=wait_exponential_jitter(
            initial=retry_cfg.wait_min_seconds,
            max=retry_cfg.wait_max_seconds,
        ),
        stop=stop_after_attempt(retry_cfg.max_attempts)
        | stop_after_delay(retry_cfg.timeout_seconds),
        reraise=True,
        before_sleep=lambda retry_state: LOGGER.info(
            "Retrying %s (attempt %d/%d) - %s",
            func.__name__,
            retry_state.attempt_number,
            retry_cfg.max_attempts,
            str(retry_state.outcome.exception()) if retry_state.outcome else "unknown error",
        ),
    )(func)

    @functools.wraps(func)
    def wrapper(*args, **kwargs):
        try:
            return retrying(*args, **kwargs)
        except duckdb.Error as exc:
            raise PersistenceError(f"{func.__name__} failed: {exc}") from exc

    return wrapper  # type: ignore[return-value]


def _naive_utc(value: Any) -> datetime | None:
    if value is None or (not isinstance(value, str) and pd.isna(value)):
        return None
    return as_utc(value).replace(tzinfo=None)


def _naive_utc_series(series: pd.Series) -> pd.Series:
    return pd.to_datetime(series, utc=True).dt.tz_localize(None)


def _aware_series(series: pd.Series) -> pd.Series:
    return pd.to_datetime(series, utc=True)


def _date_series(series: pd.Series) -> pd.Series:
    if series.empty:
        return series.astype(object)
    return pd.to_datetime(series).dt.date


def _upsert(
    conn: duckdb.DuckDBPyConnection, table: str, frame: pd.DataFrame
) -> int:
    if frame.empty:
        return 0
    view = f"incoming_{table}"
    conn.register(view, frame)
    try:
        conn.execute(f"INSERT OR REPLACE INTO {table} BY NAME SELECT * FROM {view}")
    finally:
        conn.unregister(view)
    return len(frame)


# ── wallets (registry mirror) ────────────────────────────────


@_persistent
def upsert_wallets(wallets: pd.DataFrame, *, db_path: Path | None = None) -> int:
    """Register wallets; a known created_at is never replaced by another value."""
    if wallets.empty:
        return 0
    frame = pd.DataFrame(
        {
            "wallet_id": wallets["wallet_id"].astype(str),
            "created_at": _naive_utc_series(wallets["created_at"])
            if "created_at" in wallets.columns
            else pd.NaT,
            "wallet_type": wallets["wallet_type"]
            if "wallet_type" in wallets.columns
            else None,
            "updated_at": _naive_utc(_utc_now()),
        }
    ).drop_duplicates(subset=["wallet_id"], keep="last")
    with _WRITE_LOCK, _connect(db_path=db_path) as conn:
        conn.register("incoming_wallets", frame)
        try:
            conn.execute(
                """
                INSERT INTO wallets
                SELECT wallet_id, created_at, wallet_type, updated_at
                FROM incoming_wallets
                ON CONFLICT (wallet_id) DO UPDATE SET
                    created_at = COALESCE(created_at, EXCLUDED.created_at),
                    wallet_type = COALESCE(EXCLUDED.wallet_type, wallet_type),
                    updated_at = EXCLUDED.updated_at
                """
            )
        finally:
            conn.unregister("incoming_wallets")
    return len(frame)


@_persistent
def load_wallets(
    wallet_ids: Sequence[str] | None = None, *, db_path: Path | None = None
) -> pd.DataFrame:
    query = "SELECT wallet_id, created_at, wallet_type FROM wallets"
    params: list[Any] = []
    if wallet_ids is not None:
        query += " WHERE list_contains(?::VARCHAR[], wallet_id)"
        params.append(sorted({str(w) for w in wallet_ids}))
    with _connect(db_path=db_path) as conn:
        df = conn.execute(query + " ORDER BY wallet_id", params).fetchdf()
    df["created_at"] = _aware_series(df["created_at"])
    return df


# ── processed events (dedup seen-set) ────────────────────────


@_persistent
def insert_new_events(
    wallet_id: str, events: pd.DataFrame, *, db_path: Path | None = None
) -> pd.DataFrame:
    """Insert events whose txid has not been seen for this wallet.

    Returns the subset that was actually inserted; redelivered txids are left
    out.
    """
    if events.empty:
        return events.iloc[0:0]
    incoming = events.drop_duplicates(subset=["txid"], keep="first")
    with _WRITE_LOCK, _connect(db_path=db_path) as conn:
        existing = conn.execute(
            """
            SELECT txid FROM processed_events
            WHERE wallet_id = ?
              AND list_contains(?::VARCHAR[], txid)
            """,
            [wallet_id, incoming["txid"].astype(str).tolist()],
        ).fetchdf()
        seen = set(existing["txid"].astype(str)) if not existing.empty else set()
        fresh = incoming[~incoming["txid"].astype(str).isin(seen)].copy()
        if fresh.empty:
            return fresh
        store_df = fresh[EVENT_COLUMNS].copy()
        store_df["block_timestamp"] = _naive_utc_series(store_df["block_timestamp"])
        store_df["ingested_at"] = _naive_utc(_utc_now())
        _upsert(conn, "processed_events", store_df)
    return fresh


@_persistent
def load_events(
    wallet_id: str,
    *,
    dates: Iterable[date] | None = None,
    until: datetime | None = None,
    db_path: Path | None = None,
) -> pd.DataFrame:
    """Load stored events for a wallet in stable (block_timestamp, txid) order."""
    query = f"SELECT {', '.join(EVENT_COLUMNS)} FROM processed_events WHERE wallet_id = ?"
    params: list[Any] = [wallet_id]
    if dates is not None:
        query += " AND list_contains(?::DATE[], activity_date)"
        params.append(sorted(set(dates)))
    if until is not None:
        query += " AND block_timestamp <= ?"
        params.append(_naive_utc(until))
    query += " ORDER BY block_timestamp, txid"
    with _connect(db_path=db_path) as conn:
        df = conn.execute(query, params).fetchdf()
    df["block_timestamp"] = _aware_series(df["block_timestamp"])
    df["activity_date"] = _date_series(df["activity_date"])
    return df


# ── activity metrics ─────────────────────────────────────────


@_persistent
def upsert_activity_metrics(
    metrics: pd.DataFrame, *, db_path: Path | None = None
) -> int:
    if metrics.empty:
        return 0
    store_df = metrics[ACTIVITY_COLUMNS].copy()
    store_df["days_since_creation"] = store_df["days_since_creation"].astype("Int64")
    with _WRITE_LOCK, _connect(db_path=db_path) as conn:
        return _upsert(conn, "wallet_activity_metrics", store_df)


@_persistent
def load_activity_metrics(
    wallet_ids: Sequence[str] | None = None,
    *,
    start: date | None = None,
    end: date | None = None,
    db_path: Path | None = None,
) -> pd.DataFrame:
    """Load ActivityMetric rows, optionally filtered by wallet and inclusive dates."""
    query = f"SELECT {', '.join(ACTIVITY_COLUMNS)} FROM wallet_activity_metrics WHERE 1 = 1"
    params: list[Any] = []
    if wallet_ids is not None:
        query += " AND list_contains(?::VARCHAR[], wallet_id)"
        params.append(sorted({str(w) for w in wallet_ids}))
    if start is not None:
        query += " AND activity_date >= ?"
        params.append(start)
    if end is not None:
        query += " AND activity_date <= ?"
        params.append(end)
    query += " ORDER BY wallet_id, activity_date"
    with _connect(db_path=db_path) as conn:
        df = conn.execute(query, params).fetchdf()
    df["activity_date"] = _date_series(df["activity_date"])
    df["days_since_creation"] = df["days_since_creation"].astype("Int64")
    return df


@_persistent
def advance_watermark(
    wallet_id: str, through: date, *, db_path: Path | None = None
) -> None:
    """Record that the wallet's metrics are complete through ``through``; never moves back."""
    with _WRITE_LOCK, _connect(db_path=db_path) as conn:
        conn.execute(
            """
            INSERT INTO aggregation_watermarks VALUES (?, ?, ?)
            ON CONFLICT (wallet_id) DO UPDATE SET
                aggregated_through = greatest(aggregated_through, EXCLUDED.aggregated_through),
                updated_at = EXCLUDED.updated_at
            """,
            [wallet_id, through, _naive_utc(_utc_now())],
        )


@_persistent
def load_watermarks(
    wallet_ids: Sequence[str] | None = None, *, db_path: Path | None = None
) -> dict[str, date]:
    query = "SELECT wallet_id, aggregated_through FROM aggregation_watermarks"
    params: list[Any] = []
    if wallet_ids is not None:
        query += " WHERE list_contains(?::VARCHAR[], wallet_id)"
        params.append(sorted({str(w) for w in wallet_ids}))
    with _connect(db_path=db_path) as conn:
        rows = conn.execute(query, params).fetchall()
    return {str(wallet_id): pd.Timestamp(through).date() for wallet_id, through in rows}


# ── cohorts ──────────────────────────────────────────────────


@_persistent
def insert_cohort_assignment(
    wallet_id: str,
    cohort_type: str,
    period_start: date,
    *,
    db_path: Path | None = None,
) -> tuple[date, bool]:
    """Assign a wallet to a cohort once.

    Returns ``(period_start, created)``; when an assignment already exists its
    stored period is returned unchanged and ``created`` is False.
    """
    now = _naive_utc(_utc_now())
    with _WRITE_LOCK, _connect(db_path=db_path) as conn:
        existing = conn.execute(
            """
            SELECT period_start FROM cohort_assignments
            WHERE wallet_id = ? AND cohort_type = ?
            """,
            [wallet_id, cohort_type],
        ).fetchone()
        if existing is not None:
            return pd.Timestamp(existing[0]).date(), False
        conn.execute("BEGIN TRANSACTION")
        try:
            conn.execute(
                "INSERT INTO cohort_assignments VALUES (?, ?, ?, ?)",
                [wallet_id, cohort_type, period_start, now],
            )
            conn.execute(
                """
                INSERT INTO wallet_cohorts (cohort_type, period_start, wallet_count, updated_at)
                VALUES (?, ?, 0, ?)
                ON CONFLICT (cohort_type, period_start) DO NOTHING
                """,
                [cohort_type, period_start, now],
            )
            conn.execute(
                """
                UPDATE wallet_cohorts SET
                    wallet_count = (
                        SELECT COUNT(*) FROM cohort_assignments
                        WHERE cohort_type = ? AND period_start = ?
                    ),
                    updated_at = ?
                WHERE cohort_type = ? AND period_start = ?
                """,
                [cohort_type, period_start, now, cohort_type, period_start],
            )
            conn.execute("COMMIT")
        except Exception:
            conn.execute("ROLLBACK")
            raise
    return period_start, True


@_persistent
def load_cohort_assignments(
    cohort_type: str | None = None,
    *,
    wallet_ids: Sequence[str] | None = None,
    period_start: date | None = None,
    db_path: Path | None = None,
) -> pd.DataFrame:
    query = "SELECT wallet_id, cohort_type, period_start FROM cohort_assignments WHERE 1 = 1"
    params: list[Any] = []
    if cohort_type is not None:
        query += " AND cohort_type = ?"
        params.append(cohort_type)
    if wallet_ids is not None:
        query += " AND list_contains(?::VARCHAR[], wallet_id)"
        params.append(sorted({str(w) for w in wallet_ids}))
    if period_start is not None:
        query += " AND period_start = ?"
        params.append(period_start)
    with _connect(db_path=db_path) as conn:
        df = conn.execute(query + " ORDER BY cohort_type, period_start, wallet_id", params).fetchdf()
    df["period_start"] = _date_series(df["period_start"])
    return df


@_persistent
def load_cohorts(
    cohort_type: str | None = None,
    *,
    start: date | None = None,
    end: date | None = None,
    db_path: Path | None = None,
) -> pd.DataFrame:
    query = f"SELECT {', '.join(COHORT_COLUMNS)} FROM wallet_cohorts WHERE 1 = 1"
    params: list[Any] = []
    if cohort_type is not None:
        query += " AND cohort_type = ?"
        params.append(cohort_type)
    if start is not None:
        query += " AND period_start >= ?"
        params.append(start)
    if end is not None:
        query += " AND period_start <= ?"
        params.append(end)
    with _connect(db_path=db_path) as conn:
        df = conn.execute(query + " ORDER BY cohort_type, period_start", params).fetchdf()
    df["period_start"] = _date_series(df["period_start"])
    df["updated_at"] = _aware_series(df["updated_at"])
    return df


@_persistent
def upsert_cohort_retention(
    cohorts: pd.DataFrame, *, db_path: Path | None = None
) -> int:
    if cohorts.empty:
        return 0
    store_df = cohorts[COHORT_COLUMNS].copy()
    store_df["updated_at"] = _naive_utc_series(store_df["updated_at"])
    for k in range(1, 5):
        store_df[f"retention_{k}"] = store_df[f"retention_{k}"].astype("Float64")
    with _WRITE_LOCK, _connect(db_path=db_path) as conn:
        return _upsert(conn, "wallet_cohorts", store_df)


# ── funnel ───────────────────────────────────────────────────


@_persistent
def record_funnel_stages(
    wallet_id: str, stages: pd.DataFrame, *, db_path: Path | None = None
) -> int:
    """Insert achieved stages; rows already present keep their achieved_at."""
    if stages.empty:
        return 0
    store_df = pd.DataFrame(
        {
            "wallet_id": wallet_id,
            "stage": stages["stage"].astype(str),
            "stage_index": stages["stage_index"].astype(int),
            "achieved_at": _naive_utc_series(stages["achieved_at"]),
            "recorded_at": _naive_utc(_utc_now()),
        }
    )
    with _WRITE_LOCK, _connect(db_path=db_path) as conn:
        before = conn.execute(
            "SELECT COUNT(*) FROM funnel_stages WHERE wallet_id = ?", [wallet_id]
        ).fetchone()[0]
        conn.register("incoming_funnel_stages", store_df)
        try:
            conn.execute(
                "INSERT OR IGNORE INTO funnel_stages BY NAME "
                "SELECT * FROM incoming_funnel_stages"
            )
        finally:
            conn.unregister("incoming_funnel_stages")
        after = conn.execute(
            "SELECT COUNT(*) FROM funnel_stages WHERE wallet_id = ?", [wallet_id]
        ).fetchone()[0]
    return int(after - before)


@_persistent
def load_funnel_stages(
    wallet_ids: Sequence[str] | None = None, *, db_path: Path | None = None
) -> pd.DataFrame:
    query = "SELECT wallet_id, stage, stage_index, achieved_at FROM funnel_stages"
    params: list[Any] = []
    if wallet_ids is not None:
        query += " WHERE list_contains(?::VARCHAR[], wallet_id)"
        params.append(sorted({str(w) for w in wallet_ids}))
    with _connect(db_path=db_path) as conn:
        df = conn.execute(query + " ORDER BY wallet_id, stage_index", params).fetchdf()
    df["achieved_at"] = _aware_series(df["achieved_at"])
    return df


# ── scores and tasks ─────────────────────────────────────────


@_persistent
def load_scores(
    wallet_ids: Sequence[str] | None = None, *, db_path: Path | None = None
) -> pd.DataFrame:
    query = f"SELECT {', '.join(SCORE_COLUMNS)} FROM productivity_scores"
    params: list[Any] = []
    if wallet_ids is not None:
        query += " WHERE list_contains(?::VARCHAR[], wallet_id)"
        params.append(sorted({str(w) for w in wallet_ids}))
    with _connect(db_path=db_path) as conn:
        df = conn.execute(query + " ORDER BY wallet_id", params).fetchdf()
    df["calculated_at"] = _aware_series(df["calculated_at"])
    return df


@_persistent
def load_tasks(
    wallet_id: str,
    *,
    state: str | None = None,
    db_path: Path | None = None,
) -> pd.DataFrame:
    query = f"SELECT {', '.join(TASK_COLUMNS)} FROM score_tasks WHERE wallet_id = ?"
    params: list[Any] = [wallet_id]
    if state is not None:
        query += " AND state = ?"
        params.append(state)
    with _connect(db_path=db_path) as conn:
        df = conn.execute(query + " ORDER BY created_at, component", params).fetchdf()
    for column in ("created_at", "baseline_at", "completed_at"):
        df[column] = _aware_series(df[column])
    return df


@_persistent
def save_score(
    score: dict[str, Any],
    tasks: pd.DataFrame,
    *,
    expected_calculated_at: datetime | None,
    db_path: Path | None = None,
) -> None:
    """Overwrite a wallet's score if nobody else recalculated it since it was read.

    ``expected_calculated_at`` is the calculated_at of the score the caller
    started from (None for a first calculation). Pending tasks are replaced by
    ``tasks``; completed task rows are only ever added.
    """
    wallet_id = str(score["wallet_id"])
    expected = _naive_utc(expected_calculated_at)
    score_df = pd.DataFrame([{column: score[column] for column in SCORE_COLUMNS}])
    score_df["calculated_at"] = _naive_utc_series(score_df["calculated_at"])
    task_df = pd.DataFrame(columns=TASK_COLUMNS) if tasks.empty else tasks[TASK_COLUMNS].copy()
    task_df["wallet_id"] = wallet_id
    for column in ("created_at", "baseline_at", "completed_at"):
        task_df[column] = _naive_utc_series(task_df[column])
    for column in ("baseline", "completed_value", "effectiveness"):
        task_df[column] = task_df[column].astype("Float64")

    with _WRITE_LOCK, _connect(db_path=db_path) as conn:
        row = conn.execute(
            "SELECT calculated_at FROM productivity_scores WHERE wallet_id = ?",
            [wallet_id],
        ).fetchone()
        found = row[0] if row is not None else None
        if found != expected:
            raise ConcurrentRecalculationConflict(wallet_id, expected, found)
        conn.execute("BEGIN TRANSACTION")
        try:
            _upsert(conn, "productivity_scores", score_df)
            conn.execute(
                "DELETE FROM score_tasks WHERE wallet_id = ? AND state = 'pending'",
                [wallet_id],
            )
            _upsert(conn, "score_tasks", task_df)
            conn.execute("COMMIT")
        except Exception:
            conn.execute("ROLLBACK")
            raise


# ── batch progress ───────────────────────────────────────────


@_persistent
def mark_wallet_completed(
    job_id: str, wallet_id: str, *, db_path: Path | None = None
) -> None:
    with _WRITE_LOCK, _connect(db_path=db_path) as conn:
        conn.execute(
            "INSERT OR REPLACE INTO batch_progress VALUES (?, ?, ?)",
            [job_id, wallet_id, _naive_utc(_utc_now())],
        )


@_persistent
def load_completed_wallets(job_id: str, *, db_path: Path | None = None) -> set[str]:
    with _connect(db_path=db_path) as conn:
        rows = conn.execute(
            "SELECT wallet_id FROM batch_progress WHERE job_id = ?", [job_id]
        ).fetchall()
    return {str(row[0]) for row in rows}


@_persistent
def batch_status(job_id: str | None = None, *, db_path: Path | None = None) -> pd.DataFrame:
    """Summarize batch progress per job (wallets done, first and last completion)."""
    query = """
        SELECT job_id,
               COUNT(*) AS wallets_completed,
               MIN(completed_at) AS started_at,
               MAX(completed_at) AS last_completed_at
        FROM batch_progress
    """
    params: list[Any] = []
    if job_id is not None:
        query += " WHERE job_id = ?"
        params.append(job_id)
    query += " GROUP BY job_id ORDER BY job_id"
    with _connect(db_path=db_path) as conn:
        return conn.execute(query, params).fetchdf()
