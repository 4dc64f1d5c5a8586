"""Cohort assignment, retention curves, trend flags and type/retention correlation."""

from __future__ import annotations

import logging
import math
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from datetime import UTC, date, datetime, timedelta
from pathlib import Path
from typing import Any

import pandas as pd

from . import config as cfg
from . import store
from .activity import EVENT_TYPES, TYPE_COUNT_COLUMNS
from .period_utils import (
    COHORT_TYPES,
    map_dates_to_offsets,
    period_bounds,
    period_start as compute_period_start,
    to_date,
)

LOGGER = logging.getLogger(__name__)

RETENTION_PERIODS = (1, 2, 3, 4)
INSUFFICIENT_DATA = "insufficient data"
TREND_THRESHOLD = cfg.env_float("RETENTION_TREND_THRESHOLD", 10.0)


@dataclass(frozen=True)
class CohortAssignment:
    wallet_id: str
    cohort_type: str
    period_start: date
    created: bool = False


@dataclass(frozen=True)
class RetentionResult:
    """Retention for one cohort; ``retention[k]`` is None only for empty cohorts."""

    cohort_type: str
    period_start: date
    wallet_count: int
    retention: dict[int, float | None]
    final: dict[int, bool] = field(default_factory=dict)

    @property
    def status(self) -> str:
        return INSUFFICIENT_DATA if self.wallet_count == 0 else "ok"

    @property
    def final_periods(self) -> int:
        count = 0
        for k in sorted(self.retention):
            if not self.final.get(k, False):
                break
            count += 1
        return count

    def is_preliminary(self, k: int) -> bool:
        return not self.final.get(k, False)


def assign_cohort(
    wallet_id: str,
    created_at: datetime,
    cohort_type: str,
    *,
    db_path: Path | None = None,
) -> CohortAssignment:
    """Assign a wallet to the cohort period containing ``created_at`` (exactly once)."""
    cohort_type = cohort_type.lower()
    if cohort_type not in COHORT_TYPES:
        raise ValueError(f"Invalid cohort type: {cohort_type}")
    start = compute_period_start(created_at, cohort_type)
    stored, created = store.insert_cohort_assignment(
        wallet_id, cohort_type, start, db_path=db_path
    )
    if not created and stored != start:
        LOGGER.warning(
            "Wallet %s already in %s cohort %s; ignoring recomputed period %s",
            wallet_id,
            cohort_type,
            stored,
            start,
        )
    return CohortAssignment(wallet_id, cohort_type, stored, created)


def assign_wallet_cohorts(
    wallet_id: str, created_at: datetime, *, db_path: Path | None = None
) -> list[CohortAssignment]:
    return [
        assign_cohort(wallet_id, created_at, cohort_type, db_path=db_path)
        for cohort_type in COHORT_TYPES
    ]


def assign_unassigned_wallets(*, db_path: Path | None = None) -> int:
    """Assign every registered wallet with a known creation date that lacks a cohort."""
    wallets = store.load_wallets(db_path=db_path)
    wallets = wallets[wallets["created_at"].notna()]
    if wallets.empty:
        return 0
    assigned = store.load_cohort_assignments(db_path=db_path)
    created = 0
    for cohort_type in COHORT_TYPES:
        have = set(assigned.loc[assigned["cohort_type"] == cohort_type, "wallet_id"])
        for row in wallets.itertuples(index=False):
            if row.wallet_id in have:
                continue
            result = assign_cohort(row.wallet_id, row.created_at, cohort_type, db_path=db_path)
            created += int(result.created)
    LOGGER.info("Assigned %d missing cohort memberships", created)
    return created


def compute_retention(
    cohort_type: str,
    period_start: date,
    members: Iterable[str],
    metrics: pd.DataFrame,
    *,
    as_of: datetime | date | None = None,
    watermarks: Mapping[str, date] | None = None,
    periods: Iterable[int] = RETENTION_PERIODS,
) -> RetentionResult:
    """Compute retention_k for one cohort from ActivityMetric rows.

    retention_k is the percentage of members with an active day inside period
    k. A value is final only once ``as_of`` has passed the end of period k and
    every member's aggregation watermark covers its last day.
    """
    member_set = {str(m) for m in members}
    periods = tuple(periods)
    if not member_set:
        return RetentionResult(cohort_type, period_start, 0, {k: None for k in periods}, {})

    active = metrics
    if not active.empty:
        active = active[
            active["wallet_id"].astype(str).isin(member_set) & active["is_active"].astype(bool)
        ]
    offsets = (
        map_dates_to_offsets(active, pd.Series([period_start] * len(active), index=active.index), cohort_type)
        if not active.empty
        else pd.Series([], dtype="int64")
    )

    as_of_day = to_date(as_of) if as_of is not None else None
    retention: dict[int, float | None] = {}
    final: dict[int, bool] = {}
    for k in periods:
        retained = set(active.loc[offsets == k, "wallet_id"].astype(str)) if not active.empty else set()
        retention[k] = round(100.0 * len(retained) / len(member_set), 2)
        _, end = period_bounds(period_start, cohort_type, k)
        last_day = end - timedelta(days=1)
        covered = watermarks is not None and all(
            watermarks.get(member) is not None and watermarks[member] >= last_day
            for member in member_set
        )
        final[k] = as_of_day is not None and as_of_day >= end and covered
    return RetentionResult(cohort_type, period_start, len(member_set), retention, final)


def refresh_cohort_retention(
    cohort_type: str | None = None,
    *,
    as_of: datetime | date,
    db_path: Path | None = None,
) -> pd.DataFrame:
    """Recompute and persist retention for every cohort of ``cohort_type``."""
    cohorts = store.load_cohorts(cohort_type, db_path=db_path)
    if cohorts.empty:
        return pd.DataFrame(columns=store.COHORT_COLUMNS)
    assignments = store.load_cohort_assignments(cohort_type, db_path=db_path)
    now = datetime.now(UTC)
    rows: list[dict[str, Any]] = []
    for cohort in cohorts.itertuples(index=False):
        members = assignments.loc[
            (assignments["cohort_type"] == cohort.cohort_type)
            & (assignments["period_start"] == cohort.period_start),
            "wallet_id",
        ].tolist()
        window_start, _ = period_bounds(cohort.period_start, cohort.cohort_type, 1)
        _, window_end = period_bounds(cohort.period_start, cohort.cohort_type, max(RETENTION_PERIODS))
        metrics = store.load_activity_metrics(
            members,
            start=window_start,
            end=window_end - timedelta(days=1),
            db_path=db_path,
        )
        watermarks = store.load_watermarks(members, db_path=db_path)
        result = compute_retention(
            cohort.cohort_type,
            cohort.period_start,
            members,
            metrics,
            as_of=as_of,
            watermarks=watermarks,
        )
        row: dict[str, Any] = {
            "cohort_type": cohort.cohort_type,
            "period_start": cohort.period_start,
            "wallet_count": result.wallet_count,
            "final_periods": result.final_periods,
            "updated_at": now,
        }
        for k in RETENTION_PERIODS:
            row[f"retention_{k}"] = result.retention.get(k)
        rows.append(row)
    frame = pd.DataFrame(rows, columns=store.COHORT_COLUMNS)
    store.upsert_cohort_retention(frame, db_path=db_path)
    LOGGER.info("Refreshed retention for %d cohorts", len(frame))
    return frame


def retention_heatmap(
    cohort_type: str = "weekly", limit: int = 12, *, db_path: Path | None = None
) -> pd.DataFrame:
    """Return the most recent ``limit`` cohorts (oldest first) with cached retention."""
    cohorts = store.load_cohorts(cohort_type, db_path=db_path)
    if cohorts.empty:
        return cohorts
    recent = cohorts.sort_values("period_start").tail(limit).reset_index(drop=True)
    recent["preliminary_from"] = recent["final_periods"].fillna(0).astype(int) + 1
    return recent


def detect_retention_trends(
    cohorts: pd.DataFrame,
    k: int = 1,
    *,
    threshold: float | None = None,
) -> pd.DataFrame:
    """Flag period-over-period changes of retention_k between consecutive cohorts."""
    threshold = TREND_THRESHOLD if threshold is None else threshold
    columns = [
        "cohort_type",
        "period_start",
        "previous_period_start",
        "retention",
        "previous_retention",
        "delta",
        "significant",
    ]
    column = f"retention_{k}"
    if cohorts.empty or column not in cohorts.columns:
        return pd.DataFrame(columns=columns)
    rows: list[dict[str, Any]] = []
    for cohort_type, group in cohorts.groupby("cohort_type", sort=True):
        ordered = group.sort_values("period_start")
        ordered = ordered[ordered[column].notna()]
        previous = None
        for row in ordered.itertuples(index=False):
            current_value = float(getattr(row, column))
            if previous is not None:
                delta = round(current_value - previous[1], 2)
                rows.append(
                    {
                        "cohort_type": cohort_type,
                        "period_start": row.period_start,
                        "previous_period_start": previous[0],
                        "retention": current_value,
                        "previous_retention": previous[1],
                        "delta": delta,
                        "significant": abs(delta) >= threshold,
                    }
                )
            previous = (row.period_start, current_value)
    return pd.DataFrame(rows, columns=columns)


def summarize_retention_trend(cohorts: pd.DataFrame, periods: int = 12) -> dict[str, Any]:
    """Compare average retention of the newer half of cohorts with the older half."""
    retention_columns = [f"retention_{k}" for k in RETENTION_PERIODS]
    if cohorts.empty:
        return {"trend_direction": INSUFFICIENT_DATA, "periods_analyzed": 0}
    usable = cohorts[(cohorts["wallet_count"] > 0) & cohorts["retention_1"].notna()]
    usable = usable.sort_values("period_start", ascending=False).head(periods)
    if len(usable) < 2:
        return {"trend_direction": INSUFFICIENT_DATA, "periods_analyzed": len(usable)}
    averages = usable[retention_columns].astype(float).fillna(0.0).mean(axis=1).tolist()
    split = math.ceil(len(averages) / 2)
    recent = sum(averages[:split]) / split
    older = sum(averages[split:]) / (len(averages) - split)
    if recent > older:
        direction = "improving"
    elif recent < older:
        direction = "declining"
    else:
        direction = "stable"
    return {
        "recent_avg_retention": round(recent, 2),
        "older_avg_retention": round(older, 2),
        "trend_direction": direction,
        "trend_magnitude": round(abs(recent - older), 2),
        "periods_analyzed": len(averages),
    }


RETENTION_STATISTICS_COLUMNS = [
    "cohort_type",
    "total_cohorts",
    "avg_cohort_size",
    *[f"avg_retention_{k}" for k in RETENTION_PERIODS],
    "earliest_cohort",
    "latest_cohort",
]


def retention_statistics(cohorts: pd.DataFrame) -> pd.DataFrame:
    """Per cohort type: cohort count, average size and average retention per period.

    Empty cohorts and cohorts without a retention_1 value are left out.
    """
    if cohorts.empty:
        return pd.DataFrame(columns=RETENTION_STATISTICS_COLUMNS)
    usable = cohorts[(cohorts["wallet_count"] > 0) & cohorts["retention_1"].notna()]
    rows: list[dict[str, Any]] = []
    for cohort_type, group in usable.groupby("cohort_type", sort=True):
        row: dict[str, Any] = {
            "cohort_type": cohort_type,
            "total_cohorts": int(len(group)),
            "avg_cohort_size": round(float(group["wallet_count"].mean()), 2),
        }
        for k in RETENTION_PERIODS:
            values = group[f"retention_{k}"].dropna().astype(float)
            row[f"avg_retention_{k}"] = round(float(values.mean()), 2) if not values.empty else None
        row["earliest_cohort"] = min(group["period_start"])
        row["latest_cohort"] = max(group["period_start"])
        rows.append(row)
    return pd.DataFrame(rows, columns=RETENTION_STATISTICS_COLUMNS)


def load_retention_statistics(
    cohort_type: str | None = None, *, db_path: Path | None = None
) -> pd.DataFrame:
    return retention_statistics(store.load_cohorts(cohort_type, db_path=db_path))


# ── correlation analysis ─────────────────────────────────────


def dominant_types(metrics: pd.DataFrame) -> pd.Series:
    """Return each wallet's most frequent transaction type.

    Ties resolve in EVENT_TYPES order; wallets with no typed activity are
    omitted.
    """
    if metrics.empty:
        return pd.Series([], dtype=object)
    count_columns = [TYPE_COUNT_COLUMNS[t] for t in EVENT_TYPES]
    totals = metrics.groupby("wallet_id")[count_columns].sum()
    totals = totals[totals.sum(axis=1) > 0]
    # idxmax returns the first column on ties, which follows EVENT_TYPES
    winners = totals.idxmax(axis=1)
    lookup = {column: tx_type for tx_type, column in TYPE_COUNT_COLUMNS.items()}
    return winners.map(lookup)


def retained_wallets(
    assignments: pd.DataFrame, metrics: pd.DataFrame, cohort_type: str, k: int = 1
) -> set[str]:
    """Wallets with an active day in period ``k`` of their own cohort."""
    if assignments.empty or metrics.empty:
        return set()
    joined = metrics[metrics["is_active"].astype(bool)].merge(
        assignments[["wallet_id", "period_start"]], on="wallet_id", how="inner"
    )
    if joined.empty:
        return set()
    offsets = map_dates_to_offsets(joined, joined["period_start"], cohort_type)
    return set(joined.loc[offsets == k, "wallet_id"].astype(str))


def _rate_row(label_name: str, label: Any, group: set[str], retained: set[str], baseline: float | None) -> dict[str, Any]:
    if not group or baseline is None:
        return {
            label_name: label,
            "wallet_count": len(group),
            "retained": 0,
            "retention_rate": None,
            "baseline_rate": baseline,
            "delta": None,
            "status": INSUFFICIENT_DATA,
        }
    kept = len(group & retained)
    rate = round(100.0 * kept / len(group), 2)
    return {
        label_name: label,
        "wallet_count": len(group),
        "retained": kept,
        "retention_rate": rate,
        "baseline_rate": baseline,
        "delta": round(rate - baseline, 2),
        "status": "ok",
    }


def _rate_frame(rows: list[dict[str, Any]]) -> pd.DataFrame:
    frame = pd.DataFrame(rows)
    for column in ("retention_rate", "baseline_rate", "delta", "avg_active_days", "avg_transactions"):
        if column not in frame.columns:
            continue
        frame[column] = frame[column].astype(object).where(frame[column].notna(), None)
    return frame


def _population_baseline(
    assignments: pd.DataFrame, metrics: pd.DataFrame, cohort_type: str, k: int
) -> tuple[set[str], set[str], float | None]:
    population = set(assignments["wallet_id"].astype(str)) if not assignments.empty else set()
    retained = retained_wallets(assignments, metrics, cohort_type, k)
    baseline = round(100.0 * len(retained & population) / len(population), 2) if population else None
    return population, retained, baseline


def correlate_type_retention(
    assignments: pd.DataFrame,
    metrics: pd.DataFrame,
    cohort_type: str,
    k: int = 1,
) -> pd.DataFrame:
    """Retention of wallets dominated by each type vs. the population baseline.

    The delta is a correlation signal, not a causal claim.
    """
    population, retained, baseline = _population_baseline(assignments, metrics, cohort_type, k)
    member_metrics = metrics[metrics["wallet_id"].astype(str).isin(population)] if not metrics.empty else metrics
    dominant = dominant_types(member_metrics)
    rows = []
    for tx_type in EVENT_TYPES:
        group = set(dominant[dominant == tx_type].index.astype(str))
        rows.append(_rate_row("tx_type", tx_type, group, retained, baseline))
    return _rate_frame(rows)


def analyze_diversity_retention(
    assignments: pd.DataFrame,
    metrics: pd.DataFrame,
    cohort_type: str,
    k: int = 1,
) -> pd.DataFrame:
    """Retention grouped by how many distinct transaction types a wallet used."""
    population, retained, baseline = _population_baseline(assignments, metrics, cohort_type, k)
    diversity = {wallet_id: 0 for wallet_id in population}
    if not metrics.empty:
        count_columns = list(TYPE_COUNT_COLUMNS.values())
        member_metrics = metrics[metrics["wallet_id"].astype(str).isin(population)]
        totals = member_metrics.groupby("wallet_id")[count_columns].sum()
        for wallet_id, counts in totals.iterrows():
            diversity[str(wallet_id)] = int((counts > 0).sum())
    rows = []
    for distinct in range(len(EVENT_TYPES) + 1):
        group = {wallet_id for wallet_id, value in diversity.items() if value == distinct}
        rows.append(_rate_row("distinct_types", distinct, group, retained, baseline))
    return _rate_frame(rows)


VOLUME_CATEGORIES = ("no_volume", "low_volume", "medium_volume", "high_volume")
LOW_VOLUME_LIMIT = cfg.env_float("RETENTION_LOW_VOLUME_LIMIT", 1e7)
MEDIUM_VOLUME_LIMIT = cfg.env_float("RETENTION_MEDIUM_VOLUME_LIMIT", 1e8)
FREQUENCY_CATEGORIES = ("no_activity", "single_day", "low_frequency", "medium_frequency", "high_frequency")


def _volume_category(total_volume: float) -> str:
    if total_volume <= 0:
        return "no_volume"
    if total_volume < LOW_VOLUME_LIMIT:
        return "low_volume"
    if total_volume < MEDIUM_VOLUME_LIMIT:
        return "medium_volume"
    return "high_volume"


def _frequency_category(active_days: int) -> str:
    if active_days == 0:
        return "no_activity"
    if active_days == 1:
        return "single_day"
    if active_days <= 3:
        return "low_frequency"
    if active_days <= 7:
        return "medium_frequency"
    return "high_frequency"


def _member_totals(population: set[str], metrics: pd.DataFrame) -> pd.DataFrame:
    """Per member: total volume, distinct active days and transaction count."""
    columns = ["total_volume", "active_days", "transaction_count"]
    index = pd.Index(sorted(population), name="wallet_id")
    if metrics.empty or not population:
        return pd.DataFrame(0, index=index, columns=columns)
    member_metrics = metrics[metrics["wallet_id"].astype(str).isin(population)].copy()
    member_metrics["wallet_id"] = member_metrics["wallet_id"].astype(str)
    active = member_metrics[member_metrics["is_active"].astype(bool)]
    totals = pd.DataFrame(
        {
            "total_volume": member_metrics.groupby("wallet_id")["total_volume"].sum().astype(float),
            "active_days": active.groupby("wallet_id")["activity_date"].nunique(),
            "transaction_count": member_metrics.groupby("wallet_id")["transaction_count"].sum(),
        }
    )
    return totals.reindex(index).fillna(0)


def _category_frame(
    label_name: str,
    categories: tuple[str, ...],
    labels: pd.Series,
    totals: pd.DataFrame,
    retained: set[str],
    baseline: float | None,
) -> pd.DataFrame:
    rows = []
    for category in categories:
        group = set(labels[labels == category].index)
        row = _rate_row(label_name, category, group, retained, baseline)
        members = totals.loc[sorted(group)]
        row["avg_active_days"] = round(float(members["active_days"].mean()), 2) if group else None
        row["avg_transactions"] = round(float(members["transaction_count"].mean()), 2) if group else None
        rows.append(row)
    return _rate_frame(rows)


def analyze_volume_retention(
    assignments: pd.DataFrame,
    metrics: pd.DataFrame,
    cohort_type: str,
    k: int = 1,
) -> pd.DataFrame:
    """Retention grouped by each member's total |value| volume tier."""
    population, retained, baseline = _population_baseline(assignments, metrics, cohort_type, k)
    totals = _member_totals(population, metrics)
    labels = totals["total_volume"].map(_volume_category)
    return _category_frame("volume_category", VOLUME_CATEGORIES, labels, totals, retained, baseline)


def analyze_frequency_retention(
    assignments: pd.DataFrame,
    metrics: pd.DataFrame,
    cohort_type: str,
    k: int = 1,
) -> pd.DataFrame:
    """Retention grouped by how many distinct days each member was active."""
    population, retained, baseline = _population_baseline(assignments, metrics, cohort_type, k)
    totals = _member_totals(population, metrics)
    labels = totals["active_days"].astype(int).map(_frequency_category)
    return _category_frame("frequency_category", FREQUENCY_CATEGORIES, labels, totals, retained, baseline)


def compare_new_vs_returning(
    metrics: pd.DataFrame,
    cohort_type: str,
    period_start: date,
    periods: int = max(RETENTION_PERIODS),
) -> dict[str, dict[str, Any]]:
    """Activity of first-time vs returning wallet-days over a cohort's retention window.

    ``metrics`` should hold the cohort members' rows only.
    """
    _, end = period_bounds(period_start, cohort_type, periods)
    window = metrics
    if not metrics.empty:
        window = metrics[metrics["activity_date"].between(period_start, end - timedelta(days=1))]
    result: dict[str, dict[str, Any]] = {}
    for key, returning in (("new_wallets", False), ("returning_wallets", True)):
        rows = window[window["is_returning"].astype(bool) == returning] if not window.empty else window
        if rows.empty:
            result[key] = {"wallet_count": 0, "active_days": 0, "activity_rate": None, "status": INSUFFICIENT_DATA}
            continue
        active = rows["is_active"].astype(bool)
        result[key] = {
            "wallet_count": int(rows["wallet_id"].nunique()),
            "active_days": int(rows.loc[active, "activity_date"].nunique()),
            "activity_rate": round(100.0 * float(active.mean()), 2),
            "status": "ok",
        }
    return result


def analyze_cohort_correlations(
    cohort_type: str,
    *,
    period_start: date | None = None,
    k: int = 1,
    db_path: Path | None = None,
) -> dict[str, Any]:
    """Load assignments and metrics from the store and run every correlation view.

    With ``period_start`` the single cohort is also split into new vs
    returning activity.
    """
    assignments = store.load_cohort_assignments(
        cohort_type, period_start=period_start, db_path=db_path
    )
    if assignments.empty:
        metrics = store.load_activity_metrics([], db_path=db_path)
    else:
        metrics = store.load_activity_metrics(assignments["wallet_id"].tolist(), db_path=db_path)
    views: dict[str, Any] = {
        "by_type": correlate_type_retention(assignments, metrics, cohort_type, k),
        "by_diversity": analyze_diversity_retention(assignments, metrics, cohort_type, k),
        "by_volume": analyze_volume_retention(assignments, metrics, cohort_type, k),
        "by_frequency": analyze_frequency_retention(assignments, metrics, cohort_type, k),
    }
    if period_start is not None:
        views["new_vs_returning"] = compare_new_vs_returning(metrics, cohort_type, period_start)
    return views
