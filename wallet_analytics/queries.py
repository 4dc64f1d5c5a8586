"""Read-only query contract for alert, recommendation and dashboard consumers."""

from __future__ import annotations

from datetime import date, datetime
from pathlib import Path
from typing import Any

import pandas as pd

from . import store
from .funnel import (
    STAGES,
    analyze_conversion_trends,
    compute_funnel_stats,
    load_funnel_frame,
    load_state,
    time_to_achieve_hours,
)
from .period_utils import COHORT_TYPES, period_start, to_date
from .scoring import ProductivityScore, load_score


def get_activity_metrics(
    wallet_id: str,
    start: date | datetime | None = None,
    end: date | datetime | None = None,
    *,
    db_path: Path | None = None,
) -> pd.DataFrame:
    """ActivityMetric rows for a wallet over an inclusive date range."""
    return store.load_activity_metrics(
        [wallet_id],
        start=to_date(start) if start is not None else None,
        end=to_date(end) if end is not None else None,
        db_path=db_path,
    )


def get_cohort_retention(
    cohort_type: str,
    start: date | datetime | None = None,
    end: date | datetime | None = None,
    *,
    db_path: Path | None = None,
) -> pd.DataFrame:
    """Cohort rows whose period_start falls in the range, with preliminary labels.

    ``final_k`` is True when retention_k is final; otherwise the value is
    preliminary.
    """
    cohort_type = cohort_type.lower()
    if cohort_type not in COHORT_TYPES:
        raise ValueError(f"Invalid cohort type: {cohort_type}")
    cohorts = store.load_cohorts(
        cohort_type,
        start=period_start(start, cohort_type) if start is not None else None,
        end=to_date(end) if end is not None else None,
        db_path=db_path,
    )
    final_periods = cohorts["final_periods"].fillna(0).astype(int)
    for k in range(1, 5):
        cohorts[f"final_{k}"] = final_periods >= k
    return cohorts


def get_funnel_stats(
    segment_by: str | None = None,
    segment_filter: Any | None = None,
    *,
    db_path: Path | None = None,
) -> dict[str, Any]:
    return compute_funnel_stats(
        load_funnel_frame(db_path=db_path),
        segment_by=segment_by,
        segment_filter=segment_filter,
    )


def get_conversion_trends(
    granularity: str = "weekly",
    *,
    as_of: datetime | None = None,
    lookback_days: int = 90,
    db_path: Path | None = None,
) -> pd.DataFrame:
    return analyze_conversion_trends(
        load_funnel_frame(db_path=db_path),
        granularity=granularity,
        as_of=as_of,
        lookback_days=lookback_days,
    )


def get_funnel_state(wallet_id: str, *, db_path: Path | None = None) -> list[dict[str, Any]]:
    """Per-stage achieved_at and hours since creation for one wallet."""
    state = load_state(wallet_id, db_path=db_path)
    wallets = store.load_wallets([wallet_id], db_path=db_path)
    created_at = None
    if not wallets.empty and not pd.isna(wallets["created_at"].iloc[0]):
        created_at = wallets["created_at"].iloc[0].to_pydatetime()
    hours = time_to_achieve_hours(state, created_at)
    return [
        {"stage": stage, "achieved_at": achieved_at, "time_to_achieve_hours": elapsed}
        for stage, achieved_at, elapsed in zip(STAGES, state, hours)
    ]


def get_productivity_score(wallet_id: str, *, db_path: Path | None = None) -> ProductivityScore | None:
    return load_score(wallet_id, db_path=db_path)


def get_pending_tasks(wallet_id: str, *, db_path: Path | None = None) -> pd.DataFrame:
    tasks = store.load_tasks(wallet_id, state="pending", db_path=db_path)
    return tasks[["component", "created_at", "baseline", "baseline_at"]].reset_index(drop=True)


def get_completed_tasks(wallet_id: str, *, db_path: Path | None = None) -> pd.DataFrame:
    tasks = store.load_tasks(wallet_id, state="completed", db_path=db_path)
    return tasks[
        ["component", "created_at", "completed_at", "baseline", "completed_value", "effectiveness"]
    ].reset_index(drop=True)
