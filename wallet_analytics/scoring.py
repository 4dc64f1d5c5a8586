"""Productivity scoring: component scores, status/risk and task lifecycle.

``score_wallet`` is a pure function of the metrics window, funnel state,
retention context and the previous score. Task state is threaded through the
previous score rather than mutated in place.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta
from pathlib import Path
from typing import Any

import pandas as pd

from . import config as cfg
from . import store
from .activity import EVENT_TYPES, TYPE_COUNT_COLUMNS, metrics_window
from .cohorts import INSUFFICIENT_DATA, RETENTION_PERIODS
from .funnel import STAGES, FunnelState, load_state
from .period_utils import as_utc, to_date

LOGGER = logging.getLogger(__name__)

COMPONENTS = ("retention", "adoption", "activity", "diversity")
STATUSES = ("healthy", "at_risk", "churn")
RISK_LEVELS = ("low", "medium", "high")


def _default_weights() -> dict[str, float]:
    return {"retention": 0.35, "adoption": 0.30, "activity": 0.20, "diversity": 0.15}


@dataclass(frozen=True)
class ScoringPolicy:
    """Point allocations and thresholds for productivity scoring.

    Tier tables are ``(threshold, points)`` pairs checked top-down. Frequency
    compares active days with ``>=``, recency compares days since last
    activity with ``<=`` and volume compares window volume with ``>``.
    """

    weights: Mapping[str, float] = field(default_factory=_default_weights)
    window_days: int = cfg.env_int("SCORING_WINDOW_DAYS", 30)
    target_daily_transactions: float = cfg.env_float("SCORING_TARGET_DAILY_TX", 1.0)
    frequency_tiers: tuple[tuple[float, float], ...] = ((15, 30), (8, 20), (4, 10), (1, 5))
    recency_tiers: tuple[tuple[float, float], ...] = ((1, 30), (3, 20), (7, 10), (14, 5))
    volume_tiers: tuple[tuple[float, float], ...] = ((1e8, 20), (1e7, 15), (1e6, 10), (0, 5))
    diversity_points_per_type: float = 5.0
    diversity_bonus_cap: float = 20.0
    healthy_threshold: int = 70
    at_risk_threshold: int = 40
    large_drop: int = 15
    task_threshold: float = cfg.env_float("TASK_HEALTHY_THRESHOLD", 70.0)
    improvement_threshold: float = cfg.env_float("TASK_IMPROVEMENT_THRESHOLD", 0.10)
    task_lookback_days: int = cfg.env_int("TASK_LOOKBACK_DAYS", 14)

    def __post_init__(self) -> None:
        if set(self.weights) != set(COMPONENTS):
            raise ValueError(f"Weights must cover exactly {COMPONENTS}, got {sorted(self.weights)}")
        if any(weight < 0 for weight in self.weights.values()):
            raise ValueError("Weights must be non-negative")
        if abs(sum(self.weights.values()) - 1.0) > 1e-9:
            raise ValueError(f"Weights must sum to 1, got {sum(self.weights.values())}")
        if self.window_days <= 0 or self.target_daily_transactions <= 0:
            raise ValueError("window_days and target_daily_transactions must be positive")


DEFAULT_POLICY = ScoringPolicy()


@dataclass(frozen=True)
class PendingTask:
    component: str
    created_at: datetime
    baseline: float
    baseline_at: datetime


@dataclass(frozen=True)
class CompletedTask:
    component: str
    created_at: datetime
    completed_at: datetime
    baseline: float
    completed_value: float
    effectiveness: float | None


@dataclass(frozen=True)
class RetentionContext:
    """The wallet's cohort retention curve (weekly cohort by default)."""

    cohort_type: str = "weekly"
    period_start: date | None = None
    retention: Mapping[int, float | None] = field(default_factory=dict)
    final_periods: int = 0

    @property
    def latest_final_retention(self) -> float | None:
        for k in sorted(self.retention, reverse=True):
            if k <= self.final_periods and self.retention[k] is not None:
                return float(self.retention[k])
        return None


@dataclass(frozen=True)
class ProductivityScore:
    wallet_id: str
    total_score: int
    retention_score: float
    adoption_score: float
    activity_score: float
    diversity_score: float
    status: str
    risk_level: str
    calculated_at: datetime
    pending_tasks: tuple[PendingTask, ...] = ()
    completed_tasks: tuple[CompletedTask, ...] = ()
    previous_total_score: int | None = None
    cohort_retention_delta: float | None = None

    @property
    def components(self) -> dict[str, float]:
        return {
            "retention": self.retention_score,
            "adoption": self.adoption_score,
            "activity": self.activity_score,
            "diversity": self.diversity_score,
        }

    def to_row(self) -> dict[str, Any]:
        return {
            "wallet_id": self.wallet_id,
            "total_score": self.total_score,
            "retention_score": self.retention_score,
            "adoption_score": self.adoption_score,
            "activity_score": self.activity_score,
            "diversity_score": self.diversity_score,
            "status": self.status,
            "risk_level": self.risk_level,
            "previous_total_score": self.previous_total_score,
            "calculated_at": self.calculated_at,
        }


def _tier(value: float, tiers: Iterable[tuple[float, float]], compare) -> float:
    for threshold, points in tiers:
        if compare(value, threshold):
            return float(points)
    return 0.0


def _clamp(component: str, value: float) -> float:
    if value < 0.0 or value > 100.0:
        LOGGER.warning("%s score %.2f out of range; clamping to [0, 100]", component, value)
    return round(min(100.0, max(0.0, value)), 2)


def _types_used(window: pd.DataFrame) -> int:
    if window.empty:
        return 0
    return sum(int(window[TYPE_COUNT_COLUMNS[t]].sum() > 0) for t in EVENT_TYPES)


def retention_component(window: pd.DataFrame, as_of: datetime | date, policy: ScoringPolicy) -> float:
    active = window[window["is_active"].astype(bool)] if not window.empty else window
    if active.empty:
        return 0.0
    active_days = int(active["activity_date"].nunique())
    days_since_last = (to_date(as_of) - max(active["activity_date"])).days
    frequency = _tier(active_days, policy.frequency_tiers, lambda v, t: v >= t)
    recency = _tier(days_since_last, policy.recency_tiers, lambda v, t: v <= t)
    volume = _tier(float(window["total_volume"].sum()), policy.volume_tiers, lambda v, t: v > t)
    diversity = min(_types_used(window) * policy.diversity_points_per_type, policy.diversity_bonus_cap)
    return frequency + recency + volume + diversity


def adoption_component(funnel_state: FunnelState | None) -> float:
    if not funnel_state:
        return 0.0
    furthest = 0
    for idx, achieved_at in enumerate(funnel_state):
        if achieved_at is not None:
            furthest = idx + 1
    return 100.0 * furthest / len(STAGES)


def activity_component(window: pd.DataFrame, policy: ScoringPolicy) -> float:
    tx_count = int(window["transaction_count"].sum()) if not window.empty else 0
    return 100.0 * tx_count / (policy.window_days * policy.target_daily_transactions)


def diversity_component(window: pd.DataFrame) -> float:
    return 100.0 * _types_used(window) / len(EVENT_TYPES)


def classify_status(total: int, policy: ScoringPolicy = DEFAULT_POLICY) -> str:
    if total >= policy.healthy_threshold:
        return "healthy"
    if total >= policy.at_risk_threshold:
        return "at_risk"
    return "churn"


def classify_risk(status: str, delta: int, policy: ScoringPolicy = DEFAULT_POLICY) -> str:
    if status == "churn" or delta <= -policy.large_drop:
        return "high"
    if status == "at_risk" or delta < 0:
        return "medium"
    return "low"


def _advance_tasks(
    components: Mapping[str, float],
    previous: ProductivityScore | None,
    as_of: datetime,
    policy: ScoringPolicy,
) -> tuple[tuple[PendingTask, ...], tuple[CompletedTask, ...]]:
    pending: list[PendingTask] = []
    completed: list[CompletedTask] = list(previous.completed_tasks) if previous else []
    resolved_now: set[str] = set()
    lookback = timedelta(days=policy.task_lookback_days)

    for task in previous.pending_tasks if previous else ():
        current = components[task.component]
        if task.baseline > 0:
            improved = (current - task.baseline) / task.baseline >= policy.improvement_threshold
        else:
            improved = current > 0
        within = as_of - task.baseline_at <= lookback
        if improved and within:
            effectiveness = (
                round((current - task.baseline) / task.baseline, 4) if task.baseline > 0 else None
            )
            completed.append(
                CompletedTask(
                    component=task.component,
                    created_at=task.created_at,
                    completed_at=as_of,
                    baseline=task.baseline,
                    completed_value=current,
                    effectiveness=effectiveness,
                )
            )
            resolved_now.add(task.component)
            LOGGER.info("Task %s completed (baseline %.2f -> %.2f)", task.component, task.baseline, current)
        elif not within:
            pending.append(PendingTask(task.component, task.created_at, current, as_of))
        else:
            pending.append(task)

    outstanding = {task.component for task in pending}
    has_history = {task.component for task in completed}
    for component in COMPONENTS:
        value = components[component]
        if value >= policy.task_threshold or component in outstanding or component in resolved_now:
            continue
        # only a fresh crossing below the threshold opens a new task
        if previous is not None and component in has_history:
            if previous.components[component] < policy.task_threshold:
                continue
        pending.append(PendingTask(component, as_of, value, as_of))
    return tuple(pending), tuple(completed)


def score_wallet(
    wallet_id: str,
    *,
    metrics_window: pd.DataFrame,
    funnel_state: FunnelState | None,
    retention_context: RetentionContext | None = None,
    previous: ProductivityScore | None = None,
    as_of: datetime,
    policy: ScoringPolicy = DEFAULT_POLICY,
) -> ProductivityScore:
    """Compute a wallet's productivity score and advance its task lifecycle."""
    as_of = as_utc(as_of)
    components = {
        "retention": _clamp("retention", retention_component(metrics_window, as_of, policy)),
        "adoption": _clamp("adoption", adoption_component(funnel_state)),
        "activity": _clamp("activity", activity_component(metrics_window, policy)),
        "diversity": _clamp("diversity", diversity_component(metrics_window)),
    }
    weighted = sum(policy.weights[name] * components[name] for name in COMPONENTS)
    total = int(min(100, max(0, round(weighted))))

    if previous is None:
        previous_total = None
    elif as_utc(previous.calculated_at) == as_of:
        # recalculation at the same instant compares against the same baseline
        previous_total = previous.previous_total_score
    else:
        previous_total = previous.total_score
    delta = total - previous_total if previous_total is not None else 0

    status = classify_status(total, policy)
    pending, completed = _advance_tasks(components, previous, as_of, policy)

    cohort_delta = None
    if retention_context is not None and retention_context.latest_final_retention is not None:
        cohort_delta = round(components["retention"] - retention_context.latest_final_retention, 2)

    return ProductivityScore(
        wallet_id=wallet_id,
        total_score=total,
        retention_score=components["retention"],
        adoption_score=components["adoption"],
        activity_score=components["activity"],
        diversity_score=components["diversity"],
        status=status,
        risk_level=classify_risk(status, delta, policy),
        calculated_at=as_of,
        pending_tasks=pending,
        completed_tasks=completed,
        previous_total_score=previous_total,
        cohort_retention_delta=cohort_delta,
    )


# ── persistence helpers ──────────────────────────────────────


def _ts(value: Any) -> datetime | None:
    if value is None or pd.isna(value):
        return None
    return pd.Timestamp(value).to_pydatetime()


def _float_or_none(value: Any) -> float | None:
    if value is None or pd.isna(value):
        return None
    return float(value)


def tasks_from_frame(tasks: pd.DataFrame) -> tuple[tuple[PendingTask, ...], tuple[CompletedTask, ...]]:
    pending: list[PendingTask] = []
    completed: list[CompletedTask] = []
    for row in tasks.itertuples(index=False):
        if row.state == "pending":
            pending.append(PendingTask(row.component, _ts(row.created_at), float(row.baseline), _ts(row.baseline_at)))
        else:
            completed.append(
                CompletedTask(
                    component=row.component,
                    created_at=_ts(row.created_at),
                    completed_at=_ts(row.completed_at),
                    baseline=float(row.baseline),
                    completed_value=float(row.completed_value),
                    effectiveness=_float_or_none(row.effectiveness),
                )
            )
    return tuple(pending), tuple(completed)


def tasks_to_frame(score: ProductivityScore) -> pd.DataFrame:
    rows = [
        {
            "wallet_id": score.wallet_id,
            "component": task.component,
            "state": "pending",
            "created_at": task.created_at,
            "baseline": task.baseline,
            "baseline_at": task.baseline_at,
            "completed_at": None,
            "completed_value": None,
            "effectiveness": None,
        }
        for task in score.pending_tasks
    ]
    rows.extend(
        {
            "wallet_id": score.wallet_id,
            "component": task.component,
            "state": "completed",
            "created_at": task.created_at,
            "baseline": task.baseline,
            "baseline_at": None,
            "completed_at": task.completed_at,
            "completed_value": task.completed_value,
            "effectiveness": task.effectiveness,
        }
        for task in score.completed_tasks
    )
    return pd.DataFrame(rows, columns=store.TASK_COLUMNS)


def load_score(wallet_id: str, *, db_path: Path | None = None) -> ProductivityScore | None:
    scores = store.load_scores([wallet_id], db_path=db_path)
    if scores.empty:
        return None
    row = scores.iloc[0]
    pending, completed = tasks_from_frame(store.load_tasks(wallet_id, db_path=db_path))
    previous_total = row["previous_total_score"]
    return ProductivityScore(
        wallet_id=wallet_id,
        total_score=int(row["total_score"]),
        retention_score=float(row["retention_score"]),
        adoption_score=float(row["adoption_score"]),
        activity_score=float(row["activity_score"]),
        diversity_score=float(row["diversity_score"]),
        status=str(row["status"]),
        risk_level=str(row["risk_level"]),
        calculated_at=_ts(row["calculated_at"]),
        pending_tasks=pending,
        completed_tasks=completed,
        previous_total_score=None if pd.isna(previous_total) else int(previous_total),
    )


def save_wallet_score(
    score: ProductivityScore,
    *,
    expected_calculated_at: datetime | None,
    db_path: Path | None = None,
) -> None:
    store.save_score(
        score.to_row(),
        tasks_to_frame(score),
        expected_calculated_at=expected_calculated_at,
        db_path=db_path,
    )


def load_retention_context(
    wallet_id: str, cohort_type: str = "weekly", *, db_path: Path | None = None
) -> RetentionContext | None:
    assignments = store.load_cohort_assignments(cohort_type, wallet_ids=[wallet_id], db_path=db_path)
    if assignments.empty:
        return None
    start = assignments["period_start"].iloc[0]
    cohorts = store.load_cohorts(cohort_type, start=start, end=start, db_path=db_path)
    if cohorts.empty:
        return RetentionContext(cohort_type=cohort_type, period_start=start)
    row = cohorts.iloc[0]
    retention = {k: _float_or_none(row[f"retention_{k}"]) for k in RETENTION_PERIODS}
    final_periods = row["final_periods"]
    return RetentionContext(
        cohort_type=cohort_type,
        period_start=start,
        retention=retention,
        final_periods=0 if pd.isna(final_periods) else int(final_periods),
    )


def recalculate_wallet(
    wallet_id: str,
    as_of: datetime,
    *,
    policy: ScoringPolicy = DEFAULT_POLICY,
    db_path: Path | None = None,
) -> ProductivityScore:
    """Score a wallet from stored inputs and save it with compare-and-swap.

    Raises ``store.ConcurrentRecalculationConflict`` when the stored score
    changed between load and save.
    """
    previous = load_score(wallet_id, db_path=db_path)
    score = score_wallet(
        wallet_id,
        metrics_window=metrics_window(wallet_id, as_of, policy.window_days, db_path=db_path),
        funnel_state=load_state(wallet_id, db_path=db_path),
        retention_context=load_retention_context(wallet_id, db_path=db_path),
        previous=previous,
        as_of=as_of,
        policy=policy,
    )
    save_wallet_score(
        score,
        expected_calculated_at=previous.calculated_at if previous else None,
        db_path=db_path,
    )
    return score


def summarize_scores(scores: pd.DataFrame) -> dict[str, Any]:
    """Status/risk distribution and health percentage over stored scores."""
    if scores.empty:
        return {"total_wallets": 0, "status": INSUFFICIENT_DATA}
    total = len(scores)
    status_counts = scores["status"].value_counts()
    risk_counts = scores["risk_level"].value_counts()
    return {
        "total_wallets": total,
        "average_score": round(float(scores["total_score"].mean()), 2),
        "status_distribution": {s: int(status_counts.get(s, 0)) for s in STATUSES},
        "risk_distribution": {r: int(risk_counts.get(r, 0)) for r in RISK_LEVELS},
        "health_percentage": round(100.0 * int(status_counts.get("healthy", 0)) / total, 2),
        "status": "ok",
    }
