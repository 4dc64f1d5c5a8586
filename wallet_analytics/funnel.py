"""Adoption funnel: five ordered stages with first-write-wins timestamps.

A wallet's funnel state is a fixed tuple of nullable achieved_at timestamps,
one per stage. Stages are evaluated strictly in order; a later stage whose raw
evidence predates an earlier stage is clipped forward to the earlier stage's
timestamp.
"""

from __future__ import annotations

import logging
from collections.abc import Sequence
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta
from pathlib import Path
from typing import Any

import pandas as pd

from . import config as cfg
from . import store
from .cohorts import INSUFFICIENT_DATA
from .period_utils import COHORT_TYPES, as_utc, period_start, to_date

LOGGER = logging.getLogger(__name__)

STAGES = ("created", "first_tx", "feature_usage", "recurring", "high_value")
FEATURE_TYPES = ("swap", "bridge", "shielded")
SEGMENTS = ("cohort", "wallet_type")

FunnelState = tuple[datetime | None, ...]


@dataclass(frozen=True)
class FunnelPolicy:
    recurring_min_days: int = cfg.env_int("FUNNEL_RECURRING_DAYS", 3)
    recurring_window_days: int = cfg.env_int("FUNNEL_RECURRING_WINDOW_DAYS", 30)
    high_value_threshold: float = cfg.env_float("FUNNEL_HIGH_VALUE_THRESHOLD", 1_000_000.0)


DEFAULT_POLICY = FunnelPolicy()


@dataclass(frozen=True)
class StageOrderAnomaly:
    stage: str
    raw_at: datetime
    clipped_to: datetime


@dataclass
class FunnelEvaluation:
    wallet_id: str | None
    state: FunnelState
    newly_achieved: list[str] = field(default_factory=list)
    anomalies: list[StageOrderAnomaly] = field(default_factory=list)
    creation_known: bool = True

    @property
    def current_stage(self) -> str | None:
        reached = [stage for stage, ts in zip(STAGES, self.state) if ts is not None]
        return reached[-1] if reached else None


def empty_state() -> FunnelState:
    return (None,) * len(STAGES)


def _checked(state: Sequence[datetime | None]) -> FunnelState:
    if len(state) != len(STAGES):
        raise ValueError(f"Funnel state must have {len(STAGES)} entries, got {len(state)}")
    return tuple(as_utc(ts) if ts is not None else None for ts in state)


def raw_stage_times(
    events: pd.DataFrame,
    *,
    created_at: datetime | None,
    as_of: datetime,
    policy: FunnelPolicy = DEFAULT_POLICY,
) -> dict[str, datetime | None]:
    """Earliest timestamp at which each stage predicate holds, ignoring stage order."""
    cutoff = pd.Timestamp(as_utc(as_of))
    times: dict[str, datetime | None] = {stage: None for stage in STAGES}
    if not events.empty:
        frame = events.copy()
        frame["block_timestamp"] = pd.to_datetime(frame["block_timestamp"], utc=True)
        frame = frame[frame["block_timestamp"] <= cutoff]
        frame = frame.sort_values(["block_timestamp", "txid"], kind="mergesort").reset_index(drop=True)
    else:
        frame = events

    if created_at is not None:
        created = as_utc(created_at)
        times["created"] = created if created <= cutoff.to_pydatetime() else None
    elif not frame.empty:
        times["created"] = frame["block_timestamp"].iloc[0].to_pydatetime()

    if frame.empty:
        return times

    times["first_tx"] = frame["block_timestamp"].iloc[0].to_pydatetime()

    feature_used = frame["feature_used"].notna() & (frame["feature_used"].astype(str) != "")
    feature_mask = frame["tx_type"].astype(str).str.lower().isin(FEATURE_TYPES) | feature_used
    if feature_mask.any():
        times["feature_usage"] = frame.loc[feature_mask, "block_timestamp"].iloc[0].to_pydatetime()

    days = frame["block_timestamp"].dt.date
    distinct_days = sorted(set(days))
    need = max(1, policy.recurring_min_days)
    span = timedelta(days=policy.recurring_window_days - 1)
    for idx in range(need - 1, len(distinct_days)):
        if distinct_days[idx] - distinct_days[idx - need + 1] <= span:
            first_on_day = frame.loc[days == distinct_days[idx], "block_timestamp"].iloc[0]
            times["recurring"] = first_on_day.to_pydatetime()
            break

    cumulative = frame["value"].astype(float).abs().cumsum()
    crossed = cumulative > policy.high_value_threshold
    if crossed.any():
        times["high_value"] = frame.loc[crossed, "block_timestamp"].iloc[0].to_pydatetime()
    return times


def evaluate(
    state: Sequence[datetime | None] | None,
    *,
    created_at: datetime | None,
    events: pd.DataFrame,
    as_of: datetime,
    policy: FunnelPolicy = DEFAULT_POLICY,
    wallet_id: str | None = None,
) -> FunnelEvaluation:
    """Advance a funnel state using events observed at or before ``as_of``.

    Already-set stages are never changed. Evaluation stops at the first stage
    that is still unachieved, so no stage can be skipped.
    """
    current = list(_checked(state) if state is not None else empty_state())
    raw = raw_stage_times(events, created_at=created_at, as_of=as_of, policy=policy)
    evaluation = FunnelEvaluation(
        wallet_id=wallet_id, state=tuple(current), creation_known=created_at is not None
    )
    previous: datetime | None = None
    for idx, stage in enumerate(STAGES):
        if current[idx] is not None:
            previous = current[idx]
            continue
        raw_at = raw[stage]
        if raw_at is None:
            break
        achieved = raw_at
        if previous is not None and raw_at < previous:
            anomaly = StageOrderAnomaly(stage=stage, raw_at=raw_at, clipped_to=previous)
            evaluation.anomalies.append(anomaly)
            LOGGER.warning(
                "Stage order anomaly for %s: %s satisfied at %s before previous stage at %s",
                wallet_id or "<wallet>",
                stage,
                raw_at.isoformat(),
                previous.isoformat(),
            )
            achieved = previous
        current[idx] = achieved
        evaluation.newly_achieved.append(stage)
        previous = achieved
    evaluation.state = tuple(current)
    return evaluation


def time_to_achieve_hours(
    state: Sequence[datetime | None], created_at: datetime | None
) -> tuple[float | None, ...]:
    """Hours from wallet creation to each achieved stage; all None when creation is unknown."""
    if created_at is None:
        return (None,) * len(STAGES)
    created = as_utc(created_at)
    return tuple(
        round((as_utc(ts) - created).total_seconds() / 3600.0, 2) if ts is not None else None
        for ts in state
    )


def wallet_progress(state: Sequence[datetime | None]) -> dict[str, Any]:
    completed = [stage for stage, ts in zip(STAGES, state) if ts is not None]
    current = completed[-1] if completed else None
    next_index = len(completed)
    return {
        "current_stage": current,
        "next_stage": STAGES[next_index] if next_index < len(STAGES) else None,
        "stages_completed": len(completed),
        "progress_percentage": round(100.0 * len(completed) / len(STAGES), 2),
    }


def state_from_rows(rows: pd.DataFrame) -> FunnelState:
    """Build a funnel tuple from stored (stage, achieved_at) rows of one wallet."""
    state: list[datetime | None] = list(empty_state())
    for row in rows.itertuples(index=False):
        if row.stage in STAGES and not pd.isna(row.achieved_at):
            state[STAGES.index(row.stage)] = pd.Timestamp(row.achieved_at).to_pydatetime()
    return tuple(state)


def load_state(wallet_id: str, *, db_path: Path | None = None) -> FunnelState:
    return state_from_rows(store.load_funnel_stages([wallet_id], db_path=db_path))


def evaluate_wallet(
    wallet_id: str,
    as_of: datetime,
    *,
    created_at: datetime | None = None,
    policy: FunnelPolicy = DEFAULT_POLICY,
    db_path: Path | None = None,
) -> FunnelEvaluation:
    """Load, evaluate and persist one wallet's funnel (first write wins)."""
    if created_at is None:
        wallets = store.load_wallets([wallet_id], db_path=db_path)
        if not wallets.empty and not pd.isna(wallets["created_at"].iloc[0]):
            created_at = wallets["created_at"].iloc[0].to_pydatetime()
    state = load_state(wallet_id, db_path=db_path)
    events = store.load_events(wallet_id, until=as_of, db_path=db_path)
    evaluation = evaluate(
        state,
        created_at=created_at,
        events=events,
        as_of=as_of,
        policy=policy,
        wallet_id=wallet_id,
    )
    if evaluation.newly_achieved:
        rows = pd.DataFrame(
            [
                {
                    "stage": stage,
                    "stage_index": STAGES.index(stage),
                    "achieved_at": evaluation.state[STAGES.index(stage)],
                }
                for stage in evaluation.newly_achieved
            ]
        )
        store.record_funnel_stages(wallet_id, rows, db_path=db_path)
        # another writer may have won; report what is actually stored
        evaluation.state = load_state(wallet_id, db_path=db_path)
    return evaluation


# ── aggregate metrics ────────────────────────────────────────


def load_funnel_frame(*, db_path: Path | None = None) -> pd.DataFrame:
    """Wide frame: one row per registered or staged wallet, one column per stage.

    Carries ``created_at``, ``wallet_type`` and the weekly ``cohort`` start for
    segmentation.
    """
    wallets = store.load_wallets(db_path=db_path)
    stages = store.load_funnel_stages(db_path=db_path)
    assignments = store.load_cohort_assignments("weekly", db_path=db_path)
    wallet_ids = sorted(set(wallets["wallet_id"]) | set(stages["wallet_id"]))
    frame = pd.DataFrame({"wallet_id": wallet_ids})
    if not stages.empty:
        wide = stages.pivot(index="wallet_id", columns="stage", values="achieved_at")
        frame = frame.merge(wide, left_on="wallet_id", right_index=True, how="left")
    for stage in STAGES:
        if stage not in frame.columns:
            frame[stage] = pd.NaT
        frame[stage] = pd.to_datetime(frame[stage], utc=True)
    frame = frame.merge(wallets, on="wallet_id", how="left")
    cohorts = assignments[["wallet_id", "period_start"]].rename(columns={"period_start": "cohort"})
    frame = frame.merge(cohorts, on="wallet_id", how="left")
    return frame[["wallet_id", *STAGES, "created_at", "wallet_type", "cohort"]]


def _severity(drop_off: float) -> str:
    if drop_off > 0.70:
        return "high"
    if drop_off > 0.50:
        return "medium"
    return "low"


def _hour_stats(values: list[float]) -> dict[str, Any]:
    if not values:
        return {"count": 0, "status": INSUFFICIENT_DATA}
    stats = pd.Series(values, dtype=float).agg(["mean", "median", "min", "max"]).round(2)
    return {
        "count": len(values),
        "mean_hours": float(stats["mean"]),
        "median_hours": float(stats["median"]),
        "min_hours": float(stats["min"]),
        "max_hours": float(stats["max"]),
        "status": "ok",
    }


def _stats_for(frame: pd.DataFrame) -> dict[str, Any]:
    counts = [int(frame[stage].notna().sum()) if not frame.empty else 0 for stage in STAGES]
    stages: list[dict[str, Any]] = []
    ranking: list[dict[str, Any]] = []
    for idx, stage in enumerate(STAGES):
        entry: dict[str, Any] = {"stage": stage, "achieved": counts[idx]}
        if idx + 1 < len(STAGES):
            entry["next_stage"] = STAGES[idx + 1]
            if counts[idx] > 0:
                conversion = round(counts[idx + 1] / counts[idx], 4)
                drop_off = round(1.0 - conversion, 4)
                entry.update(conversion=conversion, drop_off=drop_off, status="ok")
                ranking.append(
                    {
                        "from_stage": stage,
                        "to_stage": STAGES[idx + 1],
                        "drop_off": drop_off,
                        "severity": _severity(drop_off),
                    }
                )
            else:
                entry.update(conversion=None, drop_off=None, status=INSUFFICIENT_DATA)
        stages.append(entry)
    ranking.sort(key=lambda item: (-item["drop_off"], STAGES.index(item["from_stage"])))

    time_to_stage: dict[str, Any] = {}
    known = frame[frame["created_at"].notna()] if not frame.empty else frame
    for stage in STAGES[1:]:
        hours: list[float] = []
        if not known.empty:
            reached = known[known[stage].notna()]
            hours = [
                (achieved - created).total_seconds() / 3600.0
                for achieved, created in zip(reached[stage], reached["created_at"])
            ]
        time_to_stage[stage] = _hour_stats(hours)

    return {
        "population": int(len(frame)),
        "stages": stages,
        "drop_off_ranking": ranking,
        "time_to_stage": time_to_stage,
    }


def compute_funnel_stats(
    states: pd.DataFrame,
    *,
    segment_by: str | None = None,
    segment_filter: Any | None = None,
) -> dict[str, Any]:
    """Stage counts, conversion/drop-off and time-to-stage over a funnel frame.

    With ``segment_by`` and a ``segment_filter`` the population is restricted
    to that segment; with ``segment_by`` alone the stats are returned per
    segment value under ``"segments"``.
    """
    if segment_by is not None and segment_by not in SEGMENTS:
        raise ValueError(f"Invalid funnel segment: {segment_by}")
    if segment_by is None:
        if segment_filter is not None:
            raise ValueError("segment_filter requires segment_by")
        return _stats_for(states)

    column = segment_by
    if segment_filter is not None:
        target = segment_filter
        if segment_by == "cohort" and not isinstance(target, date):
            target = pd.Timestamp(target).date()
        subset = states[states[column] == target] if not states.empty else states
        result = _stats_for(subset)
        result.update(segment_by=segment_by, segment=segment_filter)
        return result

    segments: dict[Any, dict[str, Any]] = {}
    if not states.empty:
        for value, group in states[states[column].notna()].groupby(column, sort=True):
            segments[value] = _stats_for(group)
    return {"segment_by": segment_by, "segments": segments}


TREND_GRANULARITIES = ("daily", *COHORT_TYPES)


def analyze_conversion_trends(
    states: pd.DataFrame,
    *,
    granularity: str = "weekly",
    as_of: datetime | None = None,
    lookback_days: int = 90,
    min_wallets: int = 1,
) -> pd.DataFrame:
    """Per creation period, the share of wallets that reached each stage.

    Wallets are bucketed by created_at (unknown creation dates are left out).
    With ``as_of`` only wallets created in the trailing ``lookback_days`` are
    counted. Periods with fewer than ``min_wallets`` wallets are dropped.
    Newest period first, stages in funnel order.
    """
    if granularity not in TREND_GRANULARITIES:
        raise ValueError(f"Invalid trend granularity: {granularity}")
    columns = ["period_start", "stage", "total_wallets", "achieved_wallets", "conversion_rate"]
    known = states[states["created_at"].notna()] if not states.empty else states
    if not known.empty:
        known = known.assign(created_at=pd.to_datetime(known["created_at"], utc=True))
    if as_of is not None and not known.empty:
        end = pd.Timestamp(as_utc(as_of))
        start = end - pd.Timedelta(days=lookback_days)
        known = known[(known["created_at"] >= start) & (known["created_at"] <= end)]
    if known.empty:
        return pd.DataFrame(columns=columns)

    if granularity == "daily":
        periods = known["created_at"].map(to_date)
    else:
        periods = known["created_at"].map(lambda ts: period_start(ts, granularity))
    rows: list[dict[str, Any]] = []
    for start_day, group in known.groupby(periods, sort=True):
        total = len(group)
        if total < min_wallets:
            continue
        for stage in STAGES:
            achieved = int(group[stage].notna().sum())
            rows.append(
                {
                    "period_start": start_day,
                    "stage": stage,
                    "total_wallets": total,
                    "achieved_wallets": achieved,
                    "conversion_rate": round(100.0 * achieved / total, 2),
                }
            )
    frame = pd.DataFrame(rows, columns=columns)
    return frame.sort_values("period_start", ascending=False, kind="mergesort").reset_index(drop=True)
