"""Daily activity aggregation for classified wallet transactions.

Events are deduplicated against the persisted seen-set, bucketed by UTC
calendar date and folded into one ActivityMetric row per (wallet, date).
Affected dates are always rebuilt from the full stored event set, so replaying
any subset of history in any order converges on the same rows.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta
from pathlib import Path
from typing import Any

import pandas as pd

from . import store
from .period_utils import as_utc, to_date

LOGGER = logging.getLogger(__name__)

EVENT_TYPES = ("transfer", "swap", "bridge", "shielded")
TYPE_COUNT_COLUMNS = {
    "transfer": "transfers_count",
    "swap": "swaps_count",
    "bridge": "bridges_count",
    "shielded": "shielded_count",
}
MODES = ("incremental", "backfill")

COMPLEXITY_POINTS_PER_SUBTYPE = 5
COMPLEXITY_CAP = 100


@dataclass(frozen=True)
class TransactionEvent:
    wallet_id: str
    txid: str
    block_timestamp: datetime
    type: str
    subtype: str | None = None
    value: float = 0.0
    fee: float = 0.0
    counterparty_type: str | None = None
    feature_used: str | None = None

    @classmethod
    def from_mapping(cls, payload: Mapping[str, Any]) -> "TransactionEvent":
        """Build an event from a feed payload (``tx_type``/``type`` both accepted)."""
        tx_type = payload.get("type", payload.get("tx_type"))
        if not payload.get("txid") or tx_type is None:
            raise ValueError(f"Transaction payload missing txid or type: {payload!r}")
        return cls(
            wallet_id=str(payload["wallet_id"]),
            txid=str(payload["txid"]),
            block_timestamp=as_utc(payload["block_timestamp"]),
            type=str(tx_type).lower(),
            subtype=payload.get("subtype", payload.get("tx_subtype")),
            value=float(payload.get("value") or 0.0),
            fee=float(payload.get("fee") or 0.0),
            counterparty_type=payload.get("counterparty_type"),
            feature_used=payload.get("feature_used"),
        )


@dataclass
class AggregationResult:
    wallet_id: str
    mode: str
    accepted: int = 0
    duplicates: int = 0
    out_of_range: int = 0
    dates_touched: list[date] = field(default_factory=list)
    missing_creation_date: bool = False


def events_to_frame(events: Iterable[TransactionEvent]) -> pd.DataFrame:
    """Return events as a frame with the processed_events column layout."""
    rows = [
        {
            "wallet_id": event.wallet_id,
            "txid": event.txid,
            "block_timestamp": as_utc(event.block_timestamp),
            "tx_type": event.type,
            "tx_subtype": event.subtype,
            "value": float(event.value),
            "fee": float(event.fee),
            "counterparty_type": event.counterparty_type,
            "feature_used": event.feature_used,
        }
        for event in events
    ]
    if not rows:
        return pd.DataFrame(columns=store.EVENT_COLUMNS)
    df = pd.DataFrame(rows)
    df["block_timestamp"] = pd.to_datetime(df["block_timestamp"], utc=True)
    df["activity_date"] = df["block_timestamp"].dt.date
    return df[store.EVENT_COLUMNS]


def _empty_metrics() -> pd.DataFrame:
    return pd.DataFrame(columns=store.ACTIVITY_COLUMNS)


def _complexity(day_events: pd.DataFrame) -> int:
    kinds = day_events["tx_subtype"].where(
        day_events["tx_subtype"].notna() & (day_events["tx_subtype"] != ""),
        day_events["tx_type"],
    )
    return min(COMPLEXITY_CAP, COMPLEXITY_POINTS_PER_SUBTYPE * int(kinds.nunique()))


def apply_derived_columns(
    metrics: pd.DataFrame, created_at: datetime | None
) -> pd.DataFrame:
    """Recompute is_active, is_returning and creation-relative fields for one wallet.

    is_returning only depends on the set of earlier active dates, so the
    result is independent of the order rows were produced in.
    """
    if metrics.empty:
        return metrics
    out = metrics.sort_values("activity_date").reset_index(drop=True).copy()
    out["is_active"] = out["transaction_count"].astype(int) > 0
    earlier_active = out["is_active"].astype(int).cumsum().shift(fill_value=0)
    out["is_returning"] = earlier_active > 0
    if created_at is None:
        out["days_since_creation"] = pd.array([pd.NA] * len(out), dtype="Int64")
        out["creation_date_known"] = False
    else:
        created_day = to_date(created_at)
        out["days_since_creation"] = pd.array(
            [max(0, (to_date(day) - created_day).days) for day in out["activity_date"]],
            dtype="Int64",
        )
        out["creation_date_known"] = True
    return out


def build_daily_metrics(
    events: pd.DataFrame, created_at: datetime | None = None
) -> pd.DataFrame:
    """Fold a single wallet's events into ActivityMetric rows, one per UTC date."""
    if events.empty:
        return _empty_metrics()
    ordered = events.sort_values(["block_timestamp", "txid"], kind="mergesort")
    rows: list[dict[str, Any]] = []
    for activity_date, day in ordered.groupby("activity_date", sort=True):
        row: dict[str, Any] = {
            "wallet_id": str(day["wallet_id"].iloc[0]),
            "activity_date": to_date(activity_date),
            "transaction_count": int(len(day)),
            "total_volume": float(day["value"].astype(float).abs().sum()),
            "total_fees": float(day["fee"].astype(float).sum()),
            "sequence_complexity_score": _complexity(day),
        }
        types = day["tx_type"].astype(str).str.lower()
        for tx_type, column in TYPE_COUNT_COLUMNS.items():
            row[column] = int((types == tx_type).sum())
        rows.append(row)
    metrics = pd.DataFrame(rows)
    return apply_derived_columns(metrics, created_at)[store.ACTIVITY_COLUMNS]


def _differs(left: pd.Series, right: pd.Series) -> pd.Series:
    both_missing = left.isna() & right.isna()
    equal = (left.astype(object) == right.astype(object)).fillna(False).astype(bool)
    return ~(equal | both_missing)


def _resolve_created_at(
    wallet_id: str, created_at: datetime | None, db_path: Path | None
) -> datetime | None:
    if created_at is not None:
        return as_utc(created_at)
    wallets = store.load_wallets([wallet_id], db_path=db_path)
    if wallets.empty or pd.isna(wallets["created_at"].iloc[0]):
        return None
    return wallets["created_at"].iloc[0].to_pydatetime()


def aggregate(
    wallet_id: str,
    events: Iterable[TransactionEvent],
    mode: str = "incremental",
    *,
    created_at: datetime | None = None,
    date_range: tuple[date, date] | None = None,
    complete_through: date | None = None,
    db_path: Path | None = None,
) -> AggregationResult:
    """Fold events for one wallet into persisted ActivityMetric rows.

    ``created_at`` falls back to the wallets table when omitted. In
    ``backfill`` mode ``date_range`` (inclusive) is required; events outside
    it are ignored and every stored date inside it is rebuilt.
    ``complete_through`` advances the wallet's aggregation watermark.
    """
    if mode not in MODES:
        raise ValueError(f"Invalid aggregation mode: {mode}")
    if mode == "backfill":
        if date_range is None:
            raise ValueError("backfill mode requires a date_range")
        if date_range[0] > date_range[1]:
            raise ValueError(f"Invalid date_range: {date_range}")

    result = AggregationResult(wallet_id=wallet_id, mode=mode)
    frame = events_to_frame(events)
    if not frame.empty and (frame["wallet_id"] != wallet_id).any():
        raise ValueError(f"Events for other wallets passed to aggregate({wallet_id})")

    if mode == "backfill" and not frame.empty:
        start, end = date_range  # type: ignore[misc]
        in_range = frame["activity_date"].between(start, end)
        result.out_of_range = int((~in_range).sum())
        frame = frame[in_range]

    batch_unique = frame.drop_duplicates(subset=["txid"], keep="first")
    fresh = store.insert_new_events(wallet_id, batch_unique, db_path=db_path)
    result.accepted = int(len(fresh))
    result.duplicates = int(len(frame) - len(fresh))
    if result.duplicates:
        LOGGER.debug("Skipped %d duplicate events for %s", result.duplicates, wallet_id)

    resolved_created = _resolve_created_at(wallet_id, created_at, db_path)
    if resolved_created is None:
        result.missing_creation_date = True
        LOGGER.info("Wallet %s has no known creation date; days_since_creation unknown", wallet_id)

    affected: set[date] = set(fresh["activity_date"]) if not fresh.empty else set()
    stored_events = store.load_events(wallet_id, db_path=db_path)
    if mode == "backfill" and not stored_events.empty:
        start, end = date_range  # type: ignore[misc]
        affected |= {
            day for day in stored_events["activity_date"] if start <= day <= end
        }

    rebuilt = build_daily_metrics(
        stored_events[stored_events["activity_date"].isin(affected)]
        if affected
        else stored_events.iloc[0:0],
        resolved_created,
    )
    existing = store.load_activity_metrics([wallet_id], db_path=db_path)
    kept = existing[~existing["activity_date"].isin(affected)]
    parts = [part for part in (kept, rebuilt) if not part.empty]
    combined = pd.concat(parts, ignore_index=True) if parts else _empty_metrics()
    combined = apply_derived_columns(combined, resolved_created)

    if not combined.empty:
        previous = existing.set_index("activity_date")
        current = combined.set_index("activity_date")
        changed = current.index.isin(list(affected))
        for column in ("is_returning", "days_since_creation", "creation_date_known"):
            before = previous[column].reindex(current.index)
            changed |= _differs(current[column], before).to_numpy()
        to_write = combined[changed]
        if not to_write.empty:
            store.upsert_activity_metrics(to_write[store.ACTIVITY_COLUMNS], db_path=db_path)

    result.dates_touched = sorted(affected)
    if complete_through is not None:
        store.advance_watermark(wallet_id, complete_through, db_path=db_path)
    return result


def metrics_window(
    wallet_id: str,
    as_of: datetime | date,
    days: int = 30,
    *,
    db_path: Path | None = None,
) -> pd.DataFrame:
    """Load the trailing ``days`` of ActivityMetric rows ending on ``as_of``."""
    end = to_date(as_of)
    start = end - timedelta(days=days - 1)
    return store.load_activity_metrics([wallet_id], start=start, end=end, db_path=db_path)


def activity_trend(metrics: pd.DataFrame, as_of: datetime | date, days: int = 30) -> pd.DataFrame:
    end = to_date(as_of)
    start = end - timedelta(days=days - 1)
    if metrics.empty:
        return _empty_metrics()
    mask = metrics["activity_date"].between(start, end)
    return metrics[mask].sort_values("activity_date").reset_index(drop=True)


def summarize_period(metrics: pd.DataFrame, start: date, end: date) -> dict[str, Any]:
    """Roll ActivityMetric rows inside ``[start, end]`` into a single summary."""
    window = metrics[metrics["activity_date"].between(start, end)] if not metrics.empty else metrics
    active = window[window["is_active"].astype(bool)] if not window.empty else window
    summary: dict[str, Any] = {
        "period_start": start,
        "period_end": end,
        "active_days": int(len(active)),
        "returning_days": int(window["is_returning"].astype(bool).sum()) if not window.empty else 0,
        "transaction_count": int(window["transaction_count"].sum()) if not window.empty else 0,
        "total_volume": float(window["total_volume"].sum()) if not window.empty else 0.0,
        "total_fees": float(window["total_fees"].sum()) if not window.empty else 0.0,
        "average_complexity": float(window["sequence_complexity_score"].mean())
        if not window.empty
        else 0.0,
        "first_active_date": min(active["activity_date"]) if not active.empty else None,
        "last_active_date": max(active["activity_date"]) if not active.empty else None,
    }
    for column in TYPE_COUNT_COLUMNS.values():
        summary[column] = int(window[column].sum()) if not window.empty else 0
    return summary
