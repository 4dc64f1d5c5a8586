"""Cache heavy analytics aggregates so dashboards can read precomputed data."""

from __future__ import annotations

import json
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path

import pandas as pd

from . import config as cfg
from . import store
from .cohorts import retention_heatmap
from .funnel import compute_funnel_stats, load_funnel_frame

CACHE_VERSION = "v1"
CACHE_DIR = cfg.CACHE_DIR / "analytics_cache"
CACHE_DIR.mkdir(parents=True, exist_ok=True)
META_PATH = CACHE_DIR / f"meta_{CACHE_VERSION}.json"

WEEKLY_RETENTION_PATH = CACHE_DIR / f"retention_weekly_{CACHE_VERSION}.parquet"
MONTHLY_RETENTION_PATH = CACHE_DIR / f"retention_monthly_{CACHE_VERSION}.parquet"
FUNNEL_STAGES_PATH = CACHE_DIR / f"funnel_stages_{CACHE_VERSION}.parquet"
SCORES_PATH = CACHE_DIR / f"productivity_scores_{CACHE_VERSION}.parquet"


@dataclass(frozen=True)
class AnalyticsCacheMeta:
    generated_at: datetime
    cohort_limit: int
    wallet_count: int


def _read_snapshot(path: Path) -> pd.DataFrame | None:
    if not path.exists():
        return None
    return pd.read_parquet(path)


def _write_snapshot(path: Path, df: pd.DataFrame) -> None:
    """Write via a sibling temp file so readers never see a partial snapshot."""
    path.parent.mkdir(parents=True, exist_ok=True)
    partial = path.with_suffix(path.suffix + ".tmp")
    df.to_parquet(partial, index=False)
    partial.replace(path)


def _write_meta(meta: AnalyticsCacheMeta) -> None:
    payload = {
        "generated_at": meta.generated_at.isoformat(),
        "cohort_limit": meta.cohort_limit,
        "wallet_count": meta.wallet_count,
    }
    META_PATH.write_text(json.dumps(payload, indent=2), encoding="utf-8")


def load_metadata() -> AnalyticsCacheMeta | None:
    if not META_PATH.exists():
        return None
    payload = json.loads(META_PATH.read_text(encoding="utf-8"))
    generated_at = datetime.fromisoformat(payload["generated_at"])
    if generated_at.tzinfo is None:
        generated_at = generated_at.replace(tzinfo=UTC)
    return AnalyticsCacheMeta(
        generated_at=generated_at,
        cohort_limit=int(payload["cohort_limit"]),
        wallet_count=int(payload["wallet_count"]),
    )


def _funnel_stage_frame(stats: dict) -> pd.DataFrame:
    frame = pd.DataFrame(stats["stages"])
    for column in ("next_stage", "conversion", "drop_off", "status"):
        if column not in frame.columns:
            frame[column] = None
    return frame[["stage", "achieved", "next_stage", "conversion", "drop_off", "status"]]


def refresh_analytics_cache(
    *,
    cohort_limit: int = 12,
    db_path: Path | None = None,
) -> AnalyticsCacheMeta:
    """Recompute retention, funnel and score snapshots and persist them to parquet."""
    _write_snapshot(WEEKLY_RETENTION_PATH, retention_heatmap("weekly", cohort_limit, db_path=db_path))
    _write_snapshot(MONTHLY_RETENTION_PATH, retention_heatmap("monthly", cohort_limit, db_path=db_path))
    stats = compute_funnel_stats(load_funnel_frame(db_path=db_path))
    _write_snapshot(FUNNEL_STAGES_PATH, _funnel_stage_frame(stats))
    scores = store.load_scores(db_path=db_path)
    _write_snapshot(SCORES_PATH, scores)

    meta = AnalyticsCacheMeta(
        generated_at=datetime.now(UTC),
        cohort_limit=cohort_limit,
        wallet_count=int(len(scores)),
    )
    _write_meta(meta)
    return meta


def load_retention_heatmap(cohort_type: str = "weekly") -> pd.DataFrame | None:
    path = WEEKLY_RETENTION_PATH if cohort_type == "weekly" else MONTHLY_RETENTION_PATH
    return _read_snapshot(path)


def load_funnel_stages() -> pd.DataFrame | None:
    return _read_snapshot(FUNNEL_STAGES_PATH)


def load_scores() -> pd.DataFrame | None:
    return _read_snapshot(SCORES_PATH)


def ensure_analytics_cache(
    *,
    max_age_hours: float = 24.0,
    cohort_limit: int = 12,
    db_path: Path | None = None,
) -> AnalyticsCacheMeta:
    """Return cache metadata, refreshing when missing, stale or built with other settings."""
    meta = load_metadata()
    if meta is not None and meta.cohort_limit == cohort_limit:
        age_hours = (datetime.now(UTC) - meta.generated_at).total_seconds() / 3600.0
        paths: tuple[Path, ...] = (
            WEEKLY_RETENTION_PATH,
            MONTHLY_RETENTION_PATH,
            FUNNEL_STAGES_PATH,
            SCORES_PATH,
        )
        if age_hours <= max_age_hours and all(path.exists() for path in paths):
            return meta
    return refresh_analytics_cache(cohort_limit=cohort_limit, db_path=db_path)
