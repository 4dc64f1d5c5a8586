from __future__ import annotations

from datetime import UTC, date, datetime, timedelta

import pandas as pd
import pytest

from wallet_analytics import activity, cohorts, store
from wallet_analytics.activity import TransactionEvent


def _metrics(rows: list[tuple[str, date]]) -> pd.DataFrame:
    frame = pd.DataFrame(rows, columns=["wallet_id", "activity_date"])
    frame["is_active"] = True
    frame["transaction_count"] = 1
    return frame


def test_weekly_boundary_assignment(tmp_path):
    db_path = tmp_path / "analytics.duckdb"
    sunday = cohorts.assign_cohort("late", datetime(2024, 1, 7, 23, 59, 59, tzinfo=UTC), "weekly", db_path=db_path)
    monday = cohorts.assign_cohort("early", datetime(2024, 1, 1, 0, 0, 1, tzinfo=UTC), "weekly", db_path=db_path)
    boundary = cohorts.assign_cohort("edge", datetime(2024, 1, 1, tzinfo=UTC), "weekly", db_path=db_path)

    assert sunday.period_start == monday.period_start == boundary.period_start == date(2024, 1, 1)
    rows = store.load_cohorts("weekly", db_path=db_path)
    assert rows["wallet_count"].tolist() == [3]


def test_assignment_is_immutable(tmp_path):
    db_path = tmp_path / "analytics.duckdb"
    first = cohorts.assign_cohort("w1", datetime(2024, 3, 5, tzinfo=UTC), "monthly", db_path=db_path)
    second = cohorts.assign_cohort("w1", datetime(2024, 5, 5, tzinfo=UTC), "monthly", db_path=db_path)

    assert first.created is True
    assert second.created is False
    assert second.period_start == date(2024, 3, 1)
    assignments = store.load_cohort_assignments("monthly", db_path=db_path)
    assert len(assignments) == 1


def test_assign_unassigned_wallets(tmp_path):
    db_path = tmp_path / "analytics.duckdb"
    store.upsert_wallets(
        pd.DataFrame(
            {
                "wallet_id": ["a", "b", "c"],
                "created_at": [datetime(2024, 1, 2, tzinfo=UTC), datetime(2024, 2, 9, tzinfo=UTC), None],
                "wallet_type": ["retail", "retail", "merchant"],
            }
        ),
        db_path=db_path,
    )
    cohorts.assign_cohort("a", datetime(2024, 1, 2, tzinfo=UTC), "weekly", db_path=db_path)

    created = cohorts.assign_unassigned_wallets(db_path=db_path)

    # a: monthly only, b: weekly + monthly, c: unknown creation date
    assert created == 3
    assert set(store.load_cohort_assignments(db_path=db_path)["wallet_id"]) == {"a", "b"}


def test_forty_of_hundred_retained_in_week_one():
    members = [f"w{i}" for i in range(100)]
    metrics = _metrics([(f"w{i}", date(2024, 1, 9)) for i in range(40)])

    result = cohorts.compute_retention("weekly", date(2024, 1, 1), members, metrics)

    assert result.retention[1] == 40.0
    assert result.retention[2] == 0.0
    assert result.status == "ok"


def test_empty_cohort_is_insufficient_data():
    result = cohorts.compute_retention("weekly", date(2024, 1, 1), [], _metrics([]))
    assert result.status == cohorts.INSUFFICIENT_DATA
    assert all(value is None for value in result.retention.values())


def test_retention_bounds_and_determinism():
    members = ["a", "b", "c"]
    metrics = _metrics(
        [
            ("a", date(2024, 1, 2)),  # period 0 does not count
            ("a", date(2024, 1, 8)),
            ("a", date(2024, 1, 9)),
            ("b", date(2024, 1, 20)),
            ("c", date(2024, 1, 29)),
            ("zz", date(2024, 1, 9)),  # not a member
        ]
    )
    first = cohorts.compute_retention("weekly", date(2024, 1, 1), members, metrics)
    second = cohorts.compute_retention("weekly", date(2024, 1, 1), members, metrics.iloc[::-1])

    assert first.retention == second.retention
    assert first.retention == {1: 33.33, 2: 33.33, 3: 0.0, 4: 33.33}
    assert all(0 <= value <= 100 for value in first.retention.values())


def test_preliminary_until_period_closed_and_watermarks_cover_it():
    members = ["a", "b"]
    metrics = _metrics([("a", date(2024, 1, 9))])
    watermarks = {"a": date(2024, 1, 19), "b": date(2024, 1, 19)}

    result = cohorts.compute_retention(
        "weekly",
        date(2024, 1, 1),
        members,
        metrics,
        as_of=datetime(2024, 1, 20, tzinfo=UTC),
        watermarks=watermarks,
    )
    assert result.final[1] is True
    assert result.is_preliminary(2)
    assert result.final_periods == 1

    lagging = cohorts.compute_retention(
        "weekly",
        date(2024, 1, 1),
        members,
        metrics,
        as_of=datetime(2024, 1, 20, tzinfo=UTC),
        watermarks={"a": date(2024, 1, 19), "b": date(2024, 1, 10)},
    )
    assert lagging.final_periods == 0


def test_refresh_cohort_retention_persists(tmp_path):
    db_path = tmp_path / "analytics.duckdb"
    created = datetime(2024, 1, 1, tzinfo=UTC)
    for wallet_id in ("a", "b"):
        cohorts.assign_cohort(wallet_id, created, "weekly", db_path=db_path)
    event = TransactionEvent("a", "tx1", datetime(2024, 1, 10, tzinfo=UTC), "swap", value=5.0)
    activity.aggregate("a", [event], created_at=created, complete_through=date(2024, 1, 31), db_path=db_path)
    activity.aggregate("b", [], created_at=created, complete_through=date(2024, 1, 31), db_path=db_path)

    frame = cohorts.refresh_cohort_retention("weekly", as_of=datetime(2024, 2, 1, tzinfo=UTC), db_path=db_path)

    assert frame.iloc[0]["retention_1"] == 50.0
    stored = store.load_cohorts("weekly", db_path=db_path).iloc[0]
    assert stored["retention_1"] == 50.0
    assert stored["retention_2"] == 0.0
    # period 4 (2024-01-29..02-04) is still open on 02-01
    assert stored["final_periods"] == 3


def test_detect_retention_trends_flags_large_moves():
    frame = pd.DataFrame(
        {
            "cohort_type": ["weekly"] * 3,
            "period_start": [date(2024, 1, 1), date(2024, 1, 8), date(2024, 1, 15)],
            "retention_1": [40.0, 45.0, 30.0],
        }
    )
    trends = cohorts.detect_retention_trends(frame, threshold=10)

    assert trends["delta"].tolist() == [5.0, -15.0]
    assert trends["significant"].tolist() == [False, True]


def test_summarize_retention_trend():
    frame = pd.DataFrame(
        {
            "cohort_type": ["weekly"] * 4,
            "period_start": [date(2024, 1, 1) + timedelta(weeks=i) for i in range(4)],
            "wallet_count": [10, 10, 10, 10],
            "retention_1": [20.0, 20.0, 40.0, 40.0],
            "retention_2": [20.0, 20.0, 40.0, 40.0],
            "retention_3": [20.0, 20.0, 40.0, 40.0],
            "retention_4": [20.0, 20.0, 40.0, 40.0],
        }
    )
    summary = cohorts.summarize_retention_trend(frame)
    assert summary["trend_direction"] == "improving"
    assert summary["trend_magnitude"] == 20.0
    assert cohorts.summarize_retention_trend(frame.head(1))["trend_direction"] == cohorts.INSUFFICIENT_DATA


def test_type_correlation_against_baseline():
    start = date(2024, 1, 1)
    assignments = pd.DataFrame(
        {"wallet_id": ["s1", "s2", "t1", "t2"], "period_start": [start] * 4}
    )
    rows = []
    for wallet_id, column in (("s1", "swaps_count"), ("s2", "swaps_count"), ("t1", "transfers_count"), ("t2", "transfers_count")):
        rows.append({"wallet_id": wallet_id, "activity_date": date(2024, 1, 2), column: 3})
    rows.append({"wallet_id": "s1", "activity_date": date(2024, 1, 9), "swaps_count": 1})
    rows.append({"wallet_id": "s2", "activity_date": date(2024, 1, 10), "swaps_count": 1})
    rows.append({"wallet_id": "t1", "activity_date": date(2024, 1, 10), "transfers_count": 1})
    metrics = pd.DataFrame(rows).fillna(0)
    for column in activity.TYPE_COUNT_COLUMNS.values():
        if column not in metrics.columns:
            metrics[column] = 0
    metrics["is_active"] = True

    result = cohorts.correlate_type_retention(assignments, metrics, "weekly").set_index("tx_type")

    assert result.loc["swap", "retention_rate"] == 100.0
    assert result.loc["transfer", "retention_rate"] == 50.0
    assert result.loc["swap", "baseline_rate"] == 75.0
    assert result.loc["swap", "delta"] == 25.0
    assert result.loc["bridge", "status"] == cohorts.INSUFFICIENT_DATA
    assert result.loc["bridge", "retention_rate"] is None

    diversity = cohorts.analyze_diversity_retention(assignments, metrics, "weekly").set_index("distinct_types")
    assert diversity.loc[1, "wallet_count"] == 4
    assert diversity.loc[0, "status"] == cohorts.INSUFFICIENT_DATA


def test_dominant_type_tie_follows_type_order():
    metrics = pd.DataFrame(
        {
            "wallet_id": ["w"],
            "transfers_count": [0],
            "swaps_count": [2],
            "bridges_count": [2],
            "shielded_count": [1],
        }
    )
    assert cohorts.dominant_types(metrics).loc["w"] == "swap"


def test_invalid_cohort_type(tmp_path):
    with pytest.raises(ValueError):
        cohorts.assign_cohort("w", datetime(2024, 1, 1, tzinfo=UTC), "yearly", db_path=tmp_path / "x.duckdb")


def _tiered_metrics() -> tuple[pd.DataFrame, pd.DataFrame]:
    start = date(2024, 1, 1)
    assignments = pd.DataFrame(
        {"wallet_id": ["quiet", "small", "mid", "big"], "period_start": [start] * 4}
    )
    rows = [("small", date(2024, 1, 2), 5e6)]
    rows += [("mid", day, 3e7) for day in (date(2024, 1, 2), date(2024, 1, 9))]
    rows += [("big", date(2024, 1, 2) + timedelta(days=i), 2e7) for i in range(9)]
    metrics = pd.DataFrame(rows, columns=["wallet_id", "activity_date", "total_volume"])
    metrics["transaction_count"] = 1
    metrics["is_active"] = True
    metrics["is_returning"] = metrics.groupby("wallet_id").cumcount() > 0
    return assignments, metrics


def test_volume_retention_tiers():
    assignments, metrics = _tiered_metrics()
    result = cohorts.analyze_volume_retention(assignments, metrics, "weekly").set_index("volume_category")

    assert result.index.tolist() == list(cohorts.VOLUME_CATEGORIES)
    assert result["wallet_count"].tolist() == [1, 1, 1, 1]
    assert result["baseline_rate"].tolist() == [50.0] * 4
    assert result.loc["no_volume", "retention_rate"] == 0.0
    assert result.loc["low_volume", "delta"] == -50.0
    assert result.loc["medium_volume", "retention_rate"] == 100.0
    assert result.loc["high_volume", "avg_active_days"] == 9.0
    assert result.loc["high_volume", "avg_transactions"] == 9.0


def test_frequency_retention_tiers():
    assignments, metrics = _tiered_metrics()
    result = cohorts.analyze_frequency_retention(assignments, metrics, "weekly").set_index("frequency_category")

    assert result.loc["no_activity", "wallet_count"] == 1
    assert result.loc["single_day", "retention_rate"] == 0.0
    assert result.loc["low_frequency", "retention_rate"] == 100.0
    assert result.loc["low_frequency", "avg_active_days"] == 2.0
    assert result.loc["medium_frequency", "status"] == cohorts.INSUFFICIENT_DATA
    assert result.loc["medium_frequency", "avg_active_days"] is None
    assert result.loc["high_frequency", "delta"] == 50.0


def test_new_vs_returning_split():
    _, metrics = _tiered_metrics()
    comparison = cohorts.compare_new_vs_returning(metrics, "weekly", date(2024, 1, 1))

    assert comparison["new_wallets"]["wallet_count"] == 3
    assert comparison["new_wallets"]["active_days"] == 1
    assert comparison["returning_wallets"]["wallet_count"] == 2
    assert comparison["returning_wallets"]["active_days"] == 8
    assert comparison["returning_wallets"]["activity_rate"] == 100.0

    first_days = metrics[~metrics["is_returning"]]
    only_new = cohorts.compare_new_vs_returning(first_days, "weekly", date(2024, 1, 1))
    assert only_new["returning_wallets"]["status"] == cohorts.INSUFFICIENT_DATA
    assert only_new["returning_wallets"]["activity_rate"] is None


def test_retention_statistics_per_type(tmp_path):
    frame = pd.DataFrame(
        {
            "cohort_type": ["weekly", "weekly", "weekly", "monthly"],
            "period_start": [date(2024, 1, 1), date(2024, 1, 8), date(2024, 1, 15), date(2024, 1, 1)],
            "wallet_count": [10, 20, 0, 30],
            "retention_1": [40.0, 60.0, None, 10.0],
            "retention_2": [20.0, None, None, 5.0],
            "retention_3": [None, None, None, None],
            "retention_4": [None, None, None, None],
        }
    )
    stats = cohorts.retention_statistics(frame).set_index("cohort_type")

    assert stats.loc["weekly", "total_cohorts"] == 2
    assert stats.loc["weekly", "avg_cohort_size"] == 15.0
    assert stats.loc["weekly", "avg_retention_1"] == 50.0
    assert stats.loc["weekly", "avg_retention_2"] == 20.0
    assert stats.loc["weekly", "avg_retention_3"] is None
    assert stats.loc["weekly", "earliest_cohort"] == date(2024, 1, 1)
    assert stats.loc["weekly", "latest_cohort"] == date(2024, 1, 8)
    assert stats.loc["monthly", "total_cohorts"] == 1

    empty = cohorts.load_retention_statistics(db_path=tmp_path / "analytics.duckdb")
    assert empty.empty
    assert list(empty.columns) == cohorts.RETENTION_STATISTICS_COLUMNS
