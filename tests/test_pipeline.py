from __future__ import annotations

from datetime import UTC, date, datetime

import pandas as pd
import pytest

from wallet_analytics import cohorts, pipeline, queries, scoring, store
from wallet_analytics.activity import TransactionEvent

AS_OF = datetime(2024, 2, 1, tzinfo=UTC)


def _event(wallet_id: str, txid: str, ts: datetime, kind: str = "transfer", value: float = 10.0) -> TransactionEvent:
    return TransactionEvent(wallet_id=wallet_id, txid=txid, block_timestamp=ts, type=kind, value=value)


def _fixture_events() -> dict[str, list[TransactionEvent]]:
    return {
        "w1": [
            _event("w1", "a1", datetime(2024, 1, 2, 9, tzinfo=UTC)),
            _event("w1", "a2", datetime(2024, 1, 9, 9, tzinfo=UTC), "swap"),
            _event("w1", "a3", datetime(2024, 1, 16, 9, tzinfo=UTC)),
            # after as_of, must be ignored
            _event("w1", "a4", datetime(2024, 2, 3, 9, tzinfo=UTC)),
        ],
        "w2": [_event("w2", "b1", datetime(2024, 1, 3, 12, tzinfo=UTC))],
        "w3": [_event("w3", "c1", datetime(2024, 1, 20, 12, tzinfo=UTC))],
    }


def _wallet_records() -> pd.DataFrame:
    return pd.DataFrame(
        {
            "wallet_id": ["w1", "w2", "w3"],
            "created_at": pd.to_datetime(["2024-01-01T00:00:00Z", "2024-01-03T08:00:00Z", None], utc=True),
            "wallet_type": ["retail", "retail", "merchant"],
        }
    )


def _run(db_path, job_id="job-1", **kwargs):
    return pipeline.run_batch(
        ["w3", "w1", "w2", "w1"],
        as_of=AS_OF,
        events_by_wallet=_fixture_events(),
        wallet_records=_wallet_records(),
        job_id=job_id,
        max_workers=2,
        db_path=db_path,
        **kwargs,
    )


def test_complete_through_excludes_partial_day():
    assert pipeline.complete_through(datetime(2024, 2, 1, tzinfo=UTC)) == date(2024, 1, 31)
    assert pipeline.complete_through(datetime(2024, 2, 1, 12, tzinfo=UTC)) == date(2024, 1, 31)
    assert pipeline.complete_through(datetime(2024, 2, 1, 23, 59, 59, 999999, tzinfo=UTC)) == date(2024, 2, 1)


def test_run_batch_end_to_end(tmp_path):
    db_path = tmp_path / "analytics.duckdb"
    result = _run(db_path)

    assert result.processed == ["w1", "w2", "w3"]
    assert result.skipped == []
    assert result.missing_creation == ["w3"]
    assert result.conflicts == 0

    metrics = queries.get_activity_metrics("w1", date(2024, 1, 1), date(2024, 2, 29), db_path=db_path)
    assert list(metrics["activity_date"]) == [date(2024, 1, 2), date(2024, 1, 9), date(2024, 1, 16)]
    assert list(metrics["is_returning"]) == [False, True, True]

    w3 = queries.get_activity_metrics("w3", db_path=db_path)
    assert w3["days_since_creation"].isna().all()
    assert not w3["creation_date_known"].any()

    weekly = queries.get_cohort_retention("weekly", db_path=db_path)
    assert len(weekly) == 1
    cohort = weekly.iloc[0]
    assert cohort["period_start"] == date(2024, 1, 1)
    assert cohort["wallet_count"] == 2
    assert cohort["retention_1"] == 50.0
    assert cohort["retention_2"] == 50.0
    assert cohort["retention_3"] == 0.0
    assert bool(cohort["final_3"]) and not bool(cohort["final_4"])

    monthly = queries.get_cohort_retention("monthly", db_path=db_path)
    assert monthly.iloc[0]["period_start"] == date(2024, 1, 1)
    assert not bool(monthly.iloc[0]["final_1"])

    funnel = queries.get_funnel_state("w1", db_path=db_path)
    assert [row["stage"] for row in funnel][:3] == ["created", "first_tx", "feature_usage"]
    assert funnel[1]["time_to_achieve_hours"] == 33.0
    assert funnel[2]["achieved_at"] == datetime(2024, 1, 9, 9, tzinfo=UTC)

    score = queries.get_productivity_score("w1", db_path=db_path)
    assert score is not None
    assert score.calculated_at == AS_OF
    assert 0 <= score.total_score <= 100

    pending = queries.get_pending_tasks("w1", db_path=db_path)
    assert set(pending["component"]) <= set(scoring.COMPONENTS)
    assert pending["component"].is_unique
    assert queries.get_completed_tasks("w1", db_path=db_path).empty


def test_rerun_with_same_job_skips_completed_wallets(tmp_path):
    db_path = tmp_path / "analytics.duckdb"
    _run(db_path)
    again = _run(db_path)

    assert again.processed == []
    assert again.skipped == ["w1", "w2", "w3"]
    status = store.batch_status("job-1", db_path=db_path)
    assert int(status.iloc[0]["wallets_completed"]) == 3


def test_rerun_as_new_job_is_idempotent(tmp_path):
    db_path = tmp_path / "analytics.duckdb"
    _run(db_path, job_id="job-1")
    metrics_before = store.load_activity_metrics(db_path=db_path)
    scores_before = store.load_scores(db_path=db_path)
    cohorts_before = store.load_cohorts(db_path=db_path).drop(columns=["updated_at"])

    _run(db_path, job_id="job-2")

    pd.testing.assert_frame_equal(store.load_activity_metrics(db_path=db_path), metrics_before)
    pd.testing.assert_frame_equal(store.load_scores(db_path=db_path), scores_before)
    pd.testing.assert_frame_equal(
        store.load_cohorts(db_path=db_path).drop(columns=["updated_at"]), cohorts_before
    )


def test_process_wallet_retries_after_score_conflict(tmp_path, monkeypatch):
    db_path = tmp_path / "analytics.duckdb"
    real = scoring.recalculate_wallet
    calls = {"count": 0}

    def flaky(wallet_id, as_of, **kwargs):
        calls["count"] += 1
        if calls["count"] == 1:
            raise store.ConcurrentRecalculationConflict(wallet_id, None, as_of)
        return real(wallet_id, as_of, **kwargs)

    monkeypatch.setattr(pipeline, "recalculate_wallet", flaky)
    outcome = pipeline.process_wallet(
        "w1",
        _fixture_events()["w1"],
        as_of=AS_OF,
        created_at=datetime(2024, 1, 1, tzinfo=UTC),
        db_path=db_path,
    )

    assert outcome.attempts == 2
    assert outcome.aggregation.accepted == 0  # second pass sees the events already stored
    assert scoring.load_score("w1", db_path=db_path).calculated_at == AS_OF


def test_process_wallet_gives_up_after_retry_budget(tmp_path, monkeypatch):
    def always_conflict(wallet_id, as_of, **kwargs):
        raise store.ConcurrentRecalculationConflict(wallet_id, None, as_of)

    monkeypatch.setattr(pipeline, "recalculate_wallet", always_conflict)
    with pytest.raises(store.ConcurrentRecalculationConflict):
        pipeline.process_wallet(
            "w2",
            _fixture_events()["w2"],
            as_of=AS_OF,
            max_conflict_retries=2,
            db_path=tmp_path / "analytics.duckdb",
        )


def test_persistence_failure_stops_batch(tmp_path, monkeypatch):
    db_path = tmp_path / "analytics.duckdb"

    def broken(*args, **kwargs):
        raise store.PersistenceError("disk unavailable")

    monkeypatch.setattr(pipeline, "aggregate", broken)
    with pytest.raises(store.PersistenceError):
        _run(db_path, job_id="job-broken")
    assert store.load_completed_wallets("job-broken", db_path=db_path) == set()


def test_event_source_is_used_without_preloaded_events(tmp_path):
    db_path = tmp_path / "analytics.duckdb"
    events = _fixture_events()
    requested: list[str] = []

    def source(wallet_id):
        requested.append(wallet_id)
        return events[wallet_id]

    result = pipeline.run_batch(
        ["w2"],
        as_of=AS_OF,
        event_source=source,
        wallet_records=_wallet_records(),
        refresh_retention=False,
        db_path=db_path,
    )
    assert requested == ["w2"]
    assert result.processed == ["w2"]
    assert result.cohorts is None


def test_funnel_stats_query(tmp_path):
    db_path = tmp_path / "analytics.duckdb"
    _run(db_path)
    stats = queries.get_funnel_stats(db_path=db_path)
    assert stats["population"] == 3
    created = stats["stages"][0]
    assert created["stage"] == "created"
    assert created["achieved"] == 3

    by_type = queries.get_funnel_stats(segment_by="wallet_type", db_path=db_path)
    assert set(by_type["segments"]) == {"retail", "merchant"}

    with pytest.raises(ValueError):
        queries.get_cohort_retention("daily", db_path=db_path)


def test_cohort_correlations_from_store(tmp_path):
    db_path = tmp_path / "analytics.duckdb"
    _run(db_path)
    views = cohorts.analyze_cohort_correlations("weekly", period_start=date(2024, 1, 1), db_path=db_path)

    by_type = views["by_type"].set_index("tx_type")
    assert by_type.loc["transfer", "wallet_count"] == 2
    assert by_type.loc["transfer", "retention_rate"] == 50.0
    assert by_type.loc["transfer", "baseline_rate"] == 50.0
    assert by_type.loc["swap", "status"] == cohorts.INSUFFICIENT_DATA

    by_diversity = views["by_diversity"].set_index("distinct_types")
    assert by_diversity.loc[2, "retained"] == 1
    assert by_diversity.loc[1, "retained"] == 0

    by_volume = views["by_volume"].set_index("volume_category")
    assert by_volume.loc["low_volume", "wallet_count"] == 2
    by_frequency = views["by_frequency"].set_index("frequency_category")
    assert by_frequency.loc["low_frequency", "retained"] == 1
    assert by_frequency.loc["single_day", "retained"] == 0
    assert views["new_vs_returning"]["new_wallets"]["wallet_count"] == 2
    assert views["new_vs_returning"]["returning_wallets"]["wallet_count"] == 1

    trends = queries.get_conversion_trends(db_path=db_path).set_index("stage")
    assert trends.loc["created", "total_wallets"] == 2
    assert trends.loc["first_tx", "conversion_rate"] == 100.0


def test_run_batch_with_many_workers(tmp_path):
    db_path = tmp_path / "analytics.duckdb"
    wallet_ids = [f"m{i}" for i in range(6)]
    events = {
        wallet_id: [
            _event(wallet_id, f"{wallet_id}-{day}", datetime(2024, 1, day, 10, tzinfo=UTC), "swap" if day % 2 else "transfer")
            for day in (2, 9, 16, 23)
        ]
        for wallet_id in wallet_ids
    }
    records = pd.DataFrame(
        {
            "wallet_id": wallet_ids,
            "created_at": pd.to_datetime(["2024-01-01T00:00:00Z"] * len(wallet_ids), utc=True),
            "wallet_type": ["retail"] * len(wallet_ids),
        }
    )

    serial = pipeline.run_batch(
        wallet_ids,
        as_of=AS_OF,
        events_by_wallet=events,
        wallet_records=records,
        max_workers=1,
        db_path=tmp_path / "serial.duckdb",
    )
    parallel = pipeline.run_batch(
        wallet_ids,
        as_of=AS_OF,
        events_by_wallet=events,
        wallet_records=records,
        max_workers=4,
        db_path=db_path,
    )

    assert parallel.processed == serial.processed == wallet_ids
    pd.testing.assert_frame_equal(
        store.load_activity_metrics(db_path=db_path),
        store.load_activity_metrics(db_path=tmp_path / "serial.duckdb"),
    )
    pd.testing.assert_frame_equal(
        store.load_scores(db_path=db_path),
        store.load_scores(db_path=tmp_path / "serial.duckdb"),
    )
    weekly = queries.get_cohort_retention("weekly", db_path=db_path)
    assert int(weekly.iloc[0]["wallet_count"]) == 6
    assert weekly.iloc[0]["retention_1"] == 100.0
