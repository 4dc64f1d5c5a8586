from __future__ import annotations

import random
from datetime import UTC, date, datetime, timedelta

import pandas as pd
import pytest

from wallet_analytics import activity, scoring, store
from wallet_analytics.activity import TransactionEvent
from wallet_analytics.funnel import STAGES
from wallet_analytics.scoring import PendingTask, ScoringPolicy

CREATED = datetime(2024, 1, 1, tzinfo=UTC)
T0 = datetime(2024, 3, 1, tzinfo=UTC)


def _window(tx_per_day: dict[date, list[str]]) -> pd.DataFrame:
    events = []
    for day, kinds in tx_per_day.items():
        for idx, kind in enumerate(kinds):
            events.append(
                TransactionEvent(
                    wallet_id="w1",
                    txid=f"{day.isoformat()}-{idx}",
                    block_timestamp=datetime(day.year, day.month, day.day, 12, idx, tzinfo=UTC),
                    type=kind,
                    value=100.0,
                )
            )
    return activity.build_daily_metrics(activity.events_to_frame(events), CREATED)


def _transfers(count: int, end: date) -> pd.DataFrame:
    """``count`` transfers spread one per day ending on ``end``."""
    return _window({end - timedelta(days=i): ["transfer"] for i in range(count)})


FULL_FUNNEL = tuple(CREATED + timedelta(days=i) for i in range(len(STAGES)))


def test_component_scores():
    window = _window(
        {
            date(2024, 2, 29): ["transfer", "swap"],
            date(2024, 2, 28): ["bridge"],
        }
    )
    policy = ScoringPolicy()
    # 2 active days (5) + 1 day since last (30) + volume > 0 (5) + 3 types (15)
    assert scoring.retention_component(window, T0, policy) == 55.0
    assert scoring.activity_component(window, policy) == pytest.approx(10.0)
    assert scoring.diversity_component(window) == 75.0
    assert scoring.adoption_component((CREATED, CREATED, None, None, None)) == 40.0
    assert scoring.adoption_component(FULL_FUNNEL) == 100.0
    assert scoring.adoption_component(None) == 0.0


def test_total_is_weighted_and_bounded():
    window = _transfers(30, date(2024, 2, 29))
    score = scoring.score_wallet("w1", metrics_window=window, funnel_state=FULL_FUNNEL, as_of=T0)

    expected = round(
        0.35 * score.retention_score
        + 0.30 * score.adoption_score
        + 0.20 * score.activity_score
        + 0.15 * score.diversity_score
    )
    assert score.total_score == expected
    assert 0 <= score.total_score <= 100


def test_out_of_range_component_is_clamped(caplog):
    window = _window({date(2024, 2, 29): ["transfer"] * 50})
    with caplog.at_level("WARNING"):
        score = scoring.score_wallet("w1", metrics_window=window, funnel_state=None, as_of=T0)
    assert score.activity_score == 100.0
    assert "out of range" in caplog.text


def test_score_bounds_and_determinism_over_random_windows():
    rng = random.Random(11)
    kinds = ["transfer", "swap", "bridge", "shielded"]
    for _ in range(25):
        days = {
            date(2024, 2, 29) - timedelta(days=rng.randrange(30)): [rng.choice(kinds) for _ in range(rng.randrange(1, 8))]
            for _ in range(rng.randrange(0, 20))
        }
        window = _window(days) if days else activity.build_daily_metrics(activity.events_to_frame([]))
        funnel_state = tuple(CREATED if i < rng.randrange(0, 6) else None for i in range(len(STAGES)))
        first = scoring.score_wallet("w1", metrics_window=window, funnel_state=funnel_state, as_of=T0)
        second = scoring.score_wallet("w1", metrics_window=window, funnel_state=funnel_state, as_of=T0)
        assert first == second
        assert 0 <= first.total_score <= 100
        for value in first.components.values():
            assert 0.0 <= value <= 100.0


def test_weights_must_sum_to_one():
    with pytest.raises(ValueError):
        ScoringPolicy(weights={"retention": 0.5, "adoption": 0.3, "activity": 0.2, "diversity": 0.1})
    with pytest.raises(ValueError):
        ScoringPolicy(weights={"retention": 1.0})


def test_status_and_risk_classification():
    assert scoring.classify_status(70) == "healthy"
    assert scoring.classify_status(69) == "at_risk"
    assert scoring.classify_status(40) == "at_risk"
    assert scoring.classify_status(39) == "churn"
    assert scoring.classify_risk("healthy", 0) == "low"
    assert scoring.classify_risk("healthy", -1) == "medium"
    assert scoring.classify_risk("healthy", -15) == "high"
    assert scoring.classify_risk("at_risk", 5) == "medium"
    assert scoring.classify_risk("churn", 10) == "high"


def test_task_completes_exactly_once():
    low = _transfers(6, date(2024, 2, 29))  # activity 20
    first = scoring.score_wallet("w1", metrics_window=low, funnel_state=FULL_FUNNEL, as_of=T0)
    activity_tasks = [t for t in first.pending_tasks if t.component == "activity"]
    assert len(activity_tasks) == 1
    assert activity_tasks[0].baseline == 20.0

    improved = _transfers(9, date(2024, 3, 3))  # activity 30, +50 %
    second = scoring.score_wallet(
        "w1", metrics_window=improved, funnel_state=FULL_FUNNEL, previous=first, as_of=T0 + timedelta(days=3)
    )
    third = scoring.score_wallet(
        "w1", metrics_window=improved, funnel_state=FULL_FUNNEL, previous=second, as_of=T0 + timedelta(days=4)
    )

    for score in (second, third):
        completed = [t for t in score.completed_tasks if t.component == "activity"]
        assert len(completed) == 1
        assert completed[0].effectiveness == pytest.approx(0.5)
        assert completed[0].completed_at == T0 + timedelta(days=3)
        assert "activity" not in {t.component for t in score.pending_tasks}


def test_task_reopens_only_after_recovering_above_threshold():
    low = _transfers(6, date(2024, 2, 29))  # activity 20
    first = scoring.score_wallet("w1", metrics_window=low, funnel_state=FULL_FUNNEL, as_of=T0)
    recovered = _transfers(30, date(2024, 3, 1))  # activity 100
    second = scoring.score_wallet(
        "w1", metrics_window=recovered, funnel_state=FULL_FUNNEL, previous=first, as_of=T0 + timedelta(days=1)
    )
    assert second.activity_score == 100.0
    assert "activity" not in {t.component for t in second.pending_tasks}

    dropped = _transfers(6, date(2024, 3, 2))  # back to 20
    third = scoring.score_wallet(
        "w1", metrics_window=dropped, funnel_state=FULL_FUNNEL, previous=second, as_of=T0 + timedelta(days=2)
    )
    reopened = [t for t in third.pending_tasks if t.component == "activity"]
    assert len(reopened) == 1
    assert reopened[0].created_at == T0 + timedelta(days=2)
    assert reopened[0].baseline == 20.0
    assert len([t for t in third.completed_tasks if t.component == "activity"]) == 1


def test_no_new_task_while_component_stays_below_threshold():
    low = _transfers(6, date(2024, 2, 29))  # activity 20
    first = scoring.score_wallet("w1", metrics_window=low, funnel_state=FULL_FUNNEL, as_of=T0)
    improved = _transfers(9, date(2024, 3, 3))  # activity 30, completes the task
    second = scoring.score_wallet(
        "w1", metrics_window=improved, funnel_state=FULL_FUNNEL, previous=first, as_of=T0 + timedelta(days=3)
    )
    assert second.activity_score < ScoringPolicy().task_threshold

    score = second
    for offset, window in ((4, improved), (5, _transfers(6, date(2024, 3, 5)))):
        score = scoring.score_wallet(
            "w1", metrics_window=window, funnel_state=FULL_FUNNEL, previous=score, as_of=T0 + timedelta(days=offset)
        )
        assert "activity" not in {t.component for t in score.pending_tasks}
        assert len([t for t in score.completed_tasks if t.component == "activity"]) == 1


def test_no_duplicate_pending_task_per_component():
    low = _transfers(6, date(2024, 2, 29))
    first = scoring.score_wallet("w1", metrics_window=low, funnel_state=FULL_FUNNEL, as_of=T0)
    second = scoring.score_wallet(
        "w1", metrics_window=low, funnel_state=FULL_FUNNEL, previous=first, as_of=T0 + timedelta(days=1)
    )
    components = [t.component for t in second.pending_tasks]
    assert len(components) == len(set(components))
    assert second.pending_tasks == first.pending_tasks


def test_zero_baseline_completes_with_undefined_effectiveness():
    empty = activity.build_daily_metrics(activity.events_to_frame([]))
    first = scoring.score_wallet("w1", metrics_window=empty, funnel_state=FULL_FUNNEL, as_of=T0)
    assert {"diversity", "activity", "retention"} <= {t.component for t in first.pending_tasks}

    some = _transfers(3, date(2024, 3, 1))
    second = scoring.score_wallet(
        "w1", metrics_window=some, funnel_state=FULL_FUNNEL, previous=first, as_of=T0 + timedelta(days=1)
    )
    diversity = [t for t in second.completed_tasks if t.component == "diversity"]
    assert len(diversity) == 1
    assert diversity[0].effectiveness is None


def test_expired_lookback_rolls_baseline_forward():
    previous = scoring.ProductivityScore(
        wallet_id="w1",
        total_score=30,
        retention_score=80.0,
        adoption_score=100.0,
        activity_score=20.0,
        diversity_score=100.0,
        status="churn",
        risk_level="high",
        calculated_at=T0,
        pending_tasks=(PendingTask("activity", T0, 20.0, T0),),
    )
    later = T0 + timedelta(days=20)
    window = _transfers(6, later.date())
    score = scoring.score_wallet("w1", metrics_window=window, funnel_state=FULL_FUNNEL, previous=previous, as_of=later)

    task = next(t for t in score.pending_tasks if t.component == "activity")
    assert task.created_at == T0
    assert task.baseline_at == later
    assert task.baseline == 20.0
    assert score.completed_tasks == ()


def test_risk_uses_trend_against_previous_score():
    strong = _window({date(2024, 2, 29) - timedelta(days=i): ["transfer", "swap", "bridge", "shielded"] for i in range(20)})
    first = scoring.score_wallet("w1", metrics_window=strong, funnel_state=FULL_FUNNEL, as_of=T0)
    assert first.status == "healthy"
    assert first.risk_level == "low"

    weaker = _window({date(2024, 3, 4): ["transfer", "swap", "bridge", "shielded"] * 5})
    second = scoring.score_wallet(
        "w1", metrics_window=weaker, funnel_state=FULL_FUNNEL, previous=first, as_of=T0 + timedelta(days=5)
    )
    assert second.previous_total_score == first.total_score
    assert second.total_score - first.total_score <= -15
    assert second.risk_level == "high"

    # recomputing at the same instant keeps comparing against the same baseline
    again = scoring.score_wallet(
        "w1", metrics_window=weaker, funnel_state=FULL_FUNNEL, previous=second, as_of=T0 + timedelta(days=5)
    )
    assert again == second


def test_cohort_retention_delta():
    context = scoring.RetentionContext(retention={1: 40.0, 2: 30.0, 3: 10.0, 4: 0.0}, final_periods=2)
    window = _transfers(10, date(2024, 2, 29))
    score = scoring.score_wallet(
        "w1", metrics_window=window, funnel_state=FULL_FUNNEL, retention_context=context, as_of=T0
    )
    assert context.latest_final_retention == 30.0
    assert score.cohort_retention_delta == pytest.approx(score.retention_score - 30.0)


def test_recalculate_wallet_round_trips_tasks_and_detects_conflicts(tmp_path):
    db_path = tmp_path / "analytics.duckdb"
    events = [
        TransactionEvent("w1", f"t{i}", datetime(2024, 2, 20 + i, tzinfo=UTC), "transfer", value=5.0)
        for i in range(3)
    ]
    activity.aggregate("w1", events, created_at=CREATED, db_path=db_path)

    first = scoring.recalculate_wallet("w1", T0, db_path=db_path)
    loaded = scoring.load_score("w1", db_path=db_path)
    assert loaded.total_score == first.total_score
    assert sorted(loaded.pending_tasks, key=lambda t: t.component) == sorted(
        first.pending_tasks, key=lambda t: t.component
    )
    assert loaded.calculated_at == T0

    stale_expected = None  # as if read before the first save
    with pytest.raises(store.ConcurrentRecalculationConflict):
        scoring.save_wallet_score(first, expected_calculated_at=stale_expected, db_path=db_path)

    second = scoring.recalculate_wallet("w1", T0 + timedelta(days=1), db_path=db_path)
    assert scoring.load_score("w1", db_path=db_path).calculated_at == second.calculated_at


def test_summarize_scores():
    frame = pd.DataFrame(
        {
            "total_score": [80, 50, 20, 90],
            "status": ["healthy", "at_risk", "churn", "healthy"],
            "risk_level": ["low", "medium", "high", "low"],
        }
    )
    summary = scoring.summarize_scores(frame)
    assert summary["health_percentage"] == 50.0
    assert summary["status_distribution"] == {"healthy": 2, "at_risk": 1, "churn": 1}
    assert summary["average_score"] == 60.0
