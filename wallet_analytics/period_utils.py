"""Utilities for mapping timestamps and dates onto cohort periods."""

from __future__ import annotations

from datetime import UTC, date, datetime, timedelta

import pandas as pd

COHORT_TYPES = ("weekly", "monthly")


def _check_type(cohort_type: str) -> str:
    cohort_type = cohort_type.lower()
    if cohort_type not in COHORT_TYPES:
        raise ValueError(f"Invalid cohort type: {cohort_type}")
    return cohort_type


def as_utc(ts: datetime | pd.Timestamp | str) -> datetime:
    """Coerce a timestamp to an aware UTC datetime (naive input is taken as UTC)."""
    stamp = pd.Timestamp(ts)
    if stamp.tzinfo is None:
        stamp = stamp.tz_localize(UTC)
    else:
        stamp = stamp.tz_convert(UTC)
    return stamp.to_pydatetime()


def to_date(value: date | datetime | pd.Timestamp | str) -> date:
    """Return the UTC calendar date for a date-like value."""
    if isinstance(value, date) and not isinstance(value, datetime):
        return value
    return as_utc(value).date()


def period_start(ts: date | datetime | pd.Timestamp | str, cohort_type: str) -> date:
    """Return the start of the cohort period containing ``ts``.

    Weekly periods open on Monday 00:00 UTC (ISO week); monthly periods open on
    the first day of the month. Periods are half-open, so a timestamp exactly
    on a boundary belongs to the period it opens.

    Example:
        >>> period_start(datetime(2024, 1, 7, 23, 59, 59, tzinfo=UTC), "weekly")
        datetime.date(2024, 1, 1)
    """
    cohort_type = _check_type(cohort_type)
    day = to_date(ts)
    if cohort_type == "weekly":
        return day - timedelta(days=day.weekday())
    return day.replace(day=1)


def shift_period(start: date, cohort_type: str, k: int) -> date:
    """Return the start of the period ``k`` periods after ``start``."""
    cohort_type = _check_type(cohort_type)
    if cohort_type == "weekly":
        return start + timedelta(weeks=k)
    month_index = start.year * 12 + (start.month - 1) + k
    return date(month_index // 12, month_index % 12 + 1, 1)


def period_bounds(start: date, cohort_type: str, k: int = 0) -> tuple[date, date]:
    """Return the half-open ``[begin, end)`` date range of period ``k``."""
    begin = shift_period(start, cohort_type, k)
    end = shift_period(start, cohort_type, k + 1)
    return begin, end


def period_offset(start: date, day: date, cohort_type: str) -> int:
    """Number of whole periods between the period opening at ``start`` and ``day``."""
    cohort_type = _check_type(cohort_type)
    day_start = period_start(day, cohort_type)
    if cohort_type == "weekly":
        return (day_start - start).days // 7
    return (day_start.year - start.year) * 12 + (day_start.month - start.month)


def map_dates_to_offsets(
    df: pd.DataFrame,
    starts: pd.Series,
    cohort_type: str,
    date_column: str = "activity_date",
) -> pd.Series:
    """Return the period offset of each row's date relative to its cohort start.

    ``starts`` must be aligned with ``df`` and hold the cohort period_start per
    row. Rows dated before their cohort start get negative offsets.
    """
    if date_column not in df.columns:
        raise ValueError(f"DataFrame missing required column: {date_column}")
    if df.empty:
        return pd.Series([], dtype="int64", index=df.index)
    offsets = [
        period_offset(to_date(start), to_date(day), cohort_type)
        for start, day in zip(starts, df[date_column])
    ]
    return pd.Series(offsets, index=df.index, dtype="int64")
