"""
Calendar arithmetic: month shifting, whole-month and whole-day distances,
inclusive windows and date normalization.
"""

from datetime import date, datetime

import pandas as pd
import pytest

from hivcohort.temporal import add_months, as_datetime, days_between, months_between, within


def test_as_datetime_variants():
    assert as_datetime(None) is None
    assert as_datetime(pd.NaT) is None
    assert as_datetime(float("nan")) is None
    assert as_datetime("  ") is None
    assert as_datetime("2020-01-31") == datetime(2020, 1, 31)
    assert as_datetime(date(2020, 1, 31)) == datetime(2020, 1, 31)
    assert as_datetime(pd.Timestamp("2020-01-31 10:30")) == datetime(2020, 1, 31, 10, 30)


def test_as_datetime_rejects_non_dates():
    with pytest.raises(TypeError):
        as_datetime(42)


def test_add_months_is_calendar_based():
    assert add_months(datetime(2020, 1, 31), 1) == datetime(2020, 2, 29)
    assert add_months(datetime(2021, 1, 31), 1) == datetime(2021, 2, 28)
    assert add_months("2020-06-01", -12) == datetime(2019, 6, 1)


def test_months_between_truncates_partial_months():
    assert months_between(datetime(2020, 1, 1), datetime(2020, 8, 15)) == 7
    assert months_between(datetime(2020, 1, 15), datetime(2020, 4, 14)) == 2
    assert months_between(datetime(2020, 1, 1), datetime(2021, 2, 1)) == 13
    assert months_between(datetime(2020, 5, 1), datetime(2020, 1, 1)) == -4


def test_days_between():
    assert days_between(datetime(2020, 1, 1), datetime(2020, 7, 1)) == 182
    assert days_between(datetime(2020, 7, 1), datetime(2020, 1, 1)) == -182


def test_within_is_inclusive_with_open_bounds():
    start, end = datetime(2020, 1, 1), datetime(2020, 12, 31)
    assert within(start, start, end)
    assert within(end, start, end)
    assert not within(datetime(2021, 1, 1), start, end)
    assert within(datetime(1990, 1, 1), None, end)
    assert within(datetime(2990, 1, 1), start, None)
