"""
Calendar arithmetic shared by every calculator.

Month arithmetic is calendar based (``relativedelta``), never fixed 30-day
blocks: adding one month to 31 January gives 29 February in a leap year.
"""

import typing
from datetime import date, datetime, time

import pandas as pd
from dateutil.relativedelta import relativedelta

DateLike = typing.Union[date, datetime, pd.Timestamp, str]


def as_datetime(value: typing.Any) -> typing.Optional[datetime]:
    """
    Normalize a date-like value to a naive ``datetime``.

    - None, NaN, NaT and empty strings -> None
    - ``date`` -> midnight of that day
    - pandas ``Timestamp`` -> python ``datetime``
    - strings are parsed by pandas (ISO and the usual spreadsheet formats)
    """
    if value is None or value is pd.NaT:
        return None
    if isinstance(value, str):
        if not value.strip():
            return None
        return pd.Timestamp(value.strip()).to_pydatetime()
    if isinstance(value, float) and pd.isna(value):
        return None
    if isinstance(value, pd.Timestamp):
        return value.to_pydatetime()
    if isinstance(value, datetime):
        return value
    if isinstance(value, date):
        return datetime.combine(value, time())
    raise TypeError(f"Cannot interpret {value!r} as a date")


def add_months(value: DateLike, months: int) -> datetime:
    """Shift a date by whole calendar months, clamping the day to the target month's length."""
    return as_datetime(value) + relativedelta(months=months)


def months_between(earlier: DateLike, later: DateLike) -> int:
    """
    Whole calendar months from ``earlier`` to ``later``.

    Partial months are truncated toward zero; the result is negative when
    ``later`` precedes ``earlier``.
    """
    delta = relativedelta(as_datetime(later), as_datetime(earlier))
    return delta.years * 12 + delta.months


def days_between(earlier: DateLike, later: DateLike) -> int:
    """Whole days from ``earlier`` to ``later`` (negative if reversed)."""
    return (as_datetime(later) - as_datetime(earlier)).days


def within(value: DateLike, start: typing.Optional[DateLike], end: typing.Optional[DateLike]) -> bool:
    """Inclusive range check; an open bound (None) always passes."""
    moment = as_datetime(value)
    if start is not None and moment < as_datetime(start):
        return False
    if end is not None and moment > as_datetime(end):
        return False
    return True
