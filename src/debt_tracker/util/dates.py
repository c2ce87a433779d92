from __future__ import annotations

from datetime import date, datetime, timedelta, timezone
from typing import Optional, Protocol, Union

from dateutil import parser as date_parser
from dateutil.relativedelta import relativedelta


def parse_date(value: Union[str, date, None]) -> date:
    """
    Parse dates like:
    - "2024-01-01"
    - "01/10/2024"
    - "Jan 10 2024"
    """
    if value is None:
        raise ValueError("parse_date: value is None")
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    s = value.strip()
    if not s:
        raise ValueError("parse_date: empty string")
    dt = date_parser.parse(s, dayfirst=False, yearfirst=True)
    return dt.date()


def months_between(start: date, end: date) -> int:
    """Whole calendar months from `start` to `end` (floored, never negative)."""
    if end <= start:
        return 0
    delta = relativedelta(end, start)
    months = delta.years * 12 + delta.months
    # Month-end starts: Jan 31 + 1 month clips to Feb 29, which relativedelta reports as 0 months.
    while add_months(start, months + 1) <= end:
        months += 1
    return months


def add_months(d: date, months: int) -> date:
    return d + relativedelta(months=months)


class Clock(Protocol):
    def now(self) -> datetime: ...

    def today(self) -> date: ...


class SystemClock:
    def now(self) -> datetime:
        return datetime.now(timezone.utc)

    def today(self) -> date:
        return self.now().date()


class FixedClock:
    """Settable clock for tests and replays."""

    def __init__(self, at: Optional[datetime] = None) -> None:
        self._at = at or datetime(2024, 1, 1, 9, 0, tzinfo=timezone.utc)
        if self._at.tzinfo is None:
            self._at = self._at.replace(tzinfo=timezone.utc)

    def now(self) -> datetime:
        return self._at

    def today(self) -> date:
        return self._at.date()

    def set(self, at: Union[datetime, date]) -> None:
        if not isinstance(at, datetime):
            at = datetime(at.year, at.month, at.day, self._at.hour, self._at.minute, tzinfo=timezone.utc)
        elif at.tzinfo is None:
            at = at.replace(tzinfo=timezone.utc)
        self._at = at

    def advance(self, *, days: int = 0, hours: int = 0) -> None:
        self._at = self._at + timedelta(days=days, hours=hours)
