from __future__ import annotations

from datetime import date, datetime, timezone
from decimal import Decimal

import pytest

from debt_tracker.util.dates import FixedClock, add_months, months_between, parse_date
from debt_tracker.util.money import cents_to_money_str, money_to_cents, percent_of_cents


@pytest.mark.parametrize(
    "raw,cents",
    [
        ("$1,000,000.00", 100_000_000),
        ("400000", 40_000_000),
        ("0.37", 37),
        ("(12.34)", -1234),
        ("-$12.34", -1234),
        ("1.005", 101),
    ],
)
def test_money_to_cents(raw: str, cents: int) -> None:
    assert money_to_cents(raw) == cents


@pytest.mark.parametrize("raw", ["", "   ", "abc", "$"])
def test_money_to_cents_rejects_garbage(raw: str) -> None:
    with pytest.raises(ValueError):
        money_to_cents(raw)


def test_cents_to_money_str() -> None:
    assert cents_to_money_str(100_000_000) == "$1,000,000.00"
    assert cents_to_money_str(5) == "$0.05"
    assert cents_to_money_str(-1234) == "-$12.34"


def test_percent_of_cents_rounds_half_up_without_floats() -> None:
    assert percent_of_cents(100_000_000, Decimal("2")) == 2_000_000
    assert percent_of_cents(50, "1") == 1  # 0.5 cent rounds up
    assert percent_of_cents(49, "1") == 0
    assert percent_of_cents(12345, 0.1) == 12


def test_parse_date_formats() -> None:
    assert parse_date("2024-01-10") == date(2024, 1, 10)
    assert parse_date("01/10/2024") == date(2024, 1, 10)
    assert parse_date("Jan 10 2024") == date(2024, 1, 10)
    assert parse_date(datetime(2024, 1, 10, 23, 59)) == date(2024, 1, 10)
    with pytest.raises(ValueError):
        parse_date("")


@pytest.mark.parametrize(
    "start,end,months",
    [
        (date(2024, 1, 1), date(2024, 3, 1), 2),
        (date(2024, 1, 1), date(2024, 2, 29), 1),
        (date(2024, 1, 31), date(2024, 2, 29), 1),
        (date(2024, 1, 31), date(2024, 2, 28), 0),
        (date(2024, 1, 15), date(2025, 1, 15), 12),
        (date(2024, 3, 1), date(2024, 1, 1), 0),
    ],
)
def test_months_between(start: date, end: date, months: int) -> None:
    assert months_between(start, end) == months


def test_add_months_clips_to_month_end() -> None:
    assert add_months(date(2024, 1, 31), 1) == date(2024, 2, 29)


def test_fixed_clock_set_and_advance() -> None:
    c = FixedClock(datetime(2024, 1, 1, 9, 0, tzinfo=timezone.utc))
    c.advance(days=9)
    assert c.today() == date(2024, 1, 10)
    c.set(date(2024, 3, 1))
    assert c.now() == datetime(2024, 3, 1, 9, 0, tzinfo=timezone.utc)
