from .dates import FixedClock, SystemClock, months_between, parse_date
from .money import cents_to_money_str, money_to_cents, percent_of_cents

__all__ = [
    "FixedClock",
    "SystemClock",
    "months_between",
    "parse_date",
    "cents_to_money_str",
    "money_to_cents",
    "percent_of_cents",
]
