from __future__ import annotations

from decimal import Decimal, InvalidOperation, ROUND_HALF_UP
from typing import Union


_CENT = Decimal("0.01")


def money_to_cents(value: str) -> int:
    """
    Parse values like:
    - "$1,000,000.00"
    - "400000"
    - "0.37"
    - "(12.34)" / "-$12.34"
    """
    if value is None:
        raise ValueError("money_to_cents: value is None")

    s = str(value).strip()
    if not s:
        raise ValueError("money_to_cents: empty string")

    s = s.replace("$", "").replace(",", "").replace(" ", "")

    # Accounting notation for negatives
    if s.startswith("(") and s.endswith(")"):
        s = "-" + s[1:-1].strip()

    try:
        dec = Decimal(s).quantize(_CENT, rounding=ROUND_HALF_UP)
    except InvalidOperation as e:
        raise ValueError(f"money_to_cents: not a monetary amount: {value!r}") from e
    return int(dec * 100)


def cents_to_money_str(cents: int) -> str:
    dec = (Decimal(cents) / 100).quantize(_CENT)
    if dec < 0:
        return f"-${-dec:,.2f}"
    return f"${dec:,.2f}"


def percent_of_cents(cents: int, percent: Union[Decimal, int, str]) -> int:
    """
    `cents * percent / 100`, rounded half-up to a whole cent.

    Never goes through float: `percent` is coerced via `Decimal(str(...))`.
    """
    rate = percent if isinstance(percent, Decimal) else Decimal(str(percent))
    amount = (Decimal(cents) * rate / Decimal(100)).quantize(Decimal("1"), rounding=ROUND_HALF_UP)
    return int(amount)
