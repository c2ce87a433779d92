"""
Aging & interest engine.

Everything here is a pure function of (debt, payments, as_of, policy): no clock reads, no I/O and no
module-level mutable state, so callers may invoke it from any thread without locking.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import date, timedelta
from typing import Iterable, List, Optional, Sequence, Tuple

from .config import InterestConfig
from .models import AgingBucket, Debt, DebtStatus, Derivation, Payment
from .util.dates import add_months, months_between
from .util.money import percent_of_cents


@dataclass(frozen=True)
class InterestPolicy:
    basis: str = "outstanding_principal"  # or "total_amount"
    month_rounding: str = "floor"  # or "ceil"

    @classmethod
    def from_config(cls, cfg: InterestConfig) -> "InterestPolicy":
        return cls(basis=cfg.basis, month_rounding=cfg.month_rounding)


DEFAULT_POLICY = InterestPolicy()

# Upper bounds (inclusive) of each overdue bucket, in days.
_BUCKET_LIMITS: Tuple[Tuple[int, AgingBucket], ...] = (
    (0, AgingBucket.CURRENT),
    (30, AgingBucket.DAYS_1_30),
    (60, AgingBucket.DAYS_31_60),
    (90, AgingBucket.DAYS_61_90),
)


def aging_bucket_for(days_overdue: int) -> AgingBucket:
    for limit, bucket in _BUCKET_LIMITS:
        if days_overdue <= limit:
            return bucket
    return AgingBucket.OVER_90


def months_elapsed(due_date: date, as_of: date, policy: InterestPolicy = DEFAULT_POLICY) -> int:
    """Interest-bearing months since `due_date`; zero on or before the due date."""
    months = months_between(due_date, as_of)
    if policy.month_rounding == "ceil" and as_of > add_months(due_date, months):
        months += 1
    return months


def _paid_before(payments: Sequence[Payment], day: date) -> int:
    return sum(p.amount_cents for p in payments if p.interest_effective_date < day)


def _charge_date(due_date: date, k: int, policy: InterestPolicy) -> date:
    if policy.month_rounding == "ceil":
        # A started month is charged on its first overdue day.
        return add_months(due_date, k - 1) + timedelta(days=1)
    return add_months(due_date, k)


def accrue_interest(
    debt: Debt,
    payments: Sequence[Payment],
    as_of: date,
    policy: InterestPolicy = DEFAULT_POLICY,
) -> Tuple[int, int]:
    """
    Simple monthly interest, charged once per month after the due date.

    Month k is charged on its charge date: the k-th monthly anniversary of the due date ("floor"), or
    the first day of the started month ("ceil"). The charge is `base * rate / 100` (half-up to a cent)
    where `base` is the principal still unpaid before that date, or the original total under the
    `total_amount` basis. A payment counts from its payment date, or from the day it was recorded when
    it was entered later: a backdated payment never takes back a charge that was already on the books.
    A payment made on a charge date is applied after that charge, and months in which the debt was
    already settled accrue nothing. With no payments this reduces to `principal * rate/100 * months`.

    Every charge depends only on payments effective before it, so accrual never decreases as `as_of`
    moves forward and a settled debt stays settled.

    Returns `(accrued_cents, months)`.
    """
    if debt.interest_rate <= 0 or as_of <= debt.due_date:
        return 0, 0

    months = months_elapsed(debt.due_date, as_of, policy)
    total = debt.total_amount_cents
    accrued = 0
    for k in range(1, months + 1):
        paid = _paid_before(payments, _charge_date(debt.due_date, k, policy))
        if total + accrued - paid <= 0:
            continue
        if policy.basis == "total_amount":
            base = total
        else:
            base = max(0, total - paid)
        accrued += percent_of_cents(base, debt.interest_rate)
    return accrued, months


def derive_status(*, remaining_cents: int, paid_cents: int, days_overdue: int) -> DebtStatus:
    if remaining_cents <= 0:
        return DebtStatus.PAID
    if days_overdue > 0:
        return DebtStatus.OVERDUE
    if paid_cents > 0:
        return DebtStatus.PARTIAL
    return DebtStatus.PENDING


def derive(
    debt: Debt,
    payments: Iterable[Payment],
    as_of: date,
    policy: InterestPolicy = DEFAULT_POLICY,
) -> Derivation:
    """
    Derive balance, interest, status and aging for `debt` as of `as_of`.

    Payments dated after `as_of` are not yet known at that date and are ignored. A cancelled debt keeps
    its manual status and takes no part in aging or interest.
    """
    applied: List[Payment] = [p for p in payments if p.payment_date <= as_of]
    paid = sum(p.amount_cents for p in applied)
    total = debt.total_amount_cents

    if debt.status is DebtStatus.CANCELLED:
        return Derivation(
            remaining_cents=max(0, total - paid),
            accrued_interest_cents=0,
            paid_cents=paid,
            status=DebtStatus.CANCELLED,
            days_overdue=0,
            aging_bucket=None,
            credit_cents=max(0, paid - total),
        )

    accrued, months = accrue_interest(debt, applied, as_of, policy)
    balance = total + accrued - paid
    remaining = max(0, balance)
    days_overdue = max(0, (as_of - debt.due_date).days) if remaining > 0 else 0
    status = derive_status(remaining_cents=remaining, paid_cents=paid, days_overdue=days_overdue)

    bucket: Optional[AgingBucket] = None
    if status is not DebtStatus.PAID:
        bucket = aging_bucket_for(days_overdue)

    return Derivation(
        remaining_cents=remaining,
        accrued_interest_cents=accrued,
        paid_cents=paid,
        status=status,
        days_overdue=days_overdue,
        aging_bucket=bucket,
        months_elapsed=months,
        credit_cents=max(0, -balance),
    )
