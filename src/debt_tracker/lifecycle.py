from __future__ import annotations

import logging
from datetime import date
from typing import Any, Callable, Dict, FrozenSet, List, Optional, TypeVar

import pydantic

from .aging import DEFAULT_POLICY, InterestPolicy, derive
from .errors import ConflictError, DebtTrackerError, OverpaymentError, ValidationError
from .models import (
    Debt,
    DebtStatus,
    Payment,
    PaymentKind,
    PaymentMethod,
    PaymentResult,
    StatusChange,
)
from .store import LedgerStore
from .util.dates import Clock, SystemClock


logger = logging.getLogger(__name__)
T = TypeVar("T")

_S = DebtStatus

# Every status must appear as a key: adding a member to DebtStatus without deciding its transitions
# fails at import time.
TRANSITIONS: Dict[DebtStatus, FrozenSet[DebtStatus]] = {
    _S.PENDING: frozenset({_S.PARTIAL, _S.OVERDUE, _S.PAID, _S.CANCELLED}),
    _S.PARTIAL: frozenset({_S.PENDING, _S.OVERDUE, _S.PAID, _S.CANCELLED}),
    _S.OVERDUE: frozenset({_S.PENDING, _S.PARTIAL, _S.PAID, _S.CANCELLED}),
    # Leaving `paid` needs an explicit negative adjustment (see `reopen` below).
    _S.PAID: frozenset({_S.PENDING, _S.PARTIAL, _S.OVERDUE}),
    _S.CANCELLED: frozenset(),
}

_missing = set(DebtStatus) - set(TRANSITIONS)
if _missing:
    raise RuntimeError(f"TRANSITIONS is missing statuses: {sorted(s.value for s in _missing)}")


def can_transition(old: DebtStatus, new: DebtStatus, *, reopen: bool = False) -> bool:
    if old is new:
        return False
    if old is _S.PAID and not reopen:
        return False
    return new in TRANSITIONS[old]


StatusListener = Callable[[StatusChange], None]


class LifecycleController:
    """
    The single writer of `Debt.status`.

    Status is re-derived by the aging engine and only written when it actually differs from the stored
    value; listeners are told about each committed transition.
    """

    def __init__(
        self,
        store: LedgerStore,
        *,
        clock: Optional[Clock] = None,
        policy: InterestPolicy = DEFAULT_POLICY,
        max_conflict_retries: int = 3,
    ) -> None:
        self._store = store
        self._clock = clock or SystemClock()
        self._policy = policy
        self._max_attempts = max(1, max_conflict_retries)
        self._listeners: List[StatusListener] = []

    @property
    def policy(self) -> InterestPolicy:
        return self._policy

    def subscribe(self, listener: StatusListener) -> None:
        self._listeners.append(listener)

    def _emit(self, change: StatusChange) -> None:
        logger.info(
            "Debt %s status %s -> %s (actor=%s reason=%s)",
            change.debt_id,
            change.old_status.value,
            change.new_status.value,
            change.actor,
            change.reason,
        )
        for listener in list(self._listeners):
            try:
                listener(change)
            except Exception:
                logger.exception("Status listener %r failed for debt %s", listener, change.debt_id)

    def _retry_on_conflict(self, op: str, debt_id: str, fn: Callable[[], T]) -> T:
        for attempt in range(1, self._max_attempts + 1):
            try:
                return fn()
            except ConflictError as e:
                if attempt >= self._max_attempts:
                    logger.warning("%s on debt %s gave up after %d conflicting attempts", op, debt_id, attempt)
                    raise
                logger.warning(
                    "%s on debt %s hit a concurrent update (attempt %d/%d); re-reading. (%s)",
                    op,
                    debt_id,
                    attempt,
                    self._max_attempts,
                    e,
                )
        raise RuntimeError("unreachable")  # pragma: no cover

    def _change(
        self,
        debt: Debt,
        new_status: DebtStatus,
        *,
        actor: str,
        reason: str,
        reopen: bool = False,
    ) -> Optional[StatusChange]:
        if new_status is debt.status:
            return None
        if not can_transition(debt.status, new_status, reopen=reopen):
            raise ValidationError(f"debt {debt.id}: transition {debt.status.value} -> {new_status.value} not allowed")
        return StatusChange(
            debt_id=debt.id,
            old_status=debt.status,
            new_status=new_status,
            changed_at=self._clock.now(),
            actor=actor or "system",
            reason=reason,
        )

    def _evaluation_date(self, payments: List[Payment], candidate_date: date) -> date:
        return max([self._clock.today(), candidate_date] + [p.payment_date for p in payments])

    def _apply(
        self,
        debt_id: str,
        *,
        kind: PaymentKind,
        amount_cents: int,
        payment_date: Optional[date],
        actor: str,
        method: Optional[PaymentMethod],
        notes: str,
    ) -> PaymentResult:
        today = self._clock.today()
        when = payment_date or today
        if when > today:
            raise ValidationError(f"payment date {when.isoformat()} is in the future")

        def attempt() -> PaymentResult:
            debt = self._store.get_debt(debt_id)
            if debt.status is DebtStatus.CANCELLED:
                raise ValidationError(f"debt {debt.debt_number} is cancelled")
            payments = self._store.list_payments(debt_id)
            as_of = self._evaluation_date(payments, when)

            before = derive(debt, payments, as_of, self._policy)
            if amount_cents > before.remaining_cents:
                raise OverpaymentError(debt_id, amount_cents, before.remaining_cents)
            candidate = Payment(
                id="",
                payment_number="",
                debt_id=debt_id,
                kind=kind,
                amount_cents=amount_cents,
                payment_date=when,
                recorded_on=today,
            )
            after = derive(debt, payments + [candidate], as_of, self._policy)

            change = self._change(
                debt,
                after.status,
                actor=actor,
                reason=f"{kind.value} {amount_cents}",
                reopen=kind is PaymentKind.ADJUSTMENT,
            )
            payment, version = self._store.append_payment(
                debt_id=debt_id,
                amount_cents=amount_cents,
                payment_date=when,
                expected_version=debt.version,
                kind=kind,
                method=method,
                notes=notes,
                recorded_by=actor,
                recorded_on=today,
                change=change,
            )
            logger.info(
                "Recorded %s %s on %s: amount_cents=%d remaining_cents=%d status=%s",
                kind.value,
                payment.payment_number,
                debt.debt_number,
                amount_cents,
                after.remaining_cents,
                after.status.value,
            )
            if change is not None:
                self._emit(change)
            return PaymentResult(
                payment=payment,
                remaining_cents=after.remaining_cents,
                status=after.status,
                version=version,
            )

        return self._retry_on_conflict(f"record {kind.value}", debt_id, attempt)

    def record_payment(
        self,
        debt_id: str,
        amount_cents: int,
        *,
        payment_date: Optional[date] = None,
        recorded_by: str = "",
        method: Optional[PaymentMethod] = None,
        notes: str = "",
    ) -> PaymentResult:
        """
        Apply a payment. Rejects (state unchanged) non-positive amounts, cancelled debts and any amount
        above the remaining balance; a payment is never silently capped.
        """
        if amount_cents <= 0:
            raise ValidationError("payment amount must be positive")
        return self._apply(
            debt_id,
            kind=PaymentKind.PAYMENT,
            amount_cents=amount_cents,
            payment_date=payment_date,
            actor=recorded_by,
            method=method,
            notes=notes,
        )

    def record_adjustment(
        self,
        debt_id: str,
        amount_cents: int,
        *,
        reason: str,
        actor: str,
        adjustment_date: Optional[date] = None,
    ) -> PaymentResult:
        """
        Correct the ledger with a new adjustment row. Negative amounts add balance back (and may reopen a
        paid debt); positive amounts act as credits.
        """
        if amount_cents == 0:
            raise ValidationError("adjustment amount must be non-zero")
        if not (reason or "").strip():
            raise ValidationError("adjustment reason is required")
        return self._apply(
            debt_id,
            kind=PaymentKind.ADJUSTMENT,
            amount_cents=amount_cents,
            payment_date=adjustment_date,
            actor=actor,
            method=None,
            notes=reason.strip(),
        )

    def refresh(self, debt_id: str, *, as_of: Optional[date] = None) -> Optional[StatusChange]:
        """Re-derive and persist the status of one debt if (and only if) it changed."""
        day = as_of or self._clock.today()

        def attempt() -> Optional[StatusChange]:
            debt = self._store.get_debt(debt_id)
            if debt.status.is_terminal:
                return None
            d = derive(debt, self._store.list_payments(debt_id), day, self._policy)
            change = self._change(debt, d.status, actor="system", reason=f"re-derived as of {day.isoformat()}")
            if change is None:
                return None
            self._store.write_status(debt_id, expected_version=debt.version, change=change)
            self._emit(change)
            return change

        return self._retry_on_conflict("refresh", debt_id, attempt)

    def refresh_all(self, *, as_of: Optional[date] = None) -> List[StatusChange]:
        changes: List[StatusChange] = []
        for debt in self._store.list_open_debts():
            try:
                change = self.refresh(debt.id, as_of=as_of)
            except ConflictError:
                # Someone else is writing this debt right now; their write re-derives the status anyway.
                continue
            except DebtTrackerError as e:
                logger.warning("Status refresh skipped debt %s: %s", debt.debt_number, e)
                continue
            if change is not None:
                changes.append(change)
        return changes

    def cancel(self, debt_id: str, *, reason: str, actor: str) -> Optional[StatusChange]:
        """
        Manual, terminal cancellation. Returns None if the debt was already cancelled.
        """
        if not (reason or "").strip():
            raise ValidationError("cancellation reason is required")

        def attempt() -> Optional[StatusChange]:
            debt = self._store.get_debt(debt_id)
            if debt.status is DebtStatus.CANCELLED:
                return None
            if debt.status is DebtStatus.PAID:
                raise ValidationError(f"debt {debt.debt_number} is paid and cannot be cancelled")
            change = self._change(debt, DebtStatus.CANCELLED, actor=actor, reason=reason.strip())
            if change is None:
                return None
            self._store.write_status(
                debt_id,
                expected_version=debt.version,
                change=change,
                cancelled_reason=reason.strip(),
            )
            self._emit(change)
            return change

        return self._retry_on_conflict("cancel", debt_id, attempt)

    def amend(self, debt_id: str, *, actor: str, **fields: Any) -> Debt:
        """
        Explicit amendment of a debt's terms (total, rate, due date, ...). The status is re-derived
        against the amended terms in the same write.
        """
        if not fields:
            raise ValidationError("nothing to amend")
        unknown = set(fields) - set(Debt.model_fields)
        if unknown:
            raise ValidationError(f"unknown debt fields: {sorted(unknown)}")

        def attempt() -> Debt:
            debt = self._store.get_debt(debt_id)
            if debt.status.is_terminal:
                raise ValidationError(f"debt {debt.debt_number} is {debt.status.value} and cannot be amended")
            try:
                amended = Debt.model_validate({**debt.model_dump(), **fields})
            except pydantic.ValidationError as e:
                raise ValidationError(f"invalid amendment: {e}") from e

            payments = self._store.list_payments(debt_id)
            d = derive(amended, payments, self._evaluation_date(payments, self._clock.today()), self._policy)
            if d.credit_cents > 0:
                raise ValidationError(f"amended total is below what has already been paid on {debt.debt_number}")
            change = self._change(debt, d.status, actor=actor, reason="amended: " + ", ".join(sorted(fields)))
            normalised = {k: getattr(amended, k) for k in fields}
            out = self._store.amend_debt(debt_id, expected_version=debt.version, fields=normalised, change=change)
            logger.info("Amended debt %s fields=%s by %s", debt.debt_number, sorted(fields), actor or "system")
            if change is not None:
                self._emit(change)
            return out

        return self._retry_on_conflict("amend", debt_id, attempt)
