from __future__ import annotations

import threading
from datetime import date
from decimal import Decimal
from typing import List

import pytest

from debt_tracker.errors import ConflictError, ExternalDependencyError, OverpaymentError, ValidationError
from debt_tracker.lifecycle import TRANSITIONS, LifecycleController, can_transition
from debt_tracker.models import Client, DebtStatus, StatusChange
from debt_tracker.store import LedgerStore
from debt_tracker.util.dates import FixedClock


UNIT = 100


@pytest.fixture
def controller(store: LedgerStore, clock: FixedClock) -> LifecycleController:
    return LifecycleController(store, clock=clock)


def _debt(store: LedgerStore, client: Client, *, total: int = 1_000_000 * UNIT, due: date = date(2024, 1, 1), rate: str = "0"):
    return store.create_debt(
        client_id=client.id,
        description="Annual support contract",
        total_amount_cents=total,
        issue_date=date(2023, 12, 1),
        due_date=due,
        interest_rate=Decimal(rate),
    )


def test_every_status_has_transition_rules() -> None:
    assert set(TRANSITIONS) == set(DebtStatus)
    assert TRANSITIONS[DebtStatus.CANCELLED] == frozenset()
    assert not can_transition(DebtStatus.PAID, DebtStatus.PARTIAL)
    assert can_transition(DebtStatus.PAID, DebtStatus.PARTIAL, reopen=True)
    assert not can_transition(DebtStatus.CANCELLED, DebtStatus.PENDING, reopen=True)


def test_partial_payment_after_due_date_is_overdue(
    store: LedgerStore, client: Client, clock: FixedClock, controller: LifecycleController
) -> None:
    debt = _debt(store, client)
    clock.set(date(2024, 1, 10))

    res = controller.record_payment(debt.id, 400_000 * UNIT, payment_date=date(2024, 1, 10), recorded_by="ana")
    assert res.remaining_cents == 600_000 * UNIT
    assert res.status is DebtStatus.OVERDUE
    assert res.payment.payment_number == "DP-000001"
    assert store.get_debt(debt.id).status is DebtStatus.OVERDUE


def test_partial_payment_before_due_date_is_partial(
    store: LedgerStore, client: Client, clock: FixedClock, controller: LifecycleController
) -> None:
    debt = _debt(store, client, due=date(2024, 1, 31))
    clock.set(date(2024, 1, 10))

    res = controller.record_payment(debt.id, 400_000 * UNIT)
    assert res.remaining_cents == 600_000 * UNIT
    assert res.status is DebtStatus.PARTIAL


def test_final_payment_makes_debt_paid_and_irreversible(
    store: LedgerStore, client: Client, clock: FixedClock, controller: LifecycleController
) -> None:
    debt = _debt(store, client)
    clock.set(date(2024, 1, 10))
    controller.record_payment(debt.id, 400_000 * UNIT)
    res = controller.record_payment(debt.id, 600_000 * UNIT)

    assert res.remaining_cents == 0
    assert res.status is DebtStatus.PAID

    clock.set(date(2024, 6, 1))
    assert controller.refresh(debt.id) is None
    assert controller.refresh_all() == []
    assert store.get_debt(debt.id).status is DebtStatus.PAID

    with pytest.raises(OverpaymentError):
        controller.record_payment(debt.id, 1)
    with pytest.raises(ValidationError):
        controller.cancel(debt.id, reason="changed our minds", actor="ana")


def test_overpayment_rejected_and_state_unchanged(
    store: LedgerStore, client: Client, clock: FixedClock, controller: LifecycleController
) -> None:
    debt = _debt(store, client, total=100_000 * UNIT, due=date(2024, 2, 1))
    before = store.get_debt(debt.id)

    with pytest.raises(OverpaymentError) as ei:
        controller.record_payment(debt.id, 150_000 * UNIT)
    assert ei.value.remaining_cents == 100_000 * UNIT

    after = store.get_debt(debt.id)
    assert after.version == before.version
    assert after.status is before.status
    assert store.list_payments(debt.id) == []


@pytest.mark.parametrize("amount", [0, -100])
def test_non_positive_payment_rejected(
    store: LedgerStore, client: Client, controller: LifecycleController, amount: int
) -> None:
    debt = _debt(store, client)
    with pytest.raises(ValidationError):
        controller.record_payment(debt.id, amount)


def test_future_dated_payment_rejected(
    store: LedgerStore, client: Client, controller: LifecycleController
) -> None:
    debt = _debt(store, client)
    with pytest.raises(ValidationError):
        controller.record_payment(debt.id, 100, payment_date=date(2024, 1, 2))


def test_interest_counts_toward_what_is_owed(
    store: LedgerStore, client: Client, clock: FixedClock, controller: LifecycleController
) -> None:
    debt = _debt(store, client, rate="2")
    clock.set(date(2024, 3, 1))

    with pytest.raises(OverpaymentError):
        controller.record_payment(debt.id, 1_040_000 * UNIT + 1)
    res = controller.record_payment(debt.id, 1_040_000 * UNIT)
    assert res.status is DebtStatus.PAID


def test_refresh_marks_overdue_once(
    store: LedgerStore, client: Client, clock: FixedClock, controller: LifecycleController
) -> None:
    debt = _debt(store, client)
    seen: List[StatusChange] = []
    controller.subscribe(seen.append)

    clock.set(date(2024, 1, 2))
    first = controller.refresh_all()
    second = controller.refresh_all()

    assert [c.new_status for c in first] == [DebtStatus.OVERDUE]
    assert second == []
    assert [c.debt_id for c in seen] == [debt.id]
    assert [c.new_status for c in store.list_status_changes(debt.id)] == [DebtStatus.OVERDUE]


def test_listener_failure_does_not_undo_the_write(
    store: LedgerStore, client: Client, clock: FixedClock, controller: LifecycleController
) -> None:
    debt = _debt(store, client)

    def boom(change: StatusChange) -> None:
        raise RuntimeError("listener down")

    controller.subscribe(boom)
    clock.set(date(2024, 1, 5))
    assert controller.refresh(debt.id) is not None
    assert store.get_debt(debt.id).status is DebtStatus.OVERDUE


def test_cancel_is_terminal(
    store: LedgerStore, client: Client, clock: FixedClock, controller: LifecycleController
) -> None:
    debt = _debt(store, client)
    with pytest.raises(ValidationError):
        controller.cancel(debt.id, reason=" ", actor="ana")

    change = controller.cancel(debt.id, reason="client went bankrupt", actor="ana")
    assert change is not None and change.new_status is DebtStatus.CANCELLED
    assert controller.cancel(debt.id, reason="again", actor="ana") is None

    stored = store.get_debt(debt.id)
    assert stored.status is DebtStatus.CANCELLED
    assert stored.cancelled_reason == "client went bankrupt"

    clock.set(date(2024, 5, 1))
    assert controller.refresh_all() == []
    with pytest.raises(ValidationError):
        controller.record_payment(debt.id, 100)
    with pytest.raises(ValidationError):
        controller.amend(debt.id, actor="ana", notes="x")


def test_negative_adjustment_reopens_paid_debt(
    store: LedgerStore, client: Client, clock: FixedClock, controller: LifecycleController
) -> None:
    debt = _debt(store, client, due=date(2024, 2, 1))
    controller.record_payment(debt.id, 1_000_000 * UNIT)
    assert store.get_debt(debt.id).status is DebtStatus.PAID

    with pytest.raises(ValidationError):
        controller.record_adjustment(debt.id, -100 * UNIT, reason="", actor="ana")

    res = controller.record_adjustment(debt.id, -100 * UNIT, reason="bounced cheque", actor="ana")
    assert res.remaining_cents == 100 * UNIT
    assert res.status is DebtStatus.PARTIAL
    assert res.payment.notes == "bounced cheque"


def test_amend_rederives_status(
    store: LedgerStore, client: Client, clock: FixedClock, controller: LifecycleController
) -> None:
    debt = _debt(store, client)
    clock.set(date(2024, 1, 10))
    controller.refresh(debt.id)
    assert store.get_debt(debt.id).status is DebtStatus.OVERDUE

    amended = controller.amend(debt.id, actor="ana", due_date=date(2024, 2, 1))
    assert amended.due_date == date(2024, 2, 1)
    assert amended.status is DebtStatus.PENDING

    controller.record_payment(debt.id, 300_000 * UNIT)
    with pytest.raises(ValidationError):
        controller.amend(debt.id, actor="ana", total_amount_cents=200_000 * UNIT)
    with pytest.raises(ValidationError):
        controller.amend(debt.id, actor="ana", interest_rate=Decimal("-1"))


class _RacingStore:
    """Store wrapper whose first append loses a race against another writer."""

    def __init__(self, inner: LedgerStore) -> None:
        self._inner = inner
        self.conflicts_left = 1

    def __getattr__(self, name: str):
        return getattr(self._inner, name)

    def append_payment(self, **kw):
        if self.conflicts_left:
            self.conflicts_left -= 1
            raise ConflictError(kw["debt_id"], kw["expected_version"], kw["expected_version"] + 1)
        return self._inner.append_payment(**kw)


def test_conflict_is_retried_with_fresh_read(store: LedgerStore, client: Client, clock: FixedClock) -> None:
    debt = _debt(store, client, due=date(2024, 2, 1))
    racing = _RacingStore(store)
    controller = LifecycleController(racing, clock=clock)  # type: ignore[arg-type]

    res = controller.record_payment(debt.id, 100 * UNIT)
    assert racing.conflicts_left == 0
    assert res.version == 2
    assert len(store.list_payments(debt.id)) == 1


def test_conflict_gives_up_after_bounded_retries(store: LedgerStore, client: Client, clock: FixedClock) -> None:
    debt = _debt(store, client, due=date(2024, 2, 1))
    racing = _RacingStore(store)
    racing.conflicts_left = 10
    controller = LifecycleController(racing, clock=clock, max_conflict_retries=3)  # type: ignore[arg-type]

    with pytest.raises(ConflictError):
        controller.record_payment(debt.id, 100 * UNIT)
    assert racing.conflicts_left == 7
    assert store.list_payments(debt.id) == []


def test_concurrent_payments_never_exceed_the_total(
    store: LedgerStore, client: Client, clock: FixedClock
) -> None:
    debt = _debt(store, client, total=1_000 * UNIT, due=date(2024, 2, 1))
    controller = LifecycleController(store, clock=clock, max_conflict_retries=50)
    errors: List[Exception] = []

    def pay() -> None:
        try:
            controller.record_payment(debt.id, 300 * UNIT)
        except (OverpaymentError, ConflictError) as e:
            errors.append(e)

    threads = [threading.Thread(target=pay) for _ in range(5)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    paid = sum(p.amount_cents for p in store.list_payments(debt.id))
    assert paid <= 1_000 * UNIT
    assert paid == 300 * UNIT * (5 - len(errors))
    assert store.get_debt(debt.id).version == 1 + (5 - len(errors))


def test_backdated_payment_is_checked_against_the_balance_shown_today(
    store: LedgerStore, client: Client, clock: FixedClock, controller: LifecycleController
) -> None:
    debt = _debt(store, client, rate="2")
    clock.set(date(2024, 3, 15))

    with pytest.raises(OverpaymentError) as ei:
        controller.record_payment(debt.id, 1_040_000 * UNIT + 1, payment_date=date(2024, 1, 15))
    assert ei.value.remaining_cents == 1_040_000 * UNIT

    res = controller.record_payment(debt.id, 1_040_000 * UNIT - 1, payment_date=date(2024, 1, 15))
    assert res.remaining_cents == 1
    assert res.status is DebtStatus.OVERDUE
    assert res.payment.recorded_on == date(2024, 3, 15)
    assert store.list_payments(debt.id)[0].recorded_on == date(2024, 3, 15)

    res = controller.record_payment(debt.id, 1, payment_date=date(2024, 2, 1))
    assert res.status is DebtStatus.PAID


def test_amend_stores_validated_values(
    store: LedgerStore, client: Client, controller: LifecycleController
) -> None:
    debt = _debt(store, client, due=date(2024, 2, 1))

    amended = controller.amend(
        debt.id,
        actor="ana",
        email_notifications="false",
        interest_rate="1.25",
        due_date="2024-03-01",
        priority="urgent",
    )
    assert amended.email_notifications is False
    assert amended.interest_rate == Decimal("1.25")
    assert amended.due_date == date(2024, 3, 1)
    assert amended.priority.value == "urgent"
    assert store.get_debt(debt.id).email_notifications is False

    with pytest.raises(ValidationError):
        controller.amend(debt.id, actor="ana", colour="blue")


def test_refresh_all_skips_a_debt_the_store_cannot_read(
    store: LedgerStore, client: Client, clock: FixedClock
) -> None:
    broken = _debt(store, client)
    healthy = _debt(store, client, due=date(2024, 1, 2))

    class _FlakyStore:
        def __init__(self, inner: LedgerStore) -> None:
            self._inner = inner

        def __getattr__(self, name: str):
            return getattr(self._inner, name)

        def list_payments(self, debt_id: str):
            if debt_id == broken.id:
                raise ExternalDependencyError("store", "disk I/O error", committed=False)
            return self._inner.list_payments(debt_id)

    controller = LifecycleController(_FlakyStore(store), clock=clock)  # type: ignore[arg-type]
    clock.set(date(2024, 1, 10))

    changes = controller.refresh_all()
    assert [c.debt_id for c in changes] == [healthy.id]
    assert store.get_debt(broken.id).status is DebtStatus.PENDING
