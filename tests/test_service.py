from __future__ import annotations

from datetime import date, datetime, timezone
from decimal import Decimal
from pathlib import Path

import pytest

from debt_tracker.config import AppConfig
from debt_tracker.errors import NotFoundError, OverpaymentError, ValidationError
from debt_tracker.models import AgingBucket, ClientType, DebtStatus, PaymentMethod, ReminderKind, ReminderRecord
from debt_tracker.service import DebtTracker
from debt_tracker.util.dates import FixedClock


UNIT = 100


def test_payment_flow_through_facade(tracker: DebtTracker, clock: FixedClock) -> None:
    c = tracker.create_client(name="Acme S.A.", type=ClientType.COMPANY)
    debt = tracker.create_debt(
        client_id=c.id, description="Audit", total_amount_cents=1_000_000 * UNIT, due_date=date(2024, 1, 1)
    )
    assert debt.issue_date == date(2024, 1, 1)

    clock.set(date(2024, 1, 10))
    res = tracker.record_payment(debt.id, 400_000 * UNIT, date(2024, 1, 10), "ana", method=PaymentMethod.BANK_TRANSFER)
    assert res.remaining_cents == 600_000 * UNIT
    assert res.status is DebtStatus.OVERDUE
    assert res.payment.method is PaymentMethod.BANK_TRANSFER

    view = tracker.get_debt_view(debt.id)
    assert view.paid_cents == 400_000 * UNIT
    assert view.days_overdue == 9
    assert view.aging_bucket is AgingBucket.DAYS_1_30

    # As of an earlier date the later payment is not yet known.
    early = tracker.get_debt_view(debt.id, as_of=date(2023, 12, 31))
    assert early.paid_cents == 0
    assert early.status is DebtStatus.PENDING

    with pytest.raises(OverpaymentError):
        tracker.record_payment(debt.id, 600_000 * UNIT + 1)
    res = tracker.record_payment(debt.id, 600_000 * UNIT)
    assert res.status is DebtStatus.PAID


def test_overdue_and_upcoming_lists(tracker: DebtTracker, clock: FixedClock) -> None:
    c = tracker.create_client(name="Acme S.A.", type=ClientType.COMPANY)

    def debt(due: date, description: str):
        return tracker.create_debt(
            client_id=c.id, description=description, total_amount_cents=10_000 * UNIT, due_date=due
        )

    late_b = debt(date(2024, 1, 5), "late b")
    late_a = debt(date(2023, 12, 20), "late a")
    soon = debt(date(2024, 1, 14), "soon")
    debt(date(2024, 2, 1), "later")
    settled = debt(date(2024, 1, 2), "settled")
    tracker.record_payment(settled.id, 10_000 * UNIT)

    clock.set(date(2024, 1, 10))
    overdue = tracker.list_overdue_debts()
    assert [v.debt.id for v in overdue] == [late_a.id, late_b.id]
    assert all(v.status is DebtStatus.OVERDUE for v in overdue)

    upcoming = tracker.list_upcoming_debts()
    assert [v.debt.id for v in upcoming] == [soon.id]
    assert tracker.list_upcoming_debts(days=30)[-1].debt.description == "later"

    with pytest.raises(ValidationError):
        tracker.list_upcoming_debts(days=-1)


def test_cancel_and_amend_through_facade(tracker: DebtTracker, clock: FixedClock) -> None:
    c = tracker.create_client(name="Acme S.A.", type=ClientType.COMPANY)
    debt = tracker.create_debt(
        client_id=c.id,
        description="Retainer",
        total_amount_cents=10_000 * UNIT,
        due_date=date(2024, 1, 31),
        interest_rate=Decimal("1.5"),
    )
    amended = tracker.amend_debt(debt.id, actor="ana", total_amount_cents=12_000 * UNIT)
    assert amended.total_amount_cents == 12_000 * UNIT
    assert amended.version == 2

    change = tracker.cancel_debt(debt.id, "written off", "ana")
    assert change is not None
    view = tracker.get_debt_view(debt.id, as_of=date(2024, 6, 1))
    assert view.status is DebtStatus.CANCELLED
    assert view.accrued_interest_cents == 0
    assert view.aging_bucket is None


def test_reassign_debt(tracker: DebtTracker) -> None:
    a = tracker.create_client(name="Acme S.A.", type=ClientType.COMPANY)
    b = tracker.create_client(name="Acme Holdings", type=ClientType.COMPANY)
    debt = tracker.create_debt(client_id=a.id, description="Audit", total_amount_cents=100, due_date=date(2024, 2, 1))

    moved = tracker.reassign_debt(debt.id, client_id=b.id)
    assert moved.client_id == b.id
    with pytest.raises(NotFoundError):
        tracker.reassign_debt(debt.id, client_id="missing")


def test_from_config_opens_store(tmp_path: Path) -> None:
    cfg = AppConfig()
    cfg.store.db_path = str(tmp_path / "nested" / "debts.db")
    t = DebtTracker.from_config(cfg, clock=FixedClock())
    try:
        t.create_client(name="Acme", type=ClientType.COMPANY)
        assert (tmp_path / "nested" / "debts.db").exists()
        assert len(t.store.list_clients()) == 1
    finally:
        t.close()


def test_settle_debt_pays_the_balance_with_interest(tracker: DebtTracker, clock: FixedClock) -> None:
    c = tracker.create_client(name="Acme S.A.", type=ClientType.COMPANY)
    debt = tracker.create_debt(
        client_id=c.id,
        description="Office fit-out",
        total_amount_cents=1_000_000 * UNIT,
        due_date=date(2024, 1, 1),
        interest_rate=Decimal("2"),
    )
    clock.set(date(2024, 3, 15))
    tracker.record_payment(debt.id, 40_000 * UNIT)

    res = tracker.settle_debt(debt.id, "ana", method=PaymentMethod.CASH)
    assert res.payment.amount_cents == 1_000_000 * UNIT
    assert res.payment.notes == "settled in full"
    assert res.remaining_cents == 0
    assert res.status is DebtStatus.PAID
    assert tracker.store.get_debt(debt.id).status is DebtStatus.PAID

    with pytest.raises(ValidationError):
        tracker.settle_debt(debt.id)

    dropped = tracker.create_debt(
        client_id=c.id, description="Dropped", total_amount_cents=100 * UNIT, due_date=date(2024, 4, 1)
    )
    tracker.cancel_debt(dropped.id, "duplicate entry", "ana")
    with pytest.raises(ValidationError):
        tracker.settle_debt(dropped.id)


def test_search_debts_returns_derived_views(tracker: DebtTracker, clock: FixedClock) -> None:
    c = tracker.create_client(name="Acme S.A.", type=ClientType.COMPANY)
    terms = [("Audit 2023", date(2024, 1, 1)), ("Hosting", date(2024, 2, 1)), ("Audit 2024", date(2024, 3, 1))]
    for description, due in terms:
        tracker.create_debt(
            client_id=c.id,
            description=description,
            total_amount_cents=1_000 * UNIT,
            due_date=due,
            interest_rate=Decimal("1"),
        )
    clock.set(date(2024, 2, 10))

    page = tracker.search_debts(search="audit", limit=1)
    assert (page.total, page.total_pages, page.page) == (2, 2, 1)
    assert [v.debt.description for v in page.items] == ["Audit 2024"]

    overdue = tracker.search_debts(overdue=True)
    assert [v.debt.description for v in overdue.items] == ["Hosting", "Audit 2023"]
    assert [v.days_overdue for v in overdue.items] == [9, 40]
    assert overdue.items[1].accrued_interest_cents == 10 * UNIT


def test_notification_summary(tracker: DebtTracker, clock: FixedClock) -> None:
    c = tracker.create_client(name="Acme S.A.", type=ClientType.COMPANY, email="billing@acme.test")
    late = tracker.create_debt(
        client_id=c.id,
        description="Late",
        total_amount_cents=1_000 * UNIT,
        due_date=date(2023, 12, 20),
        issue_date=date(2023, 11, 20),
    )
    tracker.create_debt(client_id=c.id, description="Soon", total_amount_cents=1_000 * UNIT, due_date=date(2024, 1, 7))

    report = tracker.run_reminders()
    assert [o.debt_id for o in report.outcomes] == [late.id]

    for day, delivered in ((date(2023, 12, 10), False), (date(2023, 11, 1), True)):
        tracker.store.insert_reminder_if_absent(
            ReminderRecord(
                debt_id=late.id,
                reminder_date=day,
                kind=ReminderKind.OVERDUE,
                channel="email",
                sent_at=datetime(day.year, day.month, day.day, 9, tzinfo=timezone.utc),
            )
        )
        tracker.store.mark_reminder_result(late.id, day, delivered=delivered, error="" if delivered else "bounced")

    summary = tracker.notification_summary()
    assert summary.as_of == date(2024, 1, 1)
    assert (summary.overdue_count, summary.upcoming_count) == (1, 1)
    # The November reminder is outside the 30-day window.
    assert (summary.notifications_sent, summary.notifications_failed) == (1, 1)

    with pytest.raises(ValidationError):
        tracker.notification_summary(window_days=0)
