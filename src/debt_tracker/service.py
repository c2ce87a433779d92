from __future__ import annotations

from datetime import date, timedelta
from decimal import Decimal
from typing import Any, List, Optional

from .aging import InterestPolicy, derive
from .config import AppConfig
from .errors import ValidationError
from .lifecycle import LifecycleController
from .models import (
    AggregateStats,
    Client,
    ClientSummary,
    ClientType,
    Debt,
    DebtPage,
    DebtPriority,
    DebtStatus,
    DebtView,
    NotificationSummary,
    PaymentMethod,
    PaymentResult,
    StatusChange,
)
from .notify import Notifier
from .scheduler import ReminderOutcome, ReminderScheduler, TickReport
from .stats import aggregate, client_summary
from .store import LedgerStore
from .util.dates import Clock, SystemClock


class DebtTracker:
    """
    Entry point for collaborators (HTTP handlers, CLI, jobs).

    Wires the ledger store, aging engine, lifecycle controller, stats and reminder scheduler together.
    """

    def __init__(
        self,
        store: LedgerStore,
        *,
        clock: Optional[Clock] = None,
        policy: Optional[InterestPolicy] = None,
        notifier: Optional[Notifier] = None,
        config: Optional[AppConfig] = None,
    ) -> None:
        cfg = config or AppConfig()
        self.store = store
        self.clock = clock or SystemClock()
        self.policy = policy or InterestPolicy.from_config(cfg.interest)
        self.controller = LifecycleController(store, clock=self.clock, policy=self.policy)
        self.scheduler = ReminderScheduler(
            store,
            self.controller,
            notifier=notifier,
            clock=self.clock,
            config=cfg.scheduler,
            notifications=cfg.notifications,
        )

    @classmethod
    def from_config(
        cls,
        cfg: AppConfig,
        *,
        clock: Optional[Clock] = None,
        notifier: Optional[Notifier] = None,
    ) -> "DebtTracker":
        store = LedgerStore(cfg.store.db_path, busy_timeout_s=cfg.store.busy_timeout_s)
        return cls(store, clock=clock, notifier=notifier, config=cfg)

    def close(self) -> None:
        self.scheduler.close()
        self.store.close()

    # ------------------------------------------------------------------
    # clients + debts

    def create_client(self, *, name: str, type: ClientType, created_by: str = "", **fields: Any) -> Client:
        return self.store.create_client(name=name, type=type, created_by=created_by, **fields)

    def create_debt(
        self,
        *,
        client_id: str,
        description: str,
        total_amount_cents: int,
        due_date: Optional[date] = None,
        interest_rate: Decimal = Decimal("0"),
        priority: DebtPriority = DebtPriority.MEDIUM,
        created_by: str = "",
        **fields: Any,
    ) -> Debt:
        return self.store.create_debt(
            client_id=client_id,
            description=description,
            total_amount_cents=total_amount_cents,
            issue_date=fields.pop("issue_date", None) or self.clock.today(),
            due_date=due_date,
            interest_rate=interest_rate,
            priority=priority,
            created_by=created_by,
            **fields,
        )

    def amend_debt(self, debt_id: str, *, actor: str, **fields: Any) -> Debt:
        return self.controller.amend(debt_id, actor=actor, **fields)

    def reassign_debt(self, debt_id: str, *, client_id: str) -> Debt:
        debt = self.store.get_debt(debt_id)
        return self.store.reassign_debt(debt_id, client_id=client_id, expected_version=debt.version)

    # ------------------------------------------------------------------
    # money

    def record_payment(
        self,
        debt_id: str,
        amount_cents: int,
        payment_date: Optional[date] = None,
        recorded_by: str = "",
        *,
        method: Optional[PaymentMethod] = None,
        notes: str = "",
    ) -> PaymentResult:
        return self.controller.record_payment(
            debt_id,
            amount_cents,
            payment_date=payment_date,
            recorded_by=recorded_by,
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
        return self.controller.record_adjustment(
            debt_id, amount_cents, reason=reason, actor=actor, adjustment_date=adjustment_date
        )

    def cancel_debt(self, debt_id: str, reason: str, actor: str) -> Optional[StatusChange]:
        return self.controller.cancel(debt_id, reason=reason, actor=actor)

    def settle_debt(
        self,
        debt_id: str,
        recorded_by: str = "",
        *,
        method: Optional[PaymentMethod] = None,
        notes: str = "",
    ) -> PaymentResult:
        """
        Pay off whatever is still owed today, interest included, as one ordinary payment.

        Raises ValidationError if nothing is owed. If another payment lands in between, the balance read
        here is stale and the payment is rejected as an overpayment; nothing is written in that case.
        """
        view = self.get_debt_view(debt_id)
        if view.debt.status is DebtStatus.CANCELLED:
            raise ValidationError(f"debt {view.debt.debt_number} is cancelled")
        if view.remaining_cents <= 0:
            raise ValidationError(f"debt {view.debt.debt_number} is already paid")
        return self.controller.record_payment(
            debt_id,
            view.remaining_cents,
            recorded_by=recorded_by,
            method=method,
            notes=notes or "settled in full",
        )

    # ------------------------------------------------------------------
    # views

    def get_debt_view(self, debt_id: str, as_of: Optional[date] = None) -> DebtView:
        day = as_of or self.clock.today()
        debt = self.store.get_debt(debt_id)
        d = derive(debt, self.store.list_payments(debt_id), day, self.policy)
        return DebtView.build(debt, d, day)

    def list_overdue_debts(self, as_of: Optional[date] = None) -> List[DebtView]:
        day = as_of or self.clock.today()
        views = []
        for debt in self.store.list_overdue_debts(day):
            d = derive(debt, self.store.list_payments(debt.id), day, self.policy)
            if d.days_overdue > 0:
                views.append(DebtView.build(debt, d, day))
        return views

    def list_upcoming_debts(self, days: int = 7, as_of: Optional[date] = None) -> List[DebtView]:
        if days < 0:
            raise ValidationError("days must not be negative")
        day = as_of or self.clock.today()
        views = []
        for debt in self.store.list_due_between(day, day + timedelta(days=days)):
            d = derive(debt, self.store.list_payments(debt.id), day, self.policy)
            if d.remaining_cents > 0:
                views.append(DebtView.build(debt, d, day))
        return views

    def search_debts(
        self,
        *,
        status: Optional[DebtStatus] = None,
        priority: Optional[DebtPriority] = None,
        client_id: Optional[str] = None,
        overdue: bool = False,
        search: Optional[str] = None,
        page: int = 1,
        limit: int = 10,
        as_of: Optional[date] = None,
    ) -> DebtPage:
        day = as_of or self.clock.today()
        debts, total = self.store.search_debts(
            status=status,
            priority=priority,
            client_id=client_id,
            overdue_as_of=day if overdue else None,
            search=search,
            page=page,
            limit=limit,
        )
        items = [DebtView.build(d, derive(d, self.store.list_payments(d.id), day, self.policy), day) for d in debts]
        return DebtPage(items=items, total=total, page=page, limit=limit, total_pages=-(-total // limit))

    def notification_summary(
        self,
        as_of: Optional[date] = None,
        *,
        window_days: int = 30,
        upcoming_days: int = 7,
    ) -> NotificationSummary:
        """Overdue and soon-due counts plus reminder outcomes over the last `window_days` days."""
        if window_days < 1:
            raise ValidationError("window_days must be >= 1")
        day = as_of or self.clock.today()
        records = self.store.list_reminders(since=day - timedelta(days=window_days - 1), until=day)
        return NotificationSummary(
            as_of=day,
            overdue_count=len(self.list_overdue_debts(day)),
            upcoming_count=len(self.list_upcoming_debts(upcoming_days, day)),
            notifications_sent=sum(1 for r in records if r.delivered),
            notifications_failed=sum(1 for r in records if r.delivered is False),
            window_days=window_days,
        )

    def get_aggregate_stats(self, as_of: Optional[date] = None) -> AggregateStats:
        return aggregate(self.store, as_of or self.clock.today(), self.policy)

    def client_summary(self, client_id: str, as_of: Optional[date] = None) -> ClientSummary:
        return client_summary(self.store, client_id, as_of or self.clock.today(), self.policy)

    # ------------------------------------------------------------------
    # reminders

    def run_reminders(self, today: Optional[date] = None) -> TickReport:
        return self.scheduler.run_tick(today)

    def send_manual_reminder(self, debt_id: str) -> ReminderOutcome:
        return self.scheduler.send_manual_reminder(debt_id)
