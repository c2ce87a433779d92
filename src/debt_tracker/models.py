from __future__ import annotations

import enum
from datetime import date, datetime
from decimal import Decimal
from typing import Dict, List, Optional

from pydantic import BaseModel, Field


class ClientType(str, enum.Enum):
    INDIVIDUAL = "individual"
    COMPANY = "company"
    GOVERNMENT = "government"


class ClientStatus(str, enum.Enum):
    ACTIVE = "active"
    INACTIVE = "inactive"
    BLOCKED = "blocked"


class DebtStatus(str, enum.Enum):
    PENDING = "pending"
    PARTIAL = "partial"
    PAID = "paid"
    OVERDUE = "overdue"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in (DebtStatus.PAID, DebtStatus.CANCELLED)


class DebtPriority(str, enum.Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    URGENT = "urgent"


class PaymentMethod(str, enum.Enum):
    CASH = "cash"
    BANK_TRANSFER = "bank_transfer"
    CHECK = "check"
    CREDIT_CARD = "credit_card"
    DEBIT_CARD = "debit_card"
    OTHER = "other"


class PaymentKind(str, enum.Enum):
    PAYMENT = "payment"
    # Corrections are new rows, never edits. Negative adjustments reopen balance.
    ADJUSTMENT = "adjustment"


class AgingBucket(str, enum.Enum):
    CURRENT = "current"
    DAYS_1_30 = "1-30"
    DAYS_31_60 = "31-60"
    DAYS_61_90 = "61-90"
    OVER_90 = "over90"


class ReminderKind(str, enum.Enum):
    UPCOMING = "upcoming"
    OVERDUE = "overdue"
    MANUAL = "manual"


class Client(BaseModel):
    id: str
    name: str
    type: ClientType
    status: ClientStatus = ClientStatus.ACTIVE
    email: str = ""
    phone: str = ""
    tax_id: str = ""
    contact_person: str = ""
    notes: str = ""
    credit_limit_cents: int = Field(default=0, ge=0)
    payment_terms_days: int = Field(default=30, gt=0)
    created_by: str = ""
    created_at: Optional[datetime] = None


class Debt(BaseModel):
    id: str
    debt_number: str
    client_id: str
    description: str

    total_amount_cents: int = Field(gt=0)
    interest_rate: Decimal = Field(default=Decimal("0"), ge=0)  # percent per month
    issue_date: date
    due_date: date
    payment_terms_days: int = Field(default=30, gt=0)
    priority: DebtPriority = DebtPriority.MEDIUM

    # Cache of the derived status; only the lifecycle controller writes it.
    status: DebtStatus = DebtStatus.PENDING
    email_notifications: bool = True
    notes: str = ""
    cancelled_reason: str = ""
    created_by: str = ""
    version: int = 1


class Payment(BaseModel):
    id: str
    payment_number: str
    debt_id: str
    kind: PaymentKind = PaymentKind.PAYMENT
    amount_cents: int
    payment_date: date
    method: Optional[PaymentMethod] = None
    notes: str = ""
    recorded_by: str = ""
    # Ledger day the row was entered. A backdated payment only lowers interest charged after this day.
    recorded_on: Optional[date] = None
    created_at: Optional[datetime] = None

    @property
    def interest_effective_date(self) -> date:
        if self.recorded_on is None or self.recorded_on < self.payment_date:
            return self.payment_date
        return self.recorded_on


class StatusChange(BaseModel):
    debt_id: str
    old_status: DebtStatus
    new_status: DebtStatus
    changed_at: datetime
    actor: str = "system"
    reason: str = ""


class ReminderRecord(BaseModel):
    debt_id: str
    reminder_date: date
    kind: ReminderKind
    channel: str
    sent_at: datetime
    delivered: Optional[bool] = None
    error: str = ""


class Derivation(BaseModel):
    """Output of the aging engine for one debt as of one date."""

    remaining_cents: int
    accrued_interest_cents: int
    paid_cents: int
    status: DebtStatus
    days_overdue: int
    aging_bucket: Optional[AgingBucket]
    months_elapsed: int = 0
    # > 0 only when the payments exceed what is owed (an overpayment candidate).
    credit_cents: int = 0


class DebtView(BaseModel):
    debt: Debt
    as_of: date
    remaining_cents: int
    accrued_interest_cents: int
    paid_cents: int
    status: DebtStatus
    days_overdue: int
    aging_bucket: Optional[AgingBucket]

    @classmethod
    def build(cls, debt: Debt, derivation: Derivation, as_of: date) -> "DebtView":
        return cls(
            debt=debt,
            as_of=as_of,
            remaining_cents=derivation.remaining_cents,
            accrued_interest_cents=derivation.accrued_interest_cents,
            paid_cents=derivation.paid_cents,
            status=derivation.status,
            days_overdue=derivation.days_overdue,
            aging_bucket=derivation.aging_bucket,
        )


class PaymentResult(BaseModel):
    payment: Payment
    remaining_cents: int
    status: DebtStatus
    version: int


class ReminderIntent(BaseModel):
    debt_id: str
    client_id: str
    kind: ReminderKind
    due_date: date
    remaining_cents: int
    debt_number: str = ""
    # Days overdue for overdue reminders, days until due for upcoming ones.
    days: int = 0


class AmountTotals(BaseModel):
    total: int = 0
    paid: int = 0
    remaining: int = 0


class GroupTotals(BaseModel):
    count: int = 0
    amount_cents: int = 0


class AggregateStats(BaseModel):
    as_of: date
    total_clients: int = 0
    active_clients: int = 0
    total_debts: int = 0
    overdue_count: int = 0
    total_amount: AmountTotals = Field(default_factory=AmountTotals)
    by_status: Dict[str, GroupTotals] = Field(default_factory=dict)
    by_client_type: Dict[str, GroupTotals] = Field(default_factory=dict)
    by_aging_bucket: Dict[str, GroupTotals] = Field(default_factory=dict)
    average_amount_cents: int = 0
    collection_rate: Decimal = Decimal("0")


class ClientSummary(BaseModel):
    client: Client
    as_of: date
    total_debt_cents: int = 0
    total_paid_cents: int = 0
    open_debts: int = 0
    overdue_debts: int = 0
    over_credit_limit: bool = False


class DebtPage(BaseModel):
    """One page of a filtered debt listing, newest first."""

    items: List[DebtView] = Field(default_factory=list)
    total: int = 0
    page: int = 1
    limit: int = 10
    total_pages: int = 0


class NotificationSummary(BaseModel):
    as_of: date
    overdue_count: int = 0
    upcoming_count: int = 0
    # Reminder records inside the look-back window, by delivery outcome.
    notifications_sent: int = 0
    notifications_failed: int = 0
    window_days: int = 30
