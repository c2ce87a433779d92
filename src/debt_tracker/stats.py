"""
Read-only dashboard folds over the ledger.

Persisted status may lag behind the calendar, so every number here comes from re-deriving each debt as of
the requested date; nothing in this module writes.
"""

from __future__ import annotations

from datetime import date
from decimal import Decimal, ROUND_HALF_UP
from typing import Dict

from .aging import DEFAULT_POLICY, InterestPolicy, derive
from .models import (
    AggregateStats,
    AgingBucket,
    ClientStatus,
    ClientSummary,
    ClientType,
    DebtStatus,
    GroupTotals,
)
from .store import LedgerStore


def _add(groups: Dict[str, GroupTotals], key: str, amount_cents: int) -> None:
    g = groups.setdefault(key, GroupTotals())
    g.count += 1
    g.amount_cents += amount_cents


def aggregate(store: LedgerStore, as_of: date, policy: InterestPolicy = DEFAULT_POLICY) -> AggregateStats:
    clients = store.list_clients()
    client_types = {c.id: c.type for c in clients}
    debts = store.list_debts()
    payments = store.payments_by_debt()

    stats = AggregateStats(
        as_of=as_of,
        total_clients=len(clients),
        active_clients=sum(1 for c in clients if c.status is ClientStatus.ACTIVE),
        total_debts=len(debts),
        by_status={s.value: GroupTotals() for s in DebtStatus},
        by_client_type={t.value: GroupTotals() for t in ClientType},
        by_aging_bucket={b.value: GroupTotals() for b in AgingBucket},
    )

    for debt in debts:
        d = derive(debt, payments.get(debt.id, []), as_of, policy)
        _add(stats.by_status, d.status.value, d.remaining_cents)
        if d.status is DebtStatus.CANCELLED:
            # Written off: counted by status, kept out of money totals.
            continue

        stats.total_amount.total += debt.total_amount_cents + d.accrued_interest_cents
        stats.total_amount.paid += d.paid_cents
        stats.total_amount.remaining += d.remaining_cents
        _add(stats.by_client_type, client_types[debt.client_id].value, d.remaining_cents)
        if d.aging_bucket is not None:
            _add(stats.by_aging_bucket, d.aging_bucket.value, d.remaining_cents)
        if d.status is DebtStatus.OVERDUE:
            stats.overdue_count += 1

    if debts:
        avg = Decimal(sum(x.total_amount_cents for x in debts)) / len(debts)
        stats.average_amount_cents = int(avg.quantize(Decimal("1"), rounding=ROUND_HALF_UP))
    if stats.total_amount.total:
        rate = Decimal(stats.total_amount.paid) * 100 / Decimal(stats.total_amount.total)
        stats.collection_rate = rate.quantize(Decimal("0.01"), rounding=ROUND_HALF_UP)
    return stats


def client_summary(
    store: LedgerStore,
    client_id: str,
    as_of: date,
    policy: InterestPolicy = DEFAULT_POLICY,
) -> ClientSummary:
    """Derived per-client totals (`totalDebt` / `totalPaid` are never stored)."""
    client = store.get_client(client_id)
    summary = ClientSummary(client=client, as_of=as_of)
    for debt in store.list_debts_by_client(client_id):
        d = derive(debt, store.list_payments(debt.id), as_of, policy)
        summary.total_paid_cents += d.paid_cents
        if d.status is DebtStatus.CANCELLED:
            continue
        summary.total_debt_cents += d.remaining_cents
        if d.remaining_cents > 0:
            summary.open_debts += 1
        if d.status is DebtStatus.OVERDUE:
            summary.overdue_debts += 1

    summary.over_credit_limit = (
        client.credit_limit_cents > 0 and summary.total_debt_cents > client.credit_limit_cents
    )
    return summary
