from __future__ import annotations

import argparse
import json
import logging
import os
import sys
import threading
from datetime import date
from decimal import Decimal, InvalidOperation
from pathlib import Path
from typing import Any, List, Optional

from dotenv import load_dotenv
from pydantic import BaseModel

from .config import load_config
from .errors import DebtTrackerError, ValidationError
from .logging_config import configure_logging
from .models import ClientType, Debt, DebtPriority, DebtStatus, PaymentMethod
from .service import DebtTracker
from .util.dates import parse_date
from .util.money import money_to_cents


logger = logging.getLogger("debt_tracker")


def _add_config_arg(p: argparse.ArgumentParser) -> None:
    p.add_argument("--config", default="config.yaml", help="Path to YAML config (default: config.yaml)")


def _build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(prog="debt-tracker")
    p.add_argument(
        "--env-file",
        default=".env",
        help="Path to a dotenv file (default: .env). If missing, env vars must already be set.",
    )

    sub = p.add_subparsers(dest="cmd", required=True)

    add_client = sub.add_parser("add-client", help="Register a client")
    _add_config_arg(add_client)
    add_client.add_argument("--name", required=True)
    add_client.add_argument("--type", choices=[t.value for t in ClientType], default=ClientType.COMPANY.value)
    add_client.add_argument("--email", default="")
    add_client.add_argument("--phone", default="")
    add_client.add_argument("--tax-id", default="")
    add_client.add_argument("--contact-person", default="")
    add_client.add_argument("--credit-limit", default="0", help="Credit limit, e.g. 25000 or $25,000.00")
    add_client.add_argument("--payment-terms-days", type=int, default=30)
    add_client.add_argument("--notes", default="")
    add_client.add_argument("--by", default="", help="Who is recording this (audit)")

    add_debt = sub.add_parser("add-debt", help="Record a new debt for a client")
    _add_config_arg(add_debt)
    add_debt.add_argument("--client-id", required=True)
    add_debt.add_argument("--description", required=True)
    add_debt.add_argument("--amount", required=True, help="Total amount, e.g. 1000000 or $1,000,000.00")
    add_debt.add_argument("--issue-date", default="", help="Issue date (default: today)")
    add_debt.add_argument("--due-date", default="", help="Due date (default: issue date + payment terms)")
    add_debt.add_argument("--interest-rate", default="0", help="Monthly interest in percent, e.g. 2 or 1.5")
    add_debt.add_argument("--priority", choices=[x.value for x in DebtPriority], default=DebtPriority.MEDIUM.value)
    add_debt.add_argument("--no-email", action="store_true", help="Never send reminders for this debt")
    add_debt.add_argument("--notes", default="")
    add_debt.add_argument("--by", default="")

    pay = sub.add_parser("pay", help="Record a payment against a debt")
    _add_config_arg(pay)
    pay.add_argument("debt", help="Debt id or number (DEBT-000001)")
    pay.add_argument("--amount", required=True)
    pay.add_argument("--date", default="", help="Payment date (default: today)")
    pay.add_argument("--method", choices=[m.value for m in PaymentMethod], default=None)
    pay.add_argument("--notes", default="")
    pay.add_argument("--by", default="")

    adjust = sub.add_parser(
        "adjust",
        help="Record a ledger adjustment (negative adds balance back and may reopen a paid debt)",
    )
    _add_config_arg(adjust)
    adjust.add_argument("debt", help="Debt id or number")
    adjust.add_argument("--amount", required=True, help="Signed amount; use '(12.34)' or -12.34 for negatives")
    adjust.add_argument("--reason", required=True)
    adjust.add_argument("--date", default="")
    adjust.add_argument("--by", default="")

    cancel = sub.add_parser("cancel", help="Cancel (write off) a debt")
    _add_config_arg(cancel)
    cancel.add_argument("debt", help="Debt id or number")
    cancel.add_argument("--reason", required=True)
    cancel.add_argument("--by", default="")

    show = sub.add_parser("show-debt", help="Show a debt with its derived balance, status and aging")
    _add_config_arg(show)
    show.add_argument("debt", help="Debt id or number")
    show.add_argument("--as-of", default="")
    show.add_argument("--payments", action="store_true", help="Include the payment history")

    overdue = sub.add_parser("list-overdue", help="List overdue debts")
    _add_config_arg(overdue)
    overdue.add_argument("--as-of", default="")

    upcoming = sub.add_parser("list-upcoming", help="List debts falling due soon")
    _add_config_arg(upcoming)
    upcoming.add_argument("--days", type=int, default=7)
    upcoming.add_argument("--as-of", default="")

    stats = sub.add_parser("stats", help="Dashboard totals")
    _add_config_arg(stats)
    stats.add_argument("--as-of", default="")

    summary = sub.add_parser("client-summary", help="Per-client totals")
    _add_config_arg(summary)
    summary.add_argument("client_id")
    summary.add_argument("--as-of", default="")

    settle = sub.add_parser("settle", help="Pay off a debt's remaining balance (interest included) in one payment")
    _add_config_arg(settle)
    settle.add_argument("debt", help="Debt id or number")
    settle.add_argument("--method", choices=[m.value for m in PaymentMethod], default=None)
    settle.add_argument("--notes", default="")
    settle.add_argument("--by", default="")

    list_debts = sub.add_parser("list-debts", help="Filter and page through debts, newest first")
    _add_config_arg(list_debts)
    list_debts.add_argument("--status", choices=[s.value for s in DebtStatus], default=None)
    list_debts.add_argument("--priority", choices=[x.value for x in DebtPriority], default=None)
    list_debts.add_argument("--client-id", default="")
    list_debts.add_argument("--overdue", action="store_true")
    list_debts.add_argument("--search", default="", help="Case-insensitive regex over number, description and notes")
    list_debts.add_argument("--page", type=int, default=1)
    list_debts.add_argument("--limit", type=int, default=10)

    notes_summary = sub.add_parser("notification-summary", help="Overdue/upcoming counts and recent reminder outcomes")
    _add_config_arg(notes_summary)
    notes_summary.add_argument("--days", type=int, default=30, help="Look-back window in days (default: 30)")

    remind = sub.add_parser("remind", help="Run one reminder tick now (or send a manual reminder for one debt)")
    _add_config_arg(remind)
    remind.add_argument("--debt", default="", help="Send a manual reminder for this debt only")

    run = sub.add_parser("run-scheduler", help="Run the daily reminder scheduler until interrupted")
    _add_config_arg(run)

    return p


def _dump(value: Any) -> None:
    if isinstance(value, BaseModel):
        payload: Any = value.model_dump(mode="json")
    elif isinstance(value, list):
        payload = [v.model_dump(mode="json") if isinstance(v, BaseModel) else v for v in value]
    else:
        payload = value
    print(json.dumps(payload, indent=2, sort_keys=True))


def _optional_date(raw: str) -> Optional[date]:
    if not (raw or "").strip():
        return None
    try:
        return parse_date(raw)
    except ValueError as e:
        raise ValidationError(f"not a date: {raw!r}") from e


def _amount(raw: str) -> int:
    try:
        return money_to_cents(raw)
    except ValueError as e:
        raise ValidationError(str(e)) from e


def _resolve_debt(tracker: DebtTracker, ref: str) -> Debt:
    ref = (ref or "").strip()
    if ref.upper().startswith("DEBT-"):
        return tracker.store.get_debt_by_number(ref.upper())
    return tracker.store.get_debt(ref)


def _run(args: argparse.Namespace, tracker: DebtTracker) -> int:
    if args.cmd == "add-client":
        client = tracker.create_client(
            name=args.name,
            type=ClientType(args.type),
            email=args.email,
            phone=args.phone,
            tax_id=args.tax_id,
            contact_person=args.contact_person,
            credit_limit_cents=_amount(args.credit_limit),
            payment_terms_days=args.payment_terms_days,
            notes=args.notes,
            created_by=args.by,
        )
        _dump(client)
        return 0

    if args.cmd == "add-debt":
        try:
            rate = Decimal(args.interest_rate.strip().rstrip("%"))
        except InvalidOperation as e:
            raise ValidationError(f"not an interest rate: {args.interest_rate!r}") from e
        fields = {}
        issue = _optional_date(args.issue_date)
        if issue is not None:
            fields["issue_date"] = issue
        debt = tracker.create_debt(
            client_id=args.client_id,
            description=args.description,
            total_amount_cents=_amount(args.amount),
            due_date=_optional_date(args.due_date),
            interest_rate=rate,
            priority=DebtPriority(args.priority),
            created_by=args.by,
            email_notifications=not args.no_email,
            notes=args.notes,
            **fields,
        )
        _dump(debt)
        return 0

    if args.cmd == "pay":
        debt = _resolve_debt(tracker, args.debt)
        result = tracker.record_payment(
            debt.id,
            _amount(args.amount),
            _optional_date(args.date),
            args.by,
            method=PaymentMethod(args.method) if args.method else None,
            notes=args.notes,
        )
        _dump(result)
        return 0

    if args.cmd == "adjust":
        debt = _resolve_debt(tracker, args.debt)
        result = tracker.record_adjustment(
            debt.id,
            _amount(args.amount),
            reason=args.reason,
            actor=args.by,
            adjustment_date=_optional_date(args.date),
        )
        _dump(result)
        return 0

    if args.cmd == "cancel":
        debt = _resolve_debt(tracker, args.debt)
        change = tracker.cancel_debt(debt.id, args.reason, args.by)
        if change is None:
            print(f"{debt.debt_number} was already cancelled")
        else:
            _dump(change)
        return 0

    if args.cmd == "show-debt":
        debt = _resolve_debt(tracker, args.debt)
        view = tracker.get_debt_view(debt.id, _optional_date(args.as_of))
        if args.payments:
            out = view.model_dump(mode="json")
            out["payments"] = [p.model_dump(mode="json") for p in tracker.store.list_payments(debt.id)]
            _dump(out)
        else:
            _dump(view)
        return 0

    if args.cmd == "list-overdue":
        _dump(tracker.list_overdue_debts(_optional_date(args.as_of)))
        return 0

    if args.cmd == "list-upcoming":
        _dump(tracker.list_upcoming_debts(args.days, _optional_date(args.as_of)))
        return 0

    if args.cmd == "stats":
        _dump(tracker.get_aggregate_stats(_optional_date(args.as_of)))
        return 0

    if args.cmd == "client-summary":
        _dump(tracker.client_summary(args.client_id, _optional_date(args.as_of)))
        return 0

    if args.cmd == "settle":
        debt = _resolve_debt(tracker, args.debt)
        result = tracker.settle_debt(
            debt.id,
            args.by,
            method=PaymentMethod(args.method) if args.method else None,
            notes=args.notes,
        )
        _dump(result)
        return 0

    if args.cmd == "list-debts":
        _dump(
            tracker.search_debts(
                status=DebtStatus(args.status) if args.status else None,
                priority=DebtPriority(args.priority) if args.priority else None,
                client_id=args.client_id or None,
                overdue=args.overdue,
                search=args.search or None,
                page=args.page,
                limit=args.limit,
            )
        )
        return 0

    if args.cmd == "notification-summary":
        _dump(tracker.notification_summary(window_days=args.days))
        return 0

    if args.cmd == "remind":
        if args.debt:
            debt = _resolve_debt(tracker, args.debt)
            outcome = tracker.send_manual_reminder(debt.id)
            _dump({"debt_id": outcome.debt_id, "kind": outcome.kind.value, "status": outcome.status, "error": outcome.error})
            return 0
        report = tracker.run_reminders()
        _dump(
            {
                "day": report.day.isoformat(),
                "transitions": report.transitions,
                "outcomes": [
                    {"debt_id": o.debt_id, "kind": o.kind.value, "status": o.status, "error": o.error}
                    for o in report.outcomes
                ],
            }
        )
        return 0

    if args.cmd == "run-scheduler":
        tracker.scheduler.start()
        logger.info("Scheduler running; press Ctrl+C to stop")
        try:
            threading.Event().wait()
        except KeyboardInterrupt:
            print("Interrupted; stopping scheduler.")
        return 0

    raise AssertionError("Unhandled command")


def main(argv: Optional[List[str]] = None) -> int:
    args = _build_parser().parse_args(argv)

    env_path = Path(args.env_file)
    if env_path.exists():
        load_dotenv(env_path)

    # Default logging: can be overridden once config is loaded.
    configure_logging(level=os.getenv("LOG_LEVEL", "INFO"))

    cfg = load_config(args.config)
    configure_logging(level=cfg.logging.level, file_path=cfg.logging.file_path)

    try:
        tracker = DebtTracker.from_config(cfg)
    except DebtTrackerError as e:
        print(f"error: {e}", file=sys.stderr)
        return 2

    try:
        return _run(args, tracker)
    except DebtTrackerError as e:
        logger.debug("Command %s failed", args.cmd, exc_info=True)
        print(f"error: {e}", file=sys.stderr)
        return 2
    finally:
        tracker.close()


if __name__ == "__main__":
    raise SystemExit(main())
