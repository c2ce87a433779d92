from __future__ import annotations

import logging
import queue
import threading
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta
from typing import List, Optional, Tuple

from .aging import derive
from .config import NotificationsConfig, SchedulerConfig
from .errors import DebtTrackerError, ExternalDependencyError, ValidationError
from .lifecycle import LifecycleController
from .models import Debt, ReminderIntent, ReminderKind, ReminderRecord
from .notify import Dispatcher, LoggingNotifier, Notifier, render_reminder
from .store import LedgerStore
from .util.dates import Clock, SystemClock


logger = logging.getLogger(__name__)

SENT = "sent"
DUPLICATE = "duplicate"
FAILED = "failed"
NO_RECIPIENT = "no_recipient"
DISABLED = "disabled"


@dataclass(frozen=True)
class ReminderOutcome:
    debt_id: str
    kind: ReminderKind
    status: str
    error: str = ""


@dataclass
class TickReport:
    day: date
    started_at: datetime
    finished_at: Optional[datetime] = None
    transitions: int = 0
    outcomes: List[ReminderOutcome] = field(default_factory=list)

    def count(self, status: str) -> int:
        return sum(1 for o in self.outcomes if o.status == status)

    def summary(self) -> str:
        return (
            f"day={self.day.isoformat()} transitions={self.transitions} qualifying={len(self.outcomes)} "
            f"sent={self.count(SENT)} duplicate={self.count(DUPLICATE)} failed={self.count(FAILED)} "
            f"no_recipient={self.count(NO_RECIPIENT)} disabled={self.count(DISABLED)}"
        )


class ReminderScheduler:
    """
    Daily reminder tick: at most one reminder per debt per calendar day.

    The (debt_id, day) reminder record is inserted atomically before anything is sent, so retries,
    overlapping ticks or a restart mid-tick never produce a second reminder for the same day. A failed send
    keeps its record (at-most-once delivery tracking). Intents are also published on `self.intents`.
    """

    def __init__(
        self,
        store: LedgerStore,
        controller: LifecycleController,
        *,
        notifier: Optional[Notifier] = None,
        clock: Optional[Clock] = None,
        config: Optional[SchedulerConfig] = None,
        notifications: Optional[NotificationsConfig] = None,
    ) -> None:
        self._store = store
        self._controller = controller
        self._clock = clock or SystemClock()
        self._cfg = config or SchedulerConfig()
        self._notifications = notifications or NotificationsConfig()
        self._dispatcher = Dispatcher(
            notifier or LoggingNotifier(),
            timeout_s=self._cfg.send_timeout_s,
            attempts=self._cfg.send_attempts,
            base_delay_s=self._cfg.retry_base_delay_s,
        )

        self.intents: "queue.Queue[ReminderIntent]" = queue.Queue()
        self._tick_lock = threading.Lock()
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None

    # ------------------------------------------------------------------
    # selection

    def due_reminders(self, day: date) -> List[Tuple[Debt, ReminderIntent]]:
        """Debts that qualify for a reminder on `day`: overdue ones plus those due within the look-ahead."""
        policy = self._controller.policy
        out: List[Tuple[Debt, ReminderIntent]] = []

        for debt in self._store.list_overdue_debts(day):
            if not debt.email_notifications:
                continue
            d = derive(debt, self._store.list_payments(debt.id), day, policy)
            if d.remaining_cents <= 0 or d.days_overdue <= 0:
                continue
            out.append((debt, self._intent(debt, ReminderKind.OVERDUE, d.remaining_cents, d.days_overdue)))

        horizon = day + timedelta(days=self._cfg.lookahead_days)
        for debt in self._store.list_due_between(day, horizon):
            if not debt.email_notifications:
                continue
            d = derive(debt, self._store.list_payments(debt.id), day, policy)
            if d.remaining_cents <= 0:
                continue
            days_left = (debt.due_date - day).days
            out.append((debt, self._intent(debt, ReminderKind.UPCOMING, d.remaining_cents, days_left)))
        return out

    @staticmethod
    def _intent(debt: Debt, kind: ReminderKind, remaining_cents: int, days: int) -> ReminderIntent:
        return ReminderIntent(
            debt_id=debt.id,
            client_id=debt.client_id,
            kind=kind,
            due_date=debt.due_date,
            remaining_cents=remaining_cents,
            debt_number=debt.debt_number,
            days=days,
        )

    # ------------------------------------------------------------------
    # ticks

    def run_tick(self, today: Optional[date] = None) -> TickReport:
        """
        Run one scheduling tick. Ticks never overlap: a second caller waits for the running one.
        """
        with self._tick_lock:
            day = today or self._clock.today()
            report = TickReport(day=day, started_at=self._clock.now())
            tick_id = self._store.record_tick_start()
            try:
                report.transitions = len(self._controller.refresh_all(as_of=day))
                for debt, intent in self.due_reminders(day):
                    report.outcomes.append(self._remind(debt, intent, day))
            except Exception as e:
                self._store.record_tick_finish(tick_id, ok=False, message=str(e))
                logger.error("Reminder tick failed (day=%s): %s", day.isoformat(), e)
                raise

            report.finished_at = self._clock.now()
            self._store.record_tick_finish(tick_id, ok=True, message=report.summary())
            logger.info("Reminder tick finished: %s", report.summary())
            return report

    def send_manual_reminder(self, debt_id: str, today: Optional[date] = None) -> ReminderOutcome:
        """Staff-triggered reminder; it uses the same per-day key, so it counts as that day's reminder."""
        day = today or self._clock.today()
        debt = self._store.get_debt(debt_id)
        if debt.status.is_terminal:
            raise ValidationError(f"debt {debt.debt_number} is {debt.status.value}; no reminder sent")
        d = derive(debt, self._store.list_payments(debt_id), day, self._controller.policy)
        intent = self._intent(debt, ReminderKind.MANUAL, d.remaining_cents, d.days_overdue)
        return self._remind(debt, intent, day)

    def _remind(self, debt: Debt, intent: ReminderIntent, day: date) -> ReminderOutcome:
        try:
            return self._remind_once(debt, intent, day)
        except DebtTrackerError as e:
            # One bad debt must not sink the rest of the batch.
            logger.warning("Reminder for %s failed before dispatch: %s", debt.debt_number, e)
            return ReminderOutcome(debt_id=debt.id, kind=intent.kind, status=FAILED, error=str(e))

    def _remind_once(self, debt: Debt, intent: ReminderIntent, day: date) -> ReminderOutcome:
        record = ReminderRecord(
            debt_id=debt.id,
            reminder_date=day,
            kind=intent.kind,
            channel=self._notifications.channel,
            sent_at=self._clock.now(),
        )
        if not self._store.insert_reminder_if_absent(record):
            logger.debug("Reminder for %s already recorded on %s; skipping", debt.debt_number, day.isoformat())
            return ReminderOutcome(debt_id=debt.id, kind=intent.kind, status=DUPLICATE)

        self.intents.put(intent)

        if not self._notifications.enabled:
            self._store.mark_reminder_result(debt.id, day, delivered=False, error="notifications disabled")
            return ReminderOutcome(debt_id=debt.id, kind=intent.kind, status=DISABLED)

        client = self._store.get_client(debt.client_id)
        recipient = client.email or self._notifications.default_recipient
        if not recipient:
            logger.info("Client %s has no email and no default recipient is set; %s not sent", client.name, debt.debt_number)
            self._store.mark_reminder_result(debt.id, day, delivered=False, error="no recipient")
            return ReminderOutcome(debt_id=debt.id, kind=intent.kind, status=NO_RECIPIENT)

        notification = render_reminder(
            intent,
            client,
            debt,
            recipient=recipient,
            sender_name=self._notifications.sender_name,
        )
        try:
            self._dispatcher.send(notification)
        except (ExternalDependencyError, ValueError) as e:
            logger.warning("Reminder %s for %s not delivered: %s", intent.kind.value, debt.debt_number, e)
            self._store.mark_reminder_result(debt.id, day, delivered=False, error=str(e))
            return ReminderOutcome(debt_id=debt.id, kind=intent.kind, status=FAILED, error=str(e))

        self._store.mark_reminder_result(debt.id, day, delivered=True)
        logger.info("Reminder %s sent for %s to %s", intent.kind.value, debt.debt_number, recipient)
        return ReminderOutcome(debt_id=debt.id, kind=intent.kind, status=SENT)

    # ------------------------------------------------------------------
    # background loop

    def next_run_at(self, now: datetime) -> datetime:
        candidate = now.replace(hour=self._cfg.run_hour, minute=0, second=0, microsecond=0)
        if candidate <= now:
            candidate += timedelta(days=1)
        return candidate

    def start(self) -> None:
        if self._thread is not None and self._thread.is_alive():
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._loop, name="reminder-scheduler", daemon=True)
        self._thread.start()
        logger.info("Reminder scheduler started (run_hour=%d)", self._cfg.run_hour)

    def stop(self, timeout: Optional[float] = None) -> None:
        """Stop the loop. A tick already running is allowed to finish."""
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout)
            self._thread = None
        logger.info("Reminder scheduler stopped")

    def close(self) -> None:
        self.stop()
        self._dispatcher.close()

    def _loop(self) -> None:
        while not self._stop.is_set():
            now = self._clock.now()
            wait_s = max(0.0, (self.next_run_at(now) - now).total_seconds())
            logger.debug("Next reminder tick in %.0fs", wait_s)
            if self._stop.wait(wait_s):
                break
            try:
                self.run_tick()
            except Exception:
                logger.exception("Reminder tick crashed; will try again at the next run hour")
