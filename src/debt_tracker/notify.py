from __future__ import annotations

import logging
import time
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeout
from dataclasses import dataclass
from typing import Optional, Protocol

from .errors import ExternalDependencyError
from .models import Client, Debt, ReminderIntent, ReminderKind
from .util.money import cents_to_money_str


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Notification:
    recipient: str
    subject: str
    body: str
    debt_id: str


class Notifier(Protocol):
    """Outbound transport (email, push, ...). Returns True when the message was accepted."""

    def send(self, notification: Notification) -> bool: ...


class LoggingNotifier:
    """Transport that only logs; the default when no real transport is wired in."""

    def send(self, notification: Notification) -> bool:
        logger.info(
            "Reminder to=%s debt=%s subject=%r",
            notification.recipient,
            notification.debt_id,
            notification.subject,
        )
        return True


_TITLES = {
    ReminderKind.OVERDUE: "Payment overdue",
    ReminderKind.UPCOMING: "Payment due soon",
    ReminderKind.MANUAL: "Payment reminder",
}


def render_reminder(
    intent: ReminderIntent,
    client: Client,
    debt: Debt,
    *,
    recipient: str,
    sender_name: str = "Accounts Receivable",
) -> Notification:
    title = _TITLES[intent.kind]
    subject = f"{title} - {debt.debt_number} - {client.name}"

    if intent.kind is ReminderKind.OVERDUE:
        lead = f"Debt {debt.debt_number} is {intent.days} day(s) past its due date."
    elif intent.kind is ReminderKind.UPCOMING:
        lead = f"Debt {debt.debt_number} falls due in {intent.days} day(s)."
    else:
        lead = f"This is a reminder about debt {debt.debt_number}."

    lines = [
        f"Dear {client.contact_person or client.name},",
        "",
        lead,
        "",
        f"Description:      {debt.description}",
        f"Original amount:  {cents_to_money_str(debt.total_amount_cents)}",
        f"Amount remaining: {cents_to_money_str(intent.remaining_cents)}",
        f"Due date:         {intent.due_date.isoformat()}",
    ]
    if debt.notes:
        lines += ["", f"Notes: {debt.notes}"]
    lines += ["", f"-- {sender_name}"]
    return Notification(recipient=recipient, subject=subject, body="\n".join(lines), debt_id=debt.id)


class Dispatcher:
    """
    Sends notifications with a per-attempt timeout and bounded retries.

    Sends run on a small worker pool so a hung transport cannot stall the caller past `timeout_s`.
    """

    def __init__(
        self,
        notifier: Notifier,
        *,
        timeout_s: float = 10.0,
        attempts: int = 3,
        base_delay_s: float = 0.25,
        max_delay_s: float = 2.0,
    ) -> None:
        self._notifier = notifier
        self._timeout_s = timeout_s
        self._attempts = max(1, attempts)
        self._base_delay_s = base_delay_s
        self._max_delay_s = max_delay_s
        self._pool = ThreadPoolExecutor(max_workers=4, thread_name_prefix="notify")

    def close(self) -> None:
        self._pool.shutdown(wait=False, cancel_futures=True)

    def send(self, notification: Notification) -> None:
        last_error: Optional[str] = None
        for attempt in range(1, self._attempts + 1):
            future = self._pool.submit(self._notifier.send, notification)
            try:
                if future.result(timeout=self._timeout_s):
                    return
                last_error = "transport rejected the message"
            except FutureTimeout:
                future.cancel()
                last_error = f"timed out after {self._timeout_s:.1f}s"
            except ValueError:
                # Caller/config problem (bad address etc.); retrying will not help.
                raise
            except Exception as e:
                last_error = f"{type(e).__name__}: {e}"

            if attempt >= self._attempts:
                break
            delay = min(self._base_delay_s * (2 ** (attempt - 1)), self._max_delay_s)
            logger.warning(
                "Notification for debt %s failed (attempt %d/%d); retrying in %.2fs. (%s)",
                notification.debt_id,
                attempt,
                self._attempts,
                delay,
                last_error,
            )
            time.sleep(delay)

        raise ExternalDependencyError(
            "notifier",
            f"giving up on debt {notification.debt_id} after {self._attempts} attempt(s): {last_error}",
            committed=True,
        )
