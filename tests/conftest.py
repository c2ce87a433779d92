from __future__ import annotations

import sys
import threading
from datetime import date, datetime, timezone
from pathlib import Path
from typing import Iterator, List

import pytest


ROOT = Path(__file__).resolve().parents[1]
SRC = ROOT / "src"
if str(SRC) not in sys.path:
    sys.path.insert(0, str(SRC))

from debt_tracker.config import AppConfig  # noqa: E402
from debt_tracker.models import Client, ClientType  # noqa: E402
from debt_tracker.notify import Notification  # noqa: E402
from debt_tracker.service import DebtTracker  # noqa: E402
from debt_tracker.store import LedgerStore  # noqa: E402
from debt_tracker.util.dates import FixedClock  # noqa: E402


class RecordingNotifier:
    def __init__(self) -> None:
        self.sent: List[Notification] = []
        self._lock = threading.Lock()

    def send(self, notification: Notification) -> bool:
        with self._lock:
            self.sent.append(notification)
        return True


class FailingNotifier:
    def __init__(self) -> None:
        self.calls = 0

    def send(self, notification: Notification) -> bool:
        self.calls += 1
        raise ConnectionError("smtp relay unreachable")


@pytest.fixture
def clock() -> FixedClock:
    return FixedClock(datetime(2024, 1, 1, 9, 0, tzinfo=timezone.utc))


@pytest.fixture
def store(tmp_path: Path) -> Iterator[LedgerStore]:
    s = LedgerStore(str(tmp_path / "debts.db"))
    try:
        yield s
    finally:
        s.close()


@pytest.fixture
def notifier() -> RecordingNotifier:
    return RecordingNotifier()


@pytest.fixture
def config(tmp_path: Path) -> AppConfig:
    cfg = AppConfig()
    cfg.store.db_path = str(tmp_path / "debts.db")
    cfg.scheduler.retry_base_delay_s = 0.0
    cfg.scheduler.send_timeout_s = 2.0
    return cfg


@pytest.fixture
def tracker(store: LedgerStore, clock: FixedClock, notifier: RecordingNotifier, config: AppConfig) -> Iterator[DebtTracker]:
    t = DebtTracker(store, clock=clock, notifier=notifier, config=config)
    try:
        yield t
    finally:
        t.close()


@pytest.fixture
def client(store: LedgerStore) -> Client:
    return store.create_client(name="Acme S.A.", type=ClientType.COMPANY, email="Billing@Acme.test")


def d(s: str) -> date:
    return date.fromisoformat(s)
