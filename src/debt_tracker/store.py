from __future__ import annotations

import functools
import logging
import re
import shutil
import sqlite3
import threading
import uuid
from contextlib import contextmanager
from datetime import date, datetime, timedelta, timezone
from decimal import Decimal
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional, Tuple, Type, TypeVar

import pydantic

from .errors import ConflictError, ExternalDependencyError, NotFoundError, ValidationError
from .models import (
    Client,
    ClientStatus,
    ClientType,
    Debt,
    DebtPriority,
    DebtStatus,
    Payment,
    PaymentKind,
    PaymentMethod,
    ReminderKind,
    ReminderRecord,
    StatusChange,
)


logger = logging.getLogger(__name__)

M = TypeVar("M", bound=pydantic.BaseModel)

_OPEN_STATUSES = (DebtStatus.PENDING.value, DebtStatus.PARTIAL.value, DebtStatus.OVERDUE.value)

_CLIENT_EDITABLE = {
    "name",
    "type",
    "status",
    "email",
    "phone",
    "tax_id",
    "contact_person",
    "notes",
    "credit_limit_cents",
    "payment_terms_days",
}

_DEBT_AMENDABLE = {
    "description",
    "total_amount_cents",
    "interest_rate",
    "due_date",
    "payment_terms_days",
    "priority",
    "email_notifications",
    "notes",
}


def _utcnow() -> str:
    return datetime.now(timezone.utc).isoformat()


@functools.lru_cache(maxsize=64)
def _compile_search(pattern: str) -> "re.Pattern[str]":
    return re.compile(pattern, re.IGNORECASE)


def _regexp(pattern: str, value: Optional[str]) -> bool:
    # sqlite rewrites `X REGEXP Y` as regexp(Y, X).
    return value is not None and _compile_search(pattern).search(value) is not None


def _build(model: Type[M], **data: Any) -> M:
    try:
        return model(**data)
    except pydantic.ValidationError as e:
        raise ValidationError(f"invalid {model.__name__.lower()}: {e}") from e


class LedgerStore:
    """
    Durable record of clients, debts, payments and reminder records (sqlite, WAL mode).

    Every thread gets its own connection. Writes run inside `BEGIN IMMEDIATE` so a version check and the
    write it guards are atomic; debts carry a `version` counter for optimistic concurrency.
    """

    def __init__(self, db_path: str, *, busy_timeout_s: float = 5.0) -> None:
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._backup_path = self.db_path.with_name(self.db_path.name + ".bak")
        self._busy_timeout_s = busy_timeout_s

        self._local = threading.local()
        self._conns: List[sqlite3.Connection] = []
        self._conns_lock = threading.Lock()

        conn = self._open_ledger()
        self._adopt(conn)
        self._ensure_schema(conn)
        if not self._backup_path.exists():
            self._try_backup()

    # ------------------------------------------------------------------
    # connections

    def _connect(self) -> sqlite3.Connection:
        return sqlite3.connect(
            self.db_path,
            timeout=self._busy_timeout_s,
            isolation_level=None,  # explicit BEGIN/COMMIT below
            check_same_thread=False,
        )

    def _adopt(self, conn: sqlite3.Connection) -> None:
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA journal_mode=WAL;")
        conn.execute("PRAGMA foreign_keys=ON;")
        conn.create_function("REGEXP", 2, _regexp, deterministic=True)
        self._local.conn = conn
        with self._conns_lock:
            self._conns.append(conn)

    @property
    def _conn(self) -> sqlite3.Connection:
        conn = getattr(self._local, "conn", None)
        if conn is None:
            try:
                conn = self._connect()
            except sqlite3.Error as e:
                raise ExternalDependencyError("store", f"cannot open {self.db_path}: {e}", committed=False) from e
            self._adopt(conn)
        return conn

    def close(self) -> None:
        with self._conns_lock:
            conns, self._conns = self._conns, []
        for conn in conns:
            try:
                conn.close()
            except sqlite3.Error:
                logger.debug("Failed to close connection", exc_info=True)
        self._local = threading.local()

    # ------------------------------------------------------------------
    # damaged ledger recovery

    def _open_ledger(self) -> sqlite3.Connection:
        """
        Open the ledger file, falling back to the `.bak` snapshot when the file is damaged.

        A damaged file is renamed to `<name>.corrupt-<utc stamp>` (with its -wal/-shm files) and kept for
        inspection. With no usable snapshot the tracker starts from an empty ledger.
        """
        if not self.db_path.exists():
            return self._connect()

        conn = self._checked_connection()
        if conn is not None:
            return conn

        logger.warning("Ledger %s failed its integrity check; setting it aside", self.db_path)
        self._set_aside_damaged_files()
        conn = self._restore_from_snapshot()
        return conn if conn is not None else self._connect()

    def _checked_connection(self) -> Optional[sqlite3.Connection]:
        try:
            conn = self._connect()
        except sqlite3.Error:
            return None
        if self._passes_quick_check(conn):
            return conn
        conn.close()
        return None

    @staticmethod
    def _passes_quick_check(conn: sqlite3.Connection) -> bool:
        try:
            # Reading the schema cookie is what trips on a file that is not sqlite at all.
            conn.execute("PRAGMA schema_version;").fetchone()
            row = conn.execute("PRAGMA quick_check;").fetchone()
        except sqlite3.Error:
            return False
        return bool(row) and row[0] == "ok"

    def _set_aside_damaged_files(self) -> None:
        suffix = ".corrupt-" + datetime.now(timezone.utc).strftime("%Y%m%dT%H%M%SZ")
        for extra in ("", "-wal", "-shm"):
            path = Path(str(self.db_path) + extra)
            if not path.exists():
                continue
            try:
                path.replace(path.with_name(path.name + suffix))
            except OSError:
                logger.debug("Could not move damaged ledger file %s", path, exc_info=True)

    def _restore_from_snapshot(self) -> Optional[sqlite3.Connection]:
        if not self._backup_path.exists():
            logger.warning("No ledger snapshot at %s; starting from an empty ledger", self._backup_path)
            return None
        try:
            shutil.copy2(self._backup_path, self.db_path)
        except OSError:
            logger.warning("Copying ledger snapshot %s failed; starting empty", self._backup_path, exc_info=True)
            return None
        conn = self._checked_connection()
        if conn is None:
            logger.warning("Ledger snapshot %s is damaged too; starting from an empty ledger", self._backup_path)
            return None
        logger.warning("Ledger restored from snapshot %s", self._backup_path)
        return conn

    def _try_backup(self) -> None:
        try:
            self.backup()
        except (OSError, sqlite3.Error):
            logger.debug("Ledger snapshot not written", exc_info=True)

    def backup(self) -> None:
        """Snapshot the ledger to `<db_path>.bak` through a temp file, so a crash never leaves half a snapshot."""
        tmp = self._backup_path.with_name(self._backup_path.name + ".tmp")
        tmp.unlink(missing_ok=True)
        dst = sqlite3.connect(tmp)
        try:
            self._conn.backup(dst)
            dst.commit()
        finally:
            dst.close()
        tmp.replace(self._backup_path)

    @contextmanager
    def _write(self) -> Iterator[sqlite3.Connection]:
        conn = self._conn
        try:
            conn.execute("BEGIN IMMEDIATE;")
        except sqlite3.Error as e:
            raise ExternalDependencyError("store", f"could not start write: {e}", committed=False) from e
        try:
            yield conn
            conn.execute("COMMIT;")
        except BaseException as e:
            try:
                conn.execute("ROLLBACK;")
            except sqlite3.Error:
                logger.debug("Rollback failed", exc_info=True)
            if isinstance(e, sqlite3.Error):
                raise ExternalDependencyError("store", str(e), committed=False) from e
            raise

    def _ensure_schema(self, conn: sqlite3.Connection) -> None:
        conn.executescript(
            """
            CREATE TABLE IF NOT EXISTS clients (
              id TEXT PRIMARY KEY,
              name TEXT NOT NULL,
              type TEXT NOT NULL,
              status TEXT NOT NULL,
              email TEXT NOT NULL DEFAULT '',
              phone TEXT NOT NULL DEFAULT '',
              tax_id TEXT NOT NULL DEFAULT '',
              contact_person TEXT NOT NULL DEFAULT '',
              notes TEXT NOT NULL DEFAULT '',
              credit_limit_cents INTEGER NOT NULL DEFAULT 0 CHECK (credit_limit_cents >= 0),
              payment_terms_days INTEGER NOT NULL DEFAULT 30 CHECK (payment_terms_days > 0),
              created_by TEXT NOT NULL DEFAULT '',
              created_at TEXT NOT NULL
            );

            CREATE TABLE IF NOT EXISTS debts (
              seq INTEGER PRIMARY KEY AUTOINCREMENT,
              id TEXT NOT NULL UNIQUE,
              debt_number TEXT NOT NULL UNIQUE,
              client_id TEXT NOT NULL REFERENCES clients(id),
              description TEXT NOT NULL,
              total_amount_cents INTEGER NOT NULL CHECK (total_amount_cents > 0),
              interest_rate TEXT NOT NULL DEFAULT '0',
              issue_date TEXT NOT NULL,
              due_date TEXT NOT NULL,
              payment_terms_days INTEGER NOT NULL,
              priority TEXT NOT NULL,
              status TEXT NOT NULL,
              email_notifications INTEGER NOT NULL DEFAULT 1,
              notes TEXT NOT NULL DEFAULT '',
              cancelled_reason TEXT NOT NULL DEFAULT '',
              created_by TEXT NOT NULL DEFAULT '',
              version INTEGER NOT NULL DEFAULT 1,
              created_at TEXT NOT NULL,
              updated_at TEXT NOT NULL
            );
            CREATE INDEX IF NOT EXISTS idx_debts_client ON debts(client_id);
            CREATE INDEX IF NOT EXISTS idx_debts_status_due ON debts(status, due_date);

            CREATE TABLE IF NOT EXISTS payments (
              seq INTEGER PRIMARY KEY AUTOINCREMENT,
              id TEXT NOT NULL UNIQUE,
              payment_number TEXT NOT NULL UNIQUE,
              debt_id TEXT NOT NULL REFERENCES debts(id),
              kind TEXT NOT NULL,
              amount_cents INTEGER NOT NULL CHECK (amount_cents <> 0),
              payment_date TEXT NOT NULL,
              method TEXT,
              notes TEXT NOT NULL DEFAULT '',
              recorded_by TEXT NOT NULL DEFAULT '',
              recorded_on TEXT,
              created_at TEXT NOT NULL
            );
            CREATE INDEX IF NOT EXISTS idx_payments_debt ON payments(debt_id);

            CREATE TABLE IF NOT EXISTS reminder_records (
              debt_id TEXT NOT NULL,
              reminder_date TEXT NOT NULL,
              kind TEXT NOT NULL,
              channel TEXT NOT NULL,
              sent_at TEXT NOT NULL,
              delivered INTEGER,
              error TEXT NOT NULL DEFAULT '',
              PRIMARY KEY (debt_id, reminder_date)
            );

            CREATE TABLE IF NOT EXISTS status_changes (
              id INTEGER PRIMARY KEY AUTOINCREMENT,
              debt_id TEXT NOT NULL,
              old_status TEXT NOT NULL,
              new_status TEXT NOT NULL,
              changed_at TEXT NOT NULL,
              actor TEXT NOT NULL,
              reason TEXT NOT NULL DEFAULT ''
            );
            CREATE INDEX IF NOT EXISTS idx_status_changes_debt ON status_changes(debt_id);

            CREATE TABLE IF NOT EXISTS scheduler_ticks (
              id INTEGER PRIMARY KEY AUTOINCREMENT,
              started_at TEXT NOT NULL,
              finished_at TEXT,
              ok INTEGER,
              message TEXT
            );
            """
        )

        # Ledgers written before payments tracked their entry day.
        cols = {row[1] for row in conn.execute("PRAGMA table_info(payments);").fetchall()}
        if "recorded_on" not in cols:
            conn.execute("ALTER TABLE payments ADD COLUMN recorded_on TEXT;")

    # ------------------------------------------------------------------
    # row mapping

    @staticmethod
    def _row_to_client(row: sqlite3.Row) -> Client:
        return Client(
            id=row["id"],
            name=row["name"],
            type=ClientType(row["type"]),
            status=ClientStatus(row["status"]),
            email=row["email"],
            phone=row["phone"],
            tax_id=row["tax_id"],
            contact_person=row["contact_person"],
            notes=row["notes"],
            credit_limit_cents=row["credit_limit_cents"],
            payment_terms_days=row["payment_terms_days"],
            created_by=row["created_by"],
            created_at=datetime.fromisoformat(row["created_at"]),
        )

    @staticmethod
    def _row_to_debt(row: sqlite3.Row) -> Debt:
        return Debt(
            id=row["id"],
            debt_number=row["debt_number"],
            client_id=row["client_id"],
            description=row["description"],
            total_amount_cents=row["total_amount_cents"],
            interest_rate=Decimal(row["interest_rate"]),
            issue_date=date.fromisoformat(row["issue_date"]),
            due_date=date.fromisoformat(row["due_date"]),
            payment_terms_days=row["payment_terms_days"],
            priority=DebtPriority(row["priority"]),
            status=DebtStatus(row["status"]),
            email_notifications=bool(row["email_notifications"]),
            notes=row["notes"],
            cancelled_reason=row["cancelled_reason"],
            created_by=row["created_by"],
            version=row["version"],
        )

    @staticmethod
    def _row_to_payment(row: sqlite3.Row) -> Payment:
        return Payment(
            id=row["id"],
            payment_number=row["payment_number"],
            debt_id=row["debt_id"],
            kind=PaymentKind(row["kind"]),
            amount_cents=row["amount_cents"],
            payment_date=date.fromisoformat(row["payment_date"]),
            method=PaymentMethod(row["method"]) if row["method"] else None,
            notes=row["notes"],
            recorded_by=row["recorded_by"],
            recorded_on=date.fromisoformat(row["recorded_on"]) if row["recorded_on"] else None,
            created_at=datetime.fromisoformat(row["created_at"]),
        )

    @staticmethod
    def _row_to_reminder(row: sqlite3.Row) -> ReminderRecord:
        delivered = row["delivered"]
        return ReminderRecord(
            debt_id=row["debt_id"],
            reminder_date=date.fromisoformat(row["reminder_date"]),
            kind=ReminderKind(row["kind"]),
            channel=row["channel"],
            sent_at=datetime.fromisoformat(row["sent_at"]),
            delivered=None if delivered is None else bool(delivered),
            error=row["error"],
        )

    # ------------------------------------------------------------------
    # clients

    def create_client(
        self,
        *,
        name: str,
        type: ClientType,
        status: ClientStatus = ClientStatus.ACTIVE,
        email: str = "",
        phone: str = "",
        tax_id: str = "",
        contact_person: str = "",
        notes: str = "",
        credit_limit_cents: int = 0,
        payment_terms_days: int = 30,
        created_by: str = "",
    ) -> Client:
        if not (name or "").strip():
            raise ValidationError("client name is required")
        client = _build(
            Client,
            id=uuid.uuid4().hex,
            name=name.strip(),
            type=type,
            status=status,
            email=(email or "").strip().lower(),
            phone=phone,
            tax_id=tax_id,
            contact_person=contact_person,
            notes=notes,
            credit_limit_cents=credit_limit_cents,
            payment_terms_days=payment_terms_days,
            created_by=created_by,
            created_at=datetime.now(timezone.utc),
        )
        with self._write() as conn:
            conn.execute(
                """
                INSERT INTO clients(
                  id, name, type, status, email, phone, tax_id, contact_person, notes,
                  credit_limit_cents, payment_terms_days, created_by, created_at
                )
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?);
                """,
                (
                    client.id,
                    client.name,
                    client.type.value,
                    client.status.value,
                    client.email,
                    client.phone,
                    client.tax_id,
                    client.contact_person,
                    client.notes,
                    client.credit_limit_cents,
                    client.payment_terms_days,
                    client.created_by,
                    client.created_at.isoformat(),
                ),
            )
        logger.info("Created client id=%s name=%r type=%s", client.id, client.name, client.type.value)
        return client

    def get_client(self, client_id: str) -> Client:
        row = self._conn.execute("SELECT * FROM clients WHERE id = ?;", (client_id,)).fetchone()
        if row is None:
            raise NotFoundError("client", client_id)
        return self._row_to_client(row)

    def list_clients(self, *, status: Optional[ClientStatus] = None) -> List[Client]:
        if status is None:
            rows = self._conn.execute("SELECT * FROM clients ORDER BY name;").fetchall()
        else:
            rows = self._conn.execute(
                "SELECT * FROM clients WHERE status = ? ORDER BY name;", (status.value,)
            ).fetchall()
        return [self._row_to_client(r) for r in rows]

    def update_client(self, client_id: str, **fields: Any) -> Client:
        unknown = set(fields) - _CLIENT_EDITABLE
        if unknown:
            raise ValidationError(f"client fields not editable: {sorted(unknown)}")
        current = self.get_client(client_id)
        updated = _build(Client, **{**current.model_dump(), **fields})
        with self._write() as conn:
            conn.execute(
                """
                UPDATE clients SET
                  name = ?, type = ?, status = ?, email = ?, phone = ?, tax_id = ?, contact_person = ?,
                  notes = ?, credit_limit_cents = ?, payment_terms_days = ?
                WHERE id = ?;
                """,
                (
                    updated.name,
                    updated.type.value,
                    updated.status.value,
                    updated.email,
                    updated.phone,
                    updated.tax_id,
                    updated.contact_person,
                    updated.notes,
                    updated.credit_limit_cents,
                    updated.payment_terms_days,
                    client_id,
                ),
            )
        if updated.status != current.status:
            logger.info("Client %s status %s -> %s", client_id, current.status.value, updated.status.value)
        return updated

    def delete_client(self, client_id: str) -> None:
        with self._write() as conn:
            if conn.execute("SELECT 1 FROM clients WHERE id = ?;", (client_id,)).fetchone() is None:
                raise NotFoundError("client", client_id)
            (n,) = conn.execute("SELECT COUNT(*) FROM debts WHERE client_id = ?;", (client_id,)).fetchone()
            if n:
                raise ValidationError(f"client {client_id} still has {n} debt(s); reassign or delete them first")
            conn.execute("DELETE FROM clients WHERE id = ?;", (client_id,))
        logger.info("Deleted client id=%s", client_id)

    # ------------------------------------------------------------------
    # debts

    def create_debt(
        self,
        *,
        client_id: str,
        description: str,
        total_amount_cents: int,
        issue_date: date,
        due_date: Optional[date] = None,
        interest_rate: Decimal = Decimal("0"),
        payment_terms_days: Optional[int] = None,
        priority: DebtPriority = DebtPriority.MEDIUM,
        email_notifications: bool = True,
        notes: str = "",
        created_by: str = "",
    ) -> Debt:
        if not (description or "").strip():
            raise ValidationError("debt description is required")
        if total_amount_cents <= 0:
            raise ValidationError("debt total amount must be positive")

        client = self.get_client(client_id)
        if client.status is ClientStatus.BLOCKED:
            raise ValidationError(f"client {client_id} is blocked; new debts are not accepted")

        terms = payment_terms_days or client.payment_terms_days
        if due_date is None:
            due_date = issue_date + timedelta(days=terms)

        debt_id = uuid.uuid4().hex
        debt = _build(
            Debt,
            id=debt_id,
            debt_number=debt_id,  # replaced with DEBT-NNNNNN once the row sequence is known
            client_id=client_id,
            description=description.strip(),
            total_amount_cents=total_amount_cents,
            interest_rate=Decimal(str(interest_rate)),
            issue_date=issue_date,
            due_date=due_date,
            payment_terms_days=terms,
            priority=priority,
            status=DebtStatus.PENDING,
            email_notifications=email_notifications,
            notes=notes,
            created_by=created_by,
            version=1,
        )
        now = _utcnow()
        with self._write() as conn:
            cur = conn.execute(
                """
                INSERT INTO debts(
                  id, debt_number, client_id, description, total_amount_cents, interest_rate, issue_date,
                  due_date, payment_terms_days, priority, status, email_notifications, notes, created_by,
                  version, created_at, updated_at
                )
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?);
                """,
                (
                    debt.id,
                    debt.debt_number,
                    debt.client_id,
                    debt.description,
                    debt.total_amount_cents,
                    str(debt.interest_rate),
                    debt.issue_date.isoformat(),
                    debt.due_date.isoformat(),
                    debt.payment_terms_days,
                    debt.priority.value,
                    debt.status.value,
                    1 if debt.email_notifications else 0,
                    debt.notes,
                    debt.created_by,
                    debt.version,
                    now,
                    now,
                ),
            )
            number = f"DEBT-{int(cur.lastrowid):06d}"
            conn.execute("UPDATE debts SET debt_number = ? WHERE id = ?;", (number, debt.id))
        debt = debt.model_copy(update={"debt_number": number})
        logger.info(
            "Created debt %s id=%s client=%s total_cents=%d due=%s",
            number,
            debt.id,
            client_id,
            debt.total_amount_cents,
            debt.due_date.isoformat(),
        )
        return debt

    def get_debt(self, debt_id: str) -> Debt:
        row = self._conn.execute("SELECT * FROM debts WHERE id = ?;", (debt_id,)).fetchone()
        if row is None:
            raise NotFoundError("debt", debt_id)
        return self._row_to_debt(row)

    def get_debt_by_number(self, debt_number: str) -> Debt:
        row = self._conn.execute("SELECT * FROM debts WHERE debt_number = ?;", (debt_number,)).fetchone()
        if row is None:
            raise NotFoundError("debt", debt_number)
        return self._row_to_debt(row)

    def list_debts(self, *, status: Optional[DebtStatus] = None) -> List[Debt]:
        if status is None:
            rows = self._conn.execute("SELECT * FROM debts ORDER BY seq;").fetchall()
        else:
            rows = self._conn.execute("SELECT * FROM debts WHERE status = ? ORDER BY seq;", (status.value,)).fetchall()
        return [self._row_to_debt(r) for r in rows]

    def list_debts_by_client(self, client_id: str) -> List[Debt]:
        rows = self._conn.execute("SELECT * FROM debts WHERE client_id = ? ORDER BY seq;", (client_id,)).fetchall()
        return [self._row_to_debt(r) for r in rows]

    def list_open_debts(self) -> List[Debt]:
        rows = self._conn.execute(
            "SELECT * FROM debts WHERE status IN (?, ?, ?) ORDER BY due_date, seq;", _OPEN_STATUSES
        ).fetchall()
        return [self._row_to_debt(r) for r in rows]

    def list_overdue_debts(self, as_of: date) -> List[Debt]:
        """
        Open debts whose due date is before `as_of`.

        Persisted status is only a cache, so this is a candidate list; callers re-derive before trusting it.
        """
        rows = self._conn.execute(
            "SELECT * FROM debts WHERE status IN (?, ?, ?) AND due_date < ? ORDER BY due_date, seq;",
            (*_OPEN_STATUSES, as_of.isoformat()),
        ).fetchall()
        return [self._row_to_debt(r) for r in rows]

    def list_due_between(self, start: date, end: date) -> List[Debt]:
        rows = self._conn.execute(
            "SELECT * FROM debts WHERE status IN (?, ?, ?) AND due_date BETWEEN ? AND ? ORDER BY due_date, seq;",
            (*_OPEN_STATUSES, start.isoformat(), end.isoformat()),
        ).fetchall()
        return [self._row_to_debt(r) for r in rows]

    def search_debts(
        self,
        *,
        status: Optional[DebtStatus] = None,
        priority: Optional[DebtPriority] = None,
        client_id: Optional[str] = None,
        overdue_as_of: Optional[date] = None,
        search: Optional[str] = None,
        page: int = 1,
        limit: int = 10,
    ) -> Tuple[List[Debt], int]:
        """
        Filtered, paginated debt listing, newest first. Returns `(debts_on_page, total_matching)`.

        `search` is a case-insensitive regular expression matched against the debt number, description
        and notes. `overdue_as_of` keeps open debts whose due date is before that day (a cached-status
        candidate list, like `list_overdue_debts`).
        """
        if page < 1:
            raise ValidationError("page must be >= 1")
        if limit < 1:
            raise ValidationError("limit must be >= 1")

        clauses: List[str] = []
        params: List[Any] = []
        if status is not None:
            clauses.append("status = ?")
            params.append(status.value)
        if priority is not None:
            clauses.append("priority = ?")
            params.append(priority.value)
        if client_id:
            clauses.append("client_id = ?")
            params.append(client_id)
        if overdue_as_of is not None:
            clauses.append("status IN (?, ?, ?) AND due_date < ?")
            params.extend([*_OPEN_STATUSES, overdue_as_of.isoformat()])
        if search:
            try:
                _compile_search(search)
            except re.error as e:
                raise ValidationError(f"invalid search pattern {search!r}: {e}") from e
            clauses.append("(debt_number REGEXP ? OR description REGEXP ? OR notes REGEXP ?)")
            params.extend([search, search, search])

        where = (" WHERE " + " AND ".join(clauses)) if clauses else ""
        (total,) = self._conn.execute(f"SELECT COUNT(*) FROM debts{where};", params).fetchone()
        rows = self._conn.execute(
            f"SELECT * FROM debts{where} ORDER BY seq DESC LIMIT ? OFFSET ?;",
            [*params, limit, (page - 1) * limit],
        ).fetchall()
        return [self._row_to_debt(r) for r in rows], int(total)

    def _check_version(self, conn: sqlite3.Connection, debt_id: str, expected_version: int) -> None:
        row = conn.execute("SELECT version FROM debts WHERE id = ?;", (debt_id,)).fetchone()
        if row is None:
            raise NotFoundError("debt", debt_id)
        if int(row["version"]) != expected_version:
            raise ConflictError(debt_id, expected_version, int(row["version"]))

    def _insert_status_change(self, conn: sqlite3.Connection, change: StatusChange) -> None:
        conn.execute(
            """
            INSERT INTO status_changes(debt_id, old_status, new_status, changed_at, actor, reason)
            VALUES (?, ?, ?, ?, ?, ?);
            """,
            (
                change.debt_id,
                change.old_status.value,
                change.new_status.value,
                change.changed_at.isoformat(),
                change.actor,
                change.reason,
            ),
        )

    def _bump(
        self,
        conn: sqlite3.Connection,
        debt_id: str,
        expected_version: int,
        change: Optional[StatusChange],
        extra: Optional[Dict[str, Any]] = None,
    ) -> int:
        sets = ["version = version + 1", "updated_at = ?"]
        params: List[Any] = [_utcnow()]
        if change is not None:
            sets.append("status = ?")
            params.append(change.new_status.value)
            self._insert_status_change(conn, change)
        for col, value in (extra or {}).items():
            sets.append(f"{col} = ?")
            params.append(value)
        params.extend([debt_id, expected_version])
        cur = conn.execute(f"UPDATE debts SET {', '.join(sets)} WHERE id = ? AND version = ?;", params)
        if cur.rowcount != 1:
            # Unreachable while the write lock is held, but never report success on a lost update.
            raise ConflictError(debt_id, expected_version, None)
        return expected_version + 1

    def append_payment(
        self,
        *,
        debt_id: str,
        amount_cents: int,
        payment_date: date,
        expected_version: int,
        kind: PaymentKind = PaymentKind.PAYMENT,
        method: Optional[PaymentMethod] = None,
        notes: str = "",
        recorded_by: str = "",
        recorded_on: Optional[date] = None,
        change: Optional[StatusChange] = None,
    ) -> Tuple[Payment, int]:
        """
        Append a payment and (optionally) a status transition in one transaction.

        Raises ConflictError, writing nothing, if the debt's version moved since the caller read it.
        Returns the stored payment and the debt's new version.
        """
        if amount_cents == 0:
            raise ValidationError("payment amount must be non-zero")
        payment_id = uuid.uuid4().hex
        now = datetime.now(timezone.utc)
        with self._write() as conn:
            self._check_version(conn, debt_id, expected_version)
            cur = conn.execute(
                """
                INSERT INTO payments(
                  id, payment_number, debt_id, kind, amount_cents, payment_date, method, notes, recorded_by, recorded_on,
                  created_at
                )
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?);
                """,
                (
                    payment_id,
                    payment_id,
                    debt_id,
                    kind.value,
                    amount_cents,
                    payment_date.isoformat(),
                    method.value if method else None,
                    notes,
                    recorded_by,
                    recorded_on.isoformat() if recorded_on else None,
                    now.isoformat(),
                ),
            )
            number = f"DP-{int(cur.lastrowid):06d}"
            conn.execute("UPDATE payments SET payment_number = ? WHERE id = ?;", (number, payment_id))
            version = self._bump(conn, debt_id, expected_version, change)

        payment = Payment(
            id=payment_id,
            payment_number=number,
            debt_id=debt_id,
            kind=kind,
            amount_cents=amount_cents,
            payment_date=payment_date,
            method=method,
            notes=notes,
            recorded_by=recorded_by,
            recorded_on=recorded_on,
            created_at=now,
        )
        return payment, version

    def write_status(
        self,
        debt_id: str,
        *,
        expected_version: int,
        change: StatusChange,
        cancelled_reason: Optional[str] = None,
    ) -> int:
        extra = {"cancelled_reason": cancelled_reason} if cancelled_reason is not None else None
        with self._write() as conn:
            self._check_version(conn, debt_id, expected_version)
            return self._bump(conn, debt_id, expected_version, change, extra)

    def amend_debt(
        self,
        debt_id: str,
        *,
        expected_version: int,
        fields: Dict[str, Any],
        change: Optional[StatusChange] = None,
    ) -> Debt:
        unknown = set(fields) - _DEBT_AMENDABLE
        if unknown:
            raise ValidationError(f"debt fields not amendable: {sorted(unknown)}")

        columns: Dict[str, Any] = {}
        for key, value in fields.items():
            if isinstance(value, (date, Decimal)):
                value = value.isoformat() if isinstance(value, date) else str(value)
            elif isinstance(value, DebtPriority):
                value = value.value
            elif isinstance(value, bool):
                value = 1 if value else 0
            columns[key] = value

        with self._write() as conn:
            self._check_version(conn, debt_id, expected_version)
            self._bump(conn, debt_id, expected_version, change, columns)
        return self.get_debt(debt_id)

    def reassign_debt(self, debt_id: str, *, client_id: str, expected_version: int) -> Debt:
        self.get_client(client_id)
        with self._write() as conn:
            self._check_version(conn, debt_id, expected_version)
            self._bump(conn, debt_id, expected_version, None, {"client_id": client_id})
        logger.info("Reassigned debt %s to client %s", debt_id, client_id)
        return self.get_debt(debt_id)

    def delete_debt(self, debt_id: str) -> None:
        with self._write() as conn:
            if conn.execute("SELECT 1 FROM debts WHERE id = ?;", (debt_id,)).fetchone() is None:
                raise NotFoundError("debt", debt_id)
            (n,) = conn.execute("SELECT COUNT(*) FROM payments WHERE debt_id = ?;", (debt_id,)).fetchone()
            if n:
                raise ValidationError(f"debt {debt_id} has {n} recorded payment(s) and cannot be deleted")
            conn.execute("DELETE FROM reminder_records WHERE debt_id = ?;", (debt_id,))
            conn.execute("DELETE FROM status_changes WHERE debt_id = ?;", (debt_id,))
            conn.execute("DELETE FROM debts WHERE id = ?;", (debt_id,))
        logger.info("Deleted debt id=%s", debt_id)

    # ------------------------------------------------------------------
    # payments

    def list_payments(self, debt_id: str) -> List[Payment]:
        rows = self._conn.execute(
            "SELECT * FROM payments WHERE debt_id = ? ORDER BY payment_date, seq;", (debt_id,)
        ).fetchall()
        return [self._row_to_payment(r) for r in rows]

    def payments_by_debt(self) -> Dict[str, List[Payment]]:
        out: Dict[str, List[Payment]] = {}
        for row in self._conn.execute("SELECT * FROM payments ORDER BY payment_date, seq;").fetchall():
            out.setdefault(row["debt_id"], []).append(self._row_to_payment(row))
        return out

    # ------------------------------------------------------------------
    # reminders + audit

    def insert_reminder_if_absent(self, record: ReminderRecord) -> bool:
        """
        Atomic insert-if-absent on (debt_id, reminder_date).

        Returns True if this call created the record, False if one already existed.
        """
        with self._write() as conn:
            cur = conn.execute(
                """
                INSERT OR IGNORE INTO reminder_records(debt_id, reminder_date, kind, channel, sent_at, delivered, error)
                VALUES (?, ?, ?, ?, ?, NULL, '');
                """,
                (
                    record.debt_id,
                    record.reminder_date.isoformat(),
                    record.kind.value,
                    record.channel,
                    record.sent_at.isoformat(),
                ),
            )
            return cur.rowcount == 1

    def mark_reminder_result(self, debt_id: str, day: date, *, delivered: bool, error: str = "") -> None:
        with self._write() as conn:
            conn.execute(
                """
                UPDATE reminder_records SET delivered = ?, error = ?
                WHERE debt_id = ? AND reminder_date = ? AND delivered IS NULL;
                """,
                (1 if delivered else 0, error, debt_id, day.isoformat()),
            )

    def list_reminders(
        self,
        *,
        day: Optional[date] = None,
        debt_id: Optional[str] = None,
        since: Optional[date] = None,
        until: Optional[date] = None,
    ) -> List[ReminderRecord]:
        sql = "SELECT * FROM reminder_records"
        clauses: List[str] = []
        params: List[Any] = []
        if day is not None:
            clauses.append("reminder_date = ?")
            params.append(day.isoformat())
        if since is not None:
            clauses.append("reminder_date >= ?")
            params.append(since.isoformat())
        if until is not None:
            clauses.append("reminder_date <= ?")
            params.append(until.isoformat())
        if debt_id is not None:
            clauses.append("debt_id = ?")
            params.append(debt_id)
        if clauses:
            sql += " WHERE " + " AND ".join(clauses)
        sql += " ORDER BY reminder_date, debt_id;"
        return [self._row_to_reminder(r) for r in self._conn.execute(sql, params).fetchall()]

    def list_status_changes(self, debt_id: str) -> List[StatusChange]:
        rows = self._conn.execute(
            "SELECT * FROM status_changes WHERE debt_id = ? ORDER BY id;", (debt_id,)
        ).fetchall()
        return [
            StatusChange(
                debt_id=r["debt_id"],
                old_status=DebtStatus(r["old_status"]),
                new_status=DebtStatus(r["new_status"]),
                changed_at=datetime.fromisoformat(r["changed_at"]),
                actor=r["actor"],
                reason=r["reason"],
            )
            for r in rows
        ]

    def record_tick_start(self) -> int:
        with self._write() as conn:
            cur = conn.execute("INSERT INTO scheduler_ticks(started_at) VALUES (?);", (_utcnow(),))
            return int(cur.lastrowid)

    def record_tick_finish(self, tick_id: int, *, ok: bool, message: Optional[str] = None) -> None:
        with self._write() as conn:
            conn.execute(
                "UPDATE scheduler_ticks SET finished_at = ?, ok = ?, message = ? WHERE id = ?;",
                (_utcnow(), 1 if ok else 0, message, tick_id),
            )

        # A failed tick may have left odd state behind; keep the previous snapshot.
        if ok:
            self._try_backup()
