"""SQLite persistence for budget periods, allocations and transactions.

``BudgetStore`` plays the role of the document store the lifecycle manager
talks to.  Reads go through short-lived connections; every mutation runs
inside :meth:`BudgetStore.atomic`, a ``BEGIN IMMEDIATE`` unit that either
commits as a whole or rolls back.  Period rows carry a ``version`` counter
that every aggregate update checks and bumps, so a writer working from a
stale read fails with :class:`ConflictError` and the unit is retried from
scratch a bounded number of times.
"""

from __future__ import annotations

import json
import logging
import sqlite3
import threading
import time
import uuid
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path
from typing import Any, Callable, Dict, Iterator, List, Optional, Tuple, TypeVar, Union

import pandas as pd

from .config import DB_PATH, MAX_COMMIT_ATTEMPTS, PAGE_SIZE, RETRY_BACKOFF_SECONDS
from .errors import ConflictError, InvariantError, NotFoundError, PersistenceError
from .models import (
    STATUS_ACTIVE,
    STATUS_CLOSED,
    BudgetAllocation,
    BudgetPeriod,
    IncomeEntry,
    Transaction,
    TransactionPage,
)

logger = logging.getLogger(__name__)

T = TypeVar('T')
ActivePeriodListener = Callable[[Optional[BudgetPeriod], List[BudgetAllocation]], None]

SCHEMA_SQL = """
PRAGMA journal_mode=WAL;
PRAGMA synchronous=NORMAL;

CREATE TABLE IF NOT EXISTS budget_periods (
    id TEXT PRIMARY KEY,
    user_id TEXT NOT NULL,
    start_date TEXT NOT NULL,
    end_date TEXT NOT NULL,
    status TEXT NOT NULL CHECK (status IN ('active', 'closed')),
    total_income REAL NOT NULL DEFAULT 0,
    income_breakdown TEXT NOT NULL DEFAULT '[]',
    rollover_in REAL NOT NULL DEFAULT 0,
    rollover_out REAL NOT NULL DEFAULT 0,
    total_allocated REAL NOT NULL DEFAULT 0,
    total_spent REAL NOT NULL DEFAULT 0,
    remaining_budget REAL NOT NULL DEFAULT 0,
    version INTEGER NOT NULL DEFAULT 0,
    created_at TEXT,
    updated_at TEXT
);

CREATE UNIQUE INDEX IF NOT EXISTS ux_one_active_period
ON budget_periods (user_id) WHERE status = 'active';

CREATE INDEX IF NOT EXISTS ix_period_user_end ON budget_periods (user_id, end_date);

CREATE TABLE IF NOT EXISTS budget_allocations (
    id TEXT PRIMARY KEY,
    period_id TEXT NOT NULL REFERENCES budget_periods (id) ON DELETE CASCADE,
    category_id TEXT NOT NULL,
    category_name TEXT NOT NULL,
    category_color TEXT,
    budgeted_amount REAL NOT NULL DEFAULT 0,
    spent_amount REAL NOT NULL DEFAULT 0,
    remaining_amount REAL NOT NULL DEFAULT 0,
    note TEXT,
    created_at TEXT,
    updated_at TEXT
);

CREATE INDEX IF NOT EXISTS ix_alloc_period_category ON budget_allocations (period_id, category_id);

CREATE TABLE IF NOT EXISTS transactions (
    id TEXT PRIMARY KEY,
    user_id TEXT NOT NULL,
    period_id TEXT NOT NULL,
    category_id TEXT NOT NULL,
    category_name TEXT NOT NULL,
    type TEXT NOT NULL CHECK (type IN ('expense', 'income')),
    amount REAL NOT NULL CHECK (amount > 0),
    description TEXT,
    date TEXT NOT NULL,
    recurring_transaction_id TEXT,
    created_at TEXT,
    updated_at TEXT
);

CREATE INDEX IF NOT EXISTS ix_txn_user_date ON transactions (user_id, date);
CREATE INDEX IF NOT EXISTS ix_txn_period ON transactions (period_id);
CREATE INDEX IF NOT EXISTS ix_txn_category ON transactions (category_id);
"""

_PERIOD_COLUMNS = (
    "id, user_id, start_date, end_date, status, total_income, income_breakdown, rollover_in, "
    "rollover_out, total_allocated, total_spent, remaining_budget, version, created_at, updated_at"
)
_ALLOCATION_COLUMNS = (
    "id, period_id, category_id, category_name, category_color, budgeted_amount, spent_amount, "
    "remaining_amount, note, created_at, updated_at"
)
_TRANSACTION_COLUMNS = (
    "id, user_id, period_id, category_id, category_name, type, amount, description, date, "
    "recurring_transaction_id, created_at, updated_at"
)


# ---------------------------------------------------------------------------
# Value conversion
# ---------------------------------------------------------------------------


def new_id() -> str:
    return uuid.uuid4().hex


def now() -> datetime:
    return datetime.now()


def _to_iso(value: Optional[datetime]) -> Optional[str]:
    if value is None:
        return None
    return value.isoformat(timespec='microseconds')


def _from_iso(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    return datetime.fromisoformat(value)


def _row_to_period(row: sqlite3.Row) -> BudgetPeriod:
    breakdown = [
        IncomeEntry(source_id=item['source_id'], source_name=item['source_name'], amount=float(item['amount']))
        for item in json.loads(row['income_breakdown'] or '[]')
    ]
    return BudgetPeriod(
        id=row['id'],
        user_id=row['user_id'],
        start_date=_from_iso(row['start_date']),
        end_date=_from_iso(row['end_date']),
        status=row['status'],
        total_income=row['total_income'],
        income_breakdown=breakdown,
        rollover_in=row['rollover_in'],
        rollover_out=row['rollover_out'],
        total_allocated=row['total_allocated'],
        total_spent=row['total_spent'],
        remaining_budget=row['remaining_budget'],
        version=row['version'],
        created_at=_from_iso(row['created_at']),
        updated_at=_from_iso(row['updated_at']),
    )


def _row_to_allocation(row: sqlite3.Row) -> BudgetAllocation:
    return BudgetAllocation(
        id=row['id'],
        period_id=row['period_id'],
        category_id=row['category_id'],
        category_name=row['category_name'],
        category_color=row['category_color'],
        budgeted_amount=row['budgeted_amount'],
        spent_amount=row['spent_amount'],
        remaining_amount=row['remaining_amount'],
        note=row['note'],
        created_at=_from_iso(row['created_at']),
        updated_at=_from_iso(row['updated_at']),
    )


def _row_to_transaction(row: sqlite3.Row) -> Transaction:
    return Transaction(
        id=row['id'],
        user_id=row['user_id'],
        period_id=row['period_id'],
        category_id=row['category_id'],
        category_name=row['category_name'],
        type=row['type'],
        amount=row['amount'],
        description=row['description'] or '',
        date=_from_iso(row['date']),
        recurring_transaction_id=row['recurring_transaction_id'],
        created_at=_from_iso(row['created_at']),
        updated_at=_from_iso(row['updated_at']),
    )


def _encode_cursor(txn: Transaction) -> str:
    return f"{_to_iso(txn.date)}|{txn.id}"


def _decode_cursor(cursor: str) -> Tuple[str, str]:
    date_part, _, id_part = cursor.partition('|')
    if not date_part or not id_part:
        raise ValueError(f"Malformed page cursor: {cursor!r}")
    return date_part, id_part


def _is_retryable(exc: Exception) -> bool:
    if isinstance(exc, ConflictError):
        return True
    message = str(exc).lower()
    return isinstance(exc, sqlite3.OperationalError) and ('locked' in message or 'busy' in message)


# ---------------------------------------------------------------------------
# Unit of work
# ---------------------------------------------------------------------------


class UnitOfWork:
    """Typed reads and writes over one open connection.

    Inside :meth:`BudgetStore.atomic` everything done through a unit is
    committed together; outside it the unit is only used for reads.
    """

    def __init__(self, conn: sqlite3.Connection) -> None:
        self.conn = conn
        self.touched_users: set = set()

    # Periods ---------------------------------------------------------------

    def get_period(self, user_id: str, period_id: str) -> Optional[BudgetPeriod]:
        row = self.conn.execute(
            f"SELECT {_PERIOD_COLUMNS} FROM budget_periods WHERE id = ? AND user_id = ?",
            (period_id, user_id),
        ).fetchone()
        return _row_to_period(row) if row else None

    def require_period(self, user_id: str, period_id: str) -> BudgetPeriod:
        period = self.get_period(user_id, period_id)
        if period is None:
            raise NotFoundError(f"Budget period '{period_id}' not found")
        return period

    def get_active_period(self, user_id: str) -> Optional[BudgetPeriod]:
        row = self.conn.execute(
            f"SELECT {_PERIOD_COLUMNS} FROM budget_periods WHERE user_id = ? AND status = ? LIMIT 1",
            (user_id, STATUS_ACTIVE),
        ).fetchone()
        return _row_to_period(row) if row else None

    def get_latest_period(self, user_id: str) -> Optional[BudgetPeriod]:
        row = self.conn.execute(
            f"SELECT {_PERIOD_COLUMNS} FROM budget_periods WHERE user_id = ? "
            "ORDER BY end_date DESC LIMIT 1",
            (user_id,),
        ).fetchone()
        return _row_to_period(row) if row else None

    def get_previous_period(self, user_id: str, before: datetime) -> Optional[BudgetPeriod]:
        row = self.conn.execute(
            f"SELECT {_PERIOD_COLUMNS} FROM budget_periods WHERE user_id = ? AND end_date < ? "
            "ORDER BY end_date DESC LIMIT 1",
            (user_id, _to_iso(before)),
        ).fetchone()
        return _row_to_period(row) if row else None

    def list_periods(self, user_id: str) -> List[BudgetPeriod]:
        rows = self.conn.execute(
            f"SELECT {_PERIOD_COLUMNS} FROM budget_periods WHERE user_id = ? ORDER BY start_date DESC",
            (user_id,),
        ).fetchall()
        return [_row_to_period(row) for row in rows]

    def insert_period(self, period: BudgetPeriod) -> None:
        breakdown = json.dumps([
            {'source_id': entry.source_id, 'source_name': entry.source_name, 'amount': entry.amount}
            for entry in period.income_breakdown
        ])
        try:
            self.conn.execute(
                f"INSERT INTO budget_periods ({_PERIOD_COLUMNS}) "
                "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
                (
                    period.id,
                    period.user_id,
                    _to_iso(period.start_date),
                    _to_iso(period.end_date),
                    period.status,
                    period.total_income,
                    breakdown,
                    period.rollover_in,
                    period.rollover_out,
                    period.total_allocated,
                    period.total_spent,
                    period.remaining_budget,
                    period.version,
                    _to_iso(period.created_at),
                    _to_iso(period.updated_at),
                ),
            )
        except sqlite3.IntegrityError as exc:
            raise InvariantError(f"User '{period.user_id}' already has an active budget period") from exc
        self.touched_users.add(period.user_id)

    def _update_period(self, period: BudgetPeriod, assignments: str, params: Tuple[Any, ...]) -> None:
        cursor = self.conn.execute(
            f"UPDATE budget_periods SET {assignments}, version = version + 1, updated_at = ? "
            "WHERE id = ? AND user_id = ? AND version = ?",
            params + (_to_iso(now()), period.id, period.user_id, period.version),
        )
        if cursor.rowcount == 0:
            raise ConflictError(f"Budget period '{period.id}' changed concurrently")
        period.version += 1
        self.touched_users.add(period.user_id)

    def close_period(self, period: BudgetPeriod, rollover_out: float) -> None:
        self._update_period(period, "status = ?, rollover_out = ?", (STATUS_CLOSED, rollover_out))
        period.status = STATUS_CLOSED
        period.rollover_out = rollover_out

    def apply_spent_delta(self, period: BudgetPeriod, delta: float) -> None:
        """Add ``delta`` to ``total_spent`` and take it off ``remaining_budget``."""
        self._update_period(
            period,
            "total_spent = ROUND(total_spent + ?, 2), remaining_budget = ROUND(remaining_budget - ?, 2)",
            (delta, delta),
        )

    def apply_allocated_delta(self, period: BudgetPeriod, delta: float) -> None:
        self._update_period(period, "total_allocated = ROUND(total_allocated + ?, 2)", (delta,))

    # Allocations -----------------------------------------------------------

    def list_allocations(self, period_id: str) -> List[BudgetAllocation]:
        rows = self.conn.execute(
            f"SELECT {_ALLOCATION_COLUMNS} FROM budget_allocations WHERE period_id = ? "
            "ORDER BY created_at, rowid",
            (period_id,),
        ).fetchall()
        return [_row_to_allocation(row) for row in rows]

    def get_allocation(self, period_id: str, allocation_id: str) -> Optional[BudgetAllocation]:
        row = self.conn.execute(
            f"SELECT {_ALLOCATION_COLUMNS} FROM budget_allocations WHERE period_id = ? AND id = ?",
            (period_id, allocation_id),
        ).fetchone()
        return _row_to_allocation(row) if row else None

    def find_allocation(self, period_id: str, category_id: str) -> Optional[BudgetAllocation]:
        row = self.conn.execute(
            f"SELECT {_ALLOCATION_COLUMNS} FROM budget_allocations WHERE period_id = ? AND category_id = ? "
            "ORDER BY rowid LIMIT 1",
            (period_id, category_id),
        ).fetchone()
        return _row_to_allocation(row) if row else None

    def insert_allocation(self, allocation: BudgetAllocation) -> None:
        self.conn.execute(
            f"INSERT INTO budget_allocations ({_ALLOCATION_COLUMNS}) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
            (
                allocation.id,
                allocation.period_id,
                allocation.category_id,
                allocation.category_name,
                allocation.category_color,
                allocation.budgeted_amount,
                allocation.spent_amount,
                allocation.remaining_amount,
                allocation.note,
                _to_iso(allocation.created_at),
                _to_iso(allocation.updated_at),
            ),
        )

    def apply_allocation_spent_delta(self, allocation_id: str, delta: float) -> None:
        self.conn.execute(
            "UPDATE budget_allocations SET spent_amount = ROUND(spent_amount + ?, 2), "
            "remaining_amount = ROUND(remaining_amount - ?, 2), updated_at = ? WHERE id = ?",
            (delta, delta, _to_iso(now()), allocation_id),
        )

    def update_allocation_budget(self, allocation_id: str, budgeted_amount: float, note: Optional[str]) -> None:
        self.conn.execute(
            "UPDATE budget_allocations SET budgeted_amount = ?, "
            "remaining_amount = ROUND(? - spent_amount, 2), note = ?, updated_at = ? WHERE id = ?",
            (budgeted_amount, budgeted_amount, note, _to_iso(now()), allocation_id),
        )

    # Transactions ----------------------------------------------------------

    def get_transaction(self, user_id: str, transaction_id: str) -> Optional[Transaction]:
        row = self.conn.execute(
            f"SELECT {_TRANSACTION_COLUMNS} FROM transactions WHERE id = ? AND user_id = ?",
            (transaction_id, user_id),
        ).fetchone()
        return _row_to_transaction(row) if row else None

    def insert_transaction(self, txn: Transaction) -> None:
        self.conn.execute(
            f"INSERT INTO transactions ({_TRANSACTION_COLUMNS}) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
            (
                txn.id,
                txn.user_id,
                txn.period_id,
                txn.category_id,
                txn.category_name,
                txn.type,
                txn.amount,
                txn.description,
                _to_iso(txn.date),
                txn.recurring_transaction_id,
                _to_iso(txn.created_at),
                _to_iso(txn.updated_at),
            ),
        )
        self.touched_users.add(txn.user_id)

    def replace_transaction(self, txn: Transaction) -> None:
        self.conn.execute(
            "UPDATE transactions SET period_id = ?, category_id = ?, category_name = ?, type = ?, amount = ?, "
            "description = ?, date = ?, recurring_transaction_id = ?, updated_at = ? WHERE id = ? AND user_id = ?",
            (
                txn.period_id,
                txn.category_id,
                txn.category_name,
                txn.type,
                txn.amount,
                txn.description,
                _to_iso(txn.date),
                txn.recurring_transaction_id,
                _to_iso(txn.updated_at),
                txn.id,
                txn.user_id,
            ),
        )
        self.touched_users.add(txn.user_id)

    def delete_transaction(self, user_id: str, transaction_id: str) -> None:
        self.conn.execute("DELETE FROM transactions WHERE id = ? AND user_id = ?", (transaction_id, user_id))
        self.touched_users.add(user_id)


# ---------------------------------------------------------------------------
# Store
# ---------------------------------------------------------------------------


class BudgetStore:
    """Per-user budget documents backed by one SQLite file."""

    def __init__(
        self,
        db_path: Optional[Union[str, Path]] = None,
        max_attempts: int = MAX_COMMIT_ATTEMPTS,
        backoff_seconds: float = RETRY_BACKOFF_SECONDS,
    ) -> None:
        self.db_path = Path(db_path) if db_path else DB_PATH
        self.max_attempts = max(1, max_attempts)
        self.backoff_seconds = backoff_seconds
        self._listeners: Dict[str, List[ActivePeriodListener]] = {}
        self._listeners_lock = threading.Lock()
        self.init_db()

    @contextmanager
    def connect(self) -> Iterator[sqlite3.Connection]:
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        conn = sqlite3.connect(str(self.db_path), timeout=5.0, isolation_level=None)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA foreign_keys = ON")
        try:
            yield conn
        finally:
            conn.close()

    def init_db(self) -> None:
        with self.connect() as conn:
            conn.executescript(SCHEMA_SQL)

    # Atomic writes ---------------------------------------------------------

    def atomic(self, work: Callable[[UnitOfWork], T]) -> T:
        """Run ``work`` as one all-or-nothing write, retrying on conflicts.

        ``work`` may be called several times and must derive everything it
        writes from what it reads through the unit it is given.

        Raises:
            PersistenceError: storage failed or conflicts outlasted the
                retry budget; nothing was written.
        """
        last_error: Optional[Exception] = None
        for attempt in range(1, self.max_attempts + 1):
            try:
                with self.connect() as conn:
                    conn.execute("BEGIN IMMEDIATE")
                    unit = UnitOfWork(conn)
                    try:
                        result = work(unit)
                        conn.execute("COMMIT")
                    except BaseException:
                        if conn.in_transaction:
                            conn.execute("ROLLBACK")
                        raise
            except (ConflictError, sqlite3.OperationalError) as exc:
                if not _is_retryable(exc):
                    raise PersistenceError(f"Storage failure: {exc}") from exc
                last_error = exc
                logger.warning("Atomic write attempt %d/%d failed: %s", attempt, self.max_attempts, exc)
                time.sleep(self.backoff_seconds * attempt)
                continue
            except sqlite3.DatabaseError as exc:
                raise PersistenceError(f"Storage failure: {exc}") from exc

            for user_id in unit.touched_users:
                self._notify(user_id)
            return result

        raise PersistenceError(
            f"Atomic write abandoned after {self.max_attempts} attempts: {last_error}"
        ) from last_error

    # Reads -----------------------------------------------------------------

    def read(self, work: Callable[[UnitOfWork], T]) -> T:
        try:
            with self.connect() as conn:
                return work(UnitOfWork(conn))
        except sqlite3.DatabaseError as exc:
            raise PersistenceError(f"Storage failure: {exc}") from exc

    def get_period(self, user_id: str, period_id: str) -> Optional[BudgetPeriod]:
        return self.read(lambda unit: unit.get_period(user_id, period_id))

    def get_active_period(self, user_id: str) -> Optional[BudgetPeriod]:
        return self.read(lambda unit: unit.get_active_period(user_id))

    def get_latest_period(self, user_id: str) -> Optional[BudgetPeriod]:
        return self.read(lambda unit: unit.get_latest_period(user_id))

    def list_periods(self, user_id: str) -> List[BudgetPeriod]:
        """All periods of ``user_id``, newest start first."""
        return self.read(lambda unit: unit.list_periods(user_id))

    def get_allocations(self, period_id: str) -> List[BudgetAllocation]:
        return self.read(lambda unit: unit.list_allocations(period_id))

    def get_transaction(self, user_id: str, transaction_id: str) -> Optional[Transaction]:
        return self.read(lambda unit: unit.get_transaction(user_id, transaction_id))

    def list_transactions(
        self,
        user_id: str,
        period_id: Optional[str] = None,
        category_id: Optional[str] = None,
        txn_type: Optional[str] = None,
        cursor: Optional[str] = None,
        page_size: int = PAGE_SIZE,
    ) -> TransactionPage:
        """One page of transactions, newest date first.

        Pass the returned ``next_cursor`` back in to fetch the following page.
        """
        where = ["user_id = ?"]
        params: List[Any] = [user_id]
        if period_id:
            where.append("period_id = ?")
            params.append(period_id)
        if category_id:
            where.append("category_id = ?")
            params.append(category_id)
        if txn_type:
            where.append("type = ?")
            params.append(txn_type)
        if cursor:
            cursor_date, cursor_id = _decode_cursor(cursor)
            where.append("(date < ? OR (date = ? AND id < ?))")
            params.extend([cursor_date, cursor_date, cursor_id])

        sql = (
            f"SELECT {_TRANSACTION_COLUMNS} FROM transactions WHERE {' AND '.join(where)} "
            "ORDER BY date DESC, id DESC LIMIT ?"
        )
        params.append(page_size + 1)

        def query(unit: UnitOfWork) -> List[Transaction]:
            return [_row_to_transaction(row) for row in unit.conn.execute(sql, params).fetchall()]

        rows = self.read(query)
        has_more = len(rows) > page_size
        page = rows[:page_size]
        next_cursor = _encode_cursor(page[-1]) if has_more and page else None
        return TransactionPage(transactions=page, next_cursor=next_cursor, has_more=has_more)

    def recent_transactions(self, user_id: str, period_id: str, limit: int = 5) -> List[Transaction]:
        return self.list_transactions(user_id, period_id=period_id, page_size=limit).transactions

    def transactions_frame(self, user_id: str, period_id: Optional[str] = None) -> pd.DataFrame:
        """All matching transactions as a DataFrame, newest first."""
        sql = (
            "SELECT id, period_id, date AS 'Date', description AS 'Description', category_id, "
            "category_name AS 'Category', type AS 'Type', amount AS 'Amount' "
            "FROM transactions WHERE user_id = ?"
        )
        params: List[Any] = [user_id]
        if period_id:
            sql += " AND period_id = ?"
            params.append(period_id)
        sql += " ORDER BY date DESC, id DESC"

        with self.connect() as conn:
            df = pd.read_sql_query(sql, conn, params=params)
        if not df.empty:
            df['Date'] = pd.to_datetime(df['Date'])
        return df

    # Change subscription ---------------------------------------------------

    def subscribe_active_period(self, user_id: str, listener: ActivePeriodListener) -> Callable[[], None]:
        """Call ``listener`` with the active period snapshot now and after every change.

        Returns a function that removes the subscription.
        """
        with self._listeners_lock:
            self._listeners.setdefault(user_id, []).append(listener)
        self._deliver(user_id, listener)

        def unsubscribe() -> None:
            with self._listeners_lock:
                listeners = self._listeners.get(user_id, [])
                if listener in listeners:
                    listeners.remove(listener)

        return unsubscribe

    def active_snapshot(self, user_id: str) -> Tuple[Optional[BudgetPeriod], List[BudgetAllocation]]:
        def snapshot(unit: UnitOfWork) -> Tuple[Optional[BudgetPeriod], List[BudgetAllocation]]:
            period = unit.get_active_period(user_id)
            if period is None:
                return None, []
            return period, unit.list_allocations(period.id)

        return self.read(snapshot)

    def _deliver(self, user_id: str, listener: ActivePeriodListener) -> None:
        period, allocations = self.active_snapshot(user_id)
        listener(period, allocations)

    def _notify(self, user_id: str) -> None:
        with self._listeners_lock:
            listeners = list(self._listeners.get(user_id, []))
        if not listeners:
            return
        try:
            period, allocations = self.active_snapshot(user_id)
        except PersistenceError:
            # The unit has already committed.
            logger.exception("Could not load active period snapshot for user %s", user_id)
            return
        for listener in listeners:
            try:
                listener(period, allocations)
            except Exception:
                logger.exception("Active period listener failed for user %s", user_id)
