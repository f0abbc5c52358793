"""SQLite-backed task and transaction storage."""

from __future__ import annotations

import contextlib
import sqlite3
import uuid
from collections.abc import Collection
from pathlib import Path
from threading import RLock
from typing import Any


class DuplicateTaskError(Exception):
    """Raised when attempting to insert a task with a duplicate task_id."""


# Forward-only ordering of ledger statuses. An upsert never replaces a
# status with one of lower rank.
TRANSACTION_STATUS_RANK: dict[str, int] = {
    "created": 0,
    "processing": 1,
    "failed": 2,
    "canceled": 2,
    "succeeded": 3,
}


def _rank_sql(column: str) -> str:
    whens = " ".join(
        f"WHEN '{status}' THEN {rank}" for status, rank in TRANSACTION_STATUS_RANK.items()
    )
    return f"(CASE {column} {whens} ELSE 0 END)"


class TaskStore:
    """
    SQLite-backed storage for tasks and payment transactions.

    Every state change is a conditional write: callers pass the predicate
    the row must still satisfy and get back whether the write happened.
    Multi-statement writes run under BEGIN IMMEDIATE so that separate
    connections to the same file serialize on the database write lock.
    """

    _TASK_COLUMNS: tuple[str, ...] = (
        "task_id",
        "requester_id",
        "title",
        "description",
        "category",
        "address",
        "price_cents",
        "fee_cents",
        "total_cents",
        "lat",
        "lng",
        "status",
        "worker_id",
        "payment_intent_id",
        "paid_at",
        "created_at",
        "updated_at",
        "assigned_at",
        "started_at",
        "completed_at",
        "cancelled_at",
    )
    _TRANSACTION_COLUMNS: tuple[str, ...] = (
        "tx_id",
        "payment_intent_id",
        "task_id",
        "requester_id",
        "worker_id",
        "amount_cents",
        "platform_fee_cents",
        "worker_amount_cents",
        "status",
        "client_secret",
        "created_at",
        "updated_at",
    )
    _TASK_COLUMNS_SQL = ", ".join(_TASK_COLUMNS)
    _TRANSACTION_COLUMNS_SQL = ", ".join(_TRANSACTION_COLUMNS)

    _TASK_INSERT_SQL = (
        "INSERT INTO tasks (" + _TASK_COLUMNS_SQL + ") VALUES ("
        + ", ".join("?" for _ in _TASK_COLUMNS)
        + ")"
    )
    _TASK_SELECT_BASE_SQL = "SELECT " + _TASK_COLUMNS_SQL + " FROM tasks"  # nosec B608

    _TRANSACTION_UPSERT_SQL = (
        "INSERT INTO transactions (" + _TRANSACTION_COLUMNS_SQL + ") VALUES ("
        + ", ".join("?" for _ in _TRANSACTION_COLUMNS)
        + ") ON CONFLICT(payment_intent_id) DO UPDATE SET "
        "status = CASE WHEN "
        + _rank_sql("excluded.status")
        + " >= "
        + _rank_sql("transactions.status")
        + " THEN excluded.status ELSE transactions.status END, "
        "worker_id = COALESCE(excluded.worker_id, transactions.worker_id), "
        "amount_cents = COALESCE(transactions.amount_cents, excluded.amount_cents), "
        "platform_fee_cents = COALESCE(transactions.platform_fee_cents, "
        "excluded.platform_fee_cents), "
        "worker_amount_cents = COALESCE(transactions.worker_amount_cents, "
        "excluded.worker_amount_cents), "
        "client_secret = COALESCE(transactions.client_secret, excluded.client_secret), "
        "updated_at = excluded.updated_at"
    )

    def __init__(self, db_path: str) -> None:
        self._lock = RLock()
        Path(db_path).parent.mkdir(parents=True, exist_ok=True)
        self._db = sqlite3.connect(db_path, check_same_thread=False)
        self._db.row_factory = sqlite3.Row
        self._db.execute("PRAGMA journal_mode=WAL")
        self._db.execute("PRAGMA foreign_keys=ON")
        self._db.execute("PRAGMA busy_timeout=5000")
        self._init_schema()

    def _init_schema(self) -> None:
        with self._lock:
            self._db.executescript(
                """
                CREATE TABLE IF NOT EXISTS tasks (
                    task_id TEXT PRIMARY KEY,
                    requester_id TEXT NOT NULL,
                    title TEXT NOT NULL,
                    description TEXT,
                    category TEXT,
                    address TEXT,
                    price_cents INTEGER NOT NULL DEFAULT 0 CHECK (price_cents >= 0),
                    fee_cents INTEGER CHECK (fee_cents >= 0),
                    total_cents INTEGER,
                    lat REAL,
                    lng REAL,
                    status TEXT NOT NULL DEFAULT 'requested',
                    worker_id TEXT,
                    payment_intent_id TEXT,
                    paid_at TEXT,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL,
                    assigned_at TEXT,
                    started_at TEXT,
                    completed_at TEXT,
                    cancelled_at TEXT,
                    CHECK (
                        fee_cents IS NULL
                        OR total_cents IS NULL
                        OR total_cents = price_cents + fee_cents
                    )
                );

                CREATE TABLE IF NOT EXISTS transactions (
                    tx_id TEXT PRIMARY KEY,
                    payment_intent_id TEXT NOT NULL UNIQUE,
                    task_id TEXT NOT NULL,
                    requester_id TEXT NOT NULL,
                    worker_id TEXT,
                    amount_cents INTEGER,
                    platform_fee_cents INTEGER,
                    worker_amount_cents INTEGER,
                    status TEXT NOT NULL,
                    client_secret TEXT,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                );

                CREATE INDEX IF NOT EXISTS ix_tasks_status ON tasks(status);
                CREATE INDEX IF NOT EXISTS ix_tasks_requester ON tasks(requester_id);
                CREATE INDEX IF NOT EXISTS ix_tasks_worker ON tasks(worker_id);
                CREATE INDEX IF NOT EXISTS ix_tasks_payment_intent ON tasks(payment_intent_id);
                CREATE INDEX IF NOT EXISTS ix_transactions_task ON transactions(task_id);
                """
            )
            self._db.commit()

    def _row_to_task(self, row: sqlite3.Row) -> dict[str, Any]:
        return {column: row[column] for column in self._TASK_COLUMNS}

    def _row_to_transaction(self, row: sqlite3.Row) -> dict[str, Any]:
        return {column: row[column] for column in self._TRANSACTION_COLUMNS}

    def _rollback(self) -> None:
        with contextlib.suppress(sqlite3.Error):
            self._db.execute("ROLLBACK")

    # ------------------------------------------------------------------
    # Tasks
    # ------------------------------------------------------------------

    def insert_task(self, task_data: dict[str, Any]) -> None:
        """Insert a new task row."""
        values = tuple(task_data[column] for column in self._TASK_COLUMNS)

        with self._lock:
            try:
                self._db.execute("BEGIN IMMEDIATE")
                self._db.execute(self._TASK_INSERT_SQL, values)
                self._db.commit()
            except sqlite3.IntegrityError as exc:
                self._rollback()
                error_msg = str(exc).lower()
                if "unique" in error_msg:
                    raise DuplicateTaskError(
                        f"A task with task_id={task_data['task_id']} already exists"
                    ) from exc
                raise
            except Exception:
                self._rollback()
                raise

    def get_task(self, task_id: str) -> dict[str, Any] | None:
        """Fetch a task by ID."""
        with self._lock:
            cursor = self._db.execute(
                self._TASK_SELECT_BASE_SQL + " WHERE task_id = ?",
                (task_id,),
            )
            row = cursor.fetchone()
        if row is None:
            return None
        return self._row_to_task(row)

    def get_task_by_payment_intent(self, payment_intent_id: str) -> dict[str, Any] | None:
        """Fetch the task currently bound to a payment intent."""
        with self._lock:
            cursor = self._db.execute(
                self._TASK_SELECT_BASE_SQL + " WHERE payment_intent_id = ?",
                (payment_intent_id,),
            )
            row = cursor.fetchone()
        if row is None:
            return None
        return self._row_to_task(row)

    def update_task(
        self,
        task_id: str,
        updates: dict[str, Any],
        *,
        expected_status: str | Collection[str] | None,
        expected_worker_id: str | None = None,
    ) -> int:
        """
        Conditionally update task columns.

        The row is only written if its status is (one of) ``expected_status``
        and, when given, its worker_id equals ``expected_worker_id``.
        Returns the number of affected rows, so 0 means the predicate no
        longer held (or the task does not exist).
        """
        if len(updates) == 0:
            return 0

        if any(column not in self._TASK_COLUMNS for column in updates):
            msg = "Attempted to update unknown task column"
            raise ValueError(msg)

        set_clause = ", ".join(f"{column} = ?" for column in updates)
        params: list[object] = list(updates.values())

        query = "UPDATE tasks SET " + set_clause + " WHERE task_id = ?"  # nosec B608
        params.append(task_id)
        if isinstance(expected_status, str):
            query += " AND status = ?"
            params.append(expected_status)
        elif expected_status is not None:
            statuses = list(expected_status)
            query += " AND status IN (" + ", ".join("?" for _ in statuses) + ")"
            params.extend(statuses)
        if expected_worker_id is not None:
            query += " AND worker_id = ?"
            params.append(expected_worker_id)

        with self._lock:
            cursor = self._db.execute(query, params)
            self._db.commit()
        return int(cursor.rowcount)

    def delete_task(self, task_id: str, *, expected_status: str, requester_id: str) -> int:
        """
        Delete a task that is still in ``expected_status``, owned by
        ``requester_id`` and has never had a payment intent attached.
        """
        with self._lock:
            cursor = self._db.execute(
                "DELETE FROM tasks WHERE task_id = ? AND status = ? AND requester_id = ? "
                "AND payment_intent_id IS NULL",
                (task_id, expected_status, requester_id),
            )
            self._db.commit()
        return int(cursor.rowcount)

    def list_tasks(
        self,
        statuses: Collection[str] | None,
        requester_id: str | None,
        worker_id: str | None,
        *,
        newest_first: bool,
    ) -> list[dict[str, Any]]:
        """
        List tasks with optional filters.

        ``newest_first`` orders by most recent update; otherwise tasks come
        back in creation order, which gives a stable enumeration order.
        """
        query = self._TASK_SELECT_BASE_SQL
        clauses: list[str] = []
        params: list[object] = []

        if statuses is not None:
            status_list = list(statuses)
            clauses.append("status IN (" + ", ".join("?" for _ in status_list) + ")")
            params.extend(status_list)
        if requester_id is not None:
            clauses.append("requester_id = ?")
            params.append(requester_id)
        if worker_id is not None:
            clauses.append("worker_id = ?")
            params.append(worker_id)

        if len(clauses) > 0:
            query += " WHERE " + " AND ".join(clauses)

        if newest_first:
            query += " ORDER BY updated_at DESC, rowid DESC"
        else:
            query += " ORDER BY created_at ASC, rowid ASC"

        with self._lock:
            rows = self._db.execute(query, params).fetchall()
        return [self._row_to_task(row) for row in rows]

    def count_tasks(self) -> int:
        """Count total tasks."""
        with self._lock:
            row = self._db.execute("SELECT COUNT(*) FROM tasks").fetchone()
        return int(row[0]) if row is not None else 0

    def count_tasks_by_status(self) -> dict[str, int]:
        """Count tasks grouped by status."""
        with self._lock:
            rows = self._db.execute("SELECT status, COUNT(*) FROM tasks GROUP BY status").fetchall()
        return {str(row[0]): int(row[1]) for row in rows}

    # ------------------------------------------------------------------
    # Payments
    # ------------------------------------------------------------------

    def _transaction_values(
        self,
        task: sqlite3.Row,
        payment_intent_id: str,
        status: str,
        client_secret: str | None,
        now: str,
    ) -> tuple[object, ...]:
        priced = task["fee_cents"] is not None and task["total_cents"] is not None
        return (
            f"tx-{uuid.uuid4()}",
            payment_intent_id,
            task["task_id"],
            task["requester_id"],
            task["worker_id"],
            task["total_cents"] if priced else None,
            task["fee_cents"] if priced else None,
            task["price_cents"] if priced else None,
            status,
            client_secret,
            now,
            now,
        )

    def attach_payment_intent(
        self,
        task_id: str,
        payment_intent_id: str,
        fee_cents: int,
        total_cents: int,
        client_secret: str | None,
        now: str,
    ) -> bool:
        """
        Bind a payment intent to a task and record its ledger entry, atomically.

        The task's fee and total are only written if still unset. The bind
        fails (returns False) if the task is gone or already bound to a
        different intent; in that case nothing is written.
        """
        with self._lock:
            try:
                self._db.execute("BEGIN IMMEDIATE")
                row = self._db.execute(
                    "SELECT payment_intent_id FROM tasks WHERE task_id = ?",
                    (task_id,),
                ).fetchone()
                if row is None or row["payment_intent_id"] not in (None, payment_intent_id):
                    self._rollback()
                    return False

                self._db.execute(
                    "UPDATE tasks SET payment_intent_id = ?, "
                    "fee_cents = COALESCE(fee_cents, ?), "
                    "total_cents = COALESCE(total_cents, ?), "
                    "updated_at = ? WHERE task_id = ?",
                    (payment_intent_id, fee_cents, total_cents, now, task_id),
                )
                task = self._db.execute(
                    self._TASK_SELECT_BASE_SQL + " WHERE task_id = ?",
                    (task_id,),
                ).fetchone()
                self._db.execute(
                    self._TRANSACTION_UPSERT_SQL,
                    self._transaction_values(task, payment_intent_id, "created", client_secret, now),
                )
                self._db.commit()
            except Exception:
                self._rollback()
                raise
        return True

    def record_payment_status(
        self,
        task_id: str,
        payment_intent_id: str,
        status: str,
        now: str,
    ) -> bool:
        """
        Apply a gateway-reported payment status to the ledger, atomically.

        For ``succeeded`` the task's paid_at is set only if it is still
        unset and the task is not cancelled. The transaction row is upserted
        in the same database transaction, never lowering its status rank.

        Returns True only if this call set paid_at.
        """
        with self._lock:
            try:
                self._db.execute("BEGIN IMMEDIATE")
                paid_now = False
                if status == "succeeded":
                    cursor = self._db.execute(
                        "UPDATE tasks SET paid_at = ?, "
                        "payment_intent_id = COALESCE(payment_intent_id, ?), "
                        "updated_at = ? "
                        "WHERE task_id = ? AND paid_at IS NULL AND status != 'cancelled'",
                        (now, payment_intent_id, now, task_id),
                    )
                    paid_now = cursor.rowcount == 1
                task = self._db.execute(
                    self._TASK_SELECT_BASE_SQL + " WHERE task_id = ?",
                    (task_id,),
                ).fetchone()
                if task is None:
                    self._rollback()
                    return False
                self._db.execute(
                    self._TRANSACTION_UPSERT_SQL,
                    self._transaction_values(task, payment_intent_id, status, None, now),
                )
                self._db.commit()
            except Exception:
                self._rollback()
                raise
        return paid_now

    def get_transaction(self, payment_intent_id: str) -> dict[str, Any] | None:
        """Fetch a ledger entry by payment intent."""
        with self._lock:
            cursor = self._db.execute(
                "SELECT " + self._TRANSACTION_COLUMNS_SQL  # nosec B608
                + " FROM transactions WHERE payment_intent_id = ?",
                (payment_intent_id,),
            )
            row = cursor.fetchone()
        if row is None:
            return None
        return self._row_to_transaction(row)

    def list_transactions_for_task(self, task_id: str) -> list[dict[str, Any]]:
        """Fetch all ledger entries for a task, most recent first."""
        with self._lock:
            rows = self._db.execute(
                "SELECT " + self._TRANSACTION_COLUMNS_SQL  # nosec B608
                + " FROM transactions WHERE task_id = ? ORDER BY updated_at DESC, rowid DESC",
                (task_id,),
            ).fetchall()
        return [self._row_to_transaction(row) for row in rows]

    def close(self) -> None:
        """Close the database connection."""
        with self._lock:
            self._db.close()
