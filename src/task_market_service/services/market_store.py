"""SQLite-backed storage for accounts, tasks, submissions, payments and payouts."""

from __future__ import annotations

import sqlite3
import uuid
from datetime import UTC, datetime
from pathlib import Path
from threading import RLock
from typing import Any, cast

from task_market_service.core.exceptions import ServiceError
from task_market_service.services.settlement import MAX_LAMPORTS, reward_for

TASK_STATUSES: tuple[str, ...] = ("PENDING", "IN_PROGRESS", "COMPLETED")
PAYOUT_STATUSES: tuple[str, ...] = ("REQUESTED", "TRANSFER_SENT", "CONFIRMED", "FAILED")
IN_FLIGHT_PAYOUT_STATUSES: tuple[str, ...] = ("REQUESTED", "TRANSFER_SENT")

# role -> (table, id column, id prefix)
_ACCOUNT_TABLES: dict[str, tuple[str, str, str]] = {
    "user": ("users", "user_id", "u"),
    "worker": ("workers", "worker_id", "w"),
}

_PAYOUT_COLUMNS_SQL = (
    "payout_id, worker_id, amount, destination, status, tx_signature, error, "
    "last_valid_block_height, balance_applied, attempts, created_at, updated_at"
)


def _account_table(role: str) -> tuple[str, str, str]:
    try:
        return _ACCOUNT_TABLES[role]
    except KeyError:
        msg = f"Unknown account role: {role}"
        raise ValueError(msg) from None


class MarketStore:
    """
    SQLite persistence for the marketplace.

    Balance changes are single UPDATE statements (pending_balance =
    pending_balance + ?) executed inside BEGIN IMMEDIATE transactions,
    so concurrent writers serialize on the database write lock and no
    balance is ever computed from a stale read.
    """

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
        """Create tables if they don't exist."""
        with self._lock:
            self._db.executescript(
                """
                CREATE TABLE IF NOT EXISTS users (
                    user_id TEXT PRIMARY KEY,
                    wallet_address TEXT NOT NULL UNIQUE,
                    nonce TEXT NOT NULL,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                );

                CREATE TABLE IF NOT EXISTS workers (
                    worker_id TEXT PRIMARY KEY,
                    wallet_address TEXT NOT NULL UNIQUE,
                    nonce TEXT NOT NULL,
                    pending_balance INTEGER NOT NULL DEFAULT 0 CHECK (pending_balance >= 0),
                    locked_balance INTEGER NOT NULL DEFAULT 0 CHECK (locked_balance >= 0),
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                );

                CREATE TABLE IF NOT EXISTS tasks (
                    task_id TEXT PRIMARY KEY,
                    user_id TEXT NOT NULL REFERENCES users(user_id),
                    title TEXT NOT NULL,
                    description TEXT NOT NULL DEFAULT '',
                    file_url TEXT NOT NULL,
                    amount INTEGER NOT NULL CHECK (amount > 0),
                    status TEXT NOT NULL DEFAULT 'PENDING'
                        CHECK (status IN ('PENDING', 'IN_PROGRESS', 'COMPLETED')),
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                );

                CREATE TABLE IF NOT EXISTS submissions (
                    submission_id TEXT PRIMARY KEY,
                    task_id TEXT NOT NULL REFERENCES tasks(task_id),
                    worker_id TEXT NOT NULL REFERENCES workers(worker_id),
                    file_url TEXT NOT NULL,
                    reward INTEGER NOT NULL CHECK (reward >= 0),
                    created_at TEXT NOT NULL,
                    UNIQUE (task_id, worker_id)
                );

                CREATE TABLE IF NOT EXISTS payments (
                    payment_id TEXT PRIMARY KEY,
                    user_id TEXT NOT NULL REFERENCES users(user_id),
                    amount INTEGER NOT NULL CHECK (amount > 0),
                    created_at TEXT NOT NULL
                );

                CREATE TABLE IF NOT EXISTS payouts (
                    payout_id TEXT PRIMARY KEY,
                    worker_id TEXT NOT NULL REFERENCES workers(worker_id),
                    amount INTEGER NOT NULL CHECK (amount > 0),
                    destination TEXT NOT NULL,
                    status TEXT NOT NULL
                        CHECK (status IN ('REQUESTED', 'TRANSFER_SENT', 'CONFIRMED', 'FAILED')),
                    tx_signature TEXT,
                    last_valid_block_height INTEGER,
                    error TEXT,
                    balance_applied INTEGER NOT NULL DEFAULT 0,
                    attempts INTEGER NOT NULL DEFAULT 1,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                );

                CREATE UNIQUE INDEX IF NOT EXISTS ux_payouts_in_flight
                    ON payouts(worker_id)
                    WHERE status IN ('REQUESTED', 'TRANSFER_SENT');

                CREATE INDEX IF NOT EXISTS ix_tasks_user_created
                    ON tasks(user_id, created_at);

                CREATE INDEX IF NOT EXISTS ix_submissions_worker_created
                    ON submissions(worker_id, created_at);

                CREATE INDEX IF NOT EXISTS ix_payouts_worker_created
                    ON payouts(worker_id, created_at);
                """
            )
            self._db.commit()

    def _now(self) -> str:
        """Current UTC timestamp in ISO 8601 format."""
        return datetime.now(UTC).isoformat(timespec="microseconds").replace("+00:00", "Z")

    def _new_id(self, prefix: str) -> str:
        return f"{prefix}-{uuid.uuid4()}"

    # ------------------------------------------------------------------
    # Accounts (users and workers)
    # ------------------------------------------------------------------

    def get_or_create_account(
        self,
        role: str,
        wallet_address: str,
        nonce: str,
    ) -> tuple[dict[str, Any], bool]:
        """
        Find the account for a wallet, creating it with the given nonce if absent.

        Returns:
            (account record, created flag)
        """
        table, id_column, prefix = _account_table(role)
        with self._lock:
            now = self._now()
            try:
                self._db.execute("BEGIN IMMEDIATE")
                cursor = self._db.execute(
                    f"INSERT OR IGNORE INTO {table} "  # noqa: S608
                    f"({id_column}, wallet_address, nonce, created_at, updated_at) "
                    "VALUES (?, ?, ?, ?, ?)",
                    (self._new_id(prefix), wallet_address, nonce, now, now),
                )
                created = cursor.rowcount == 1
                self._db.commit()
            except Exception:
                self._db.rollback()
                raise

        account = self.get_account_by_wallet(role, wallet_address)
        if account is None:
            msg = "Account not found after insert"
            raise RuntimeError(msg)
        return account, created

    def get_account_by_wallet(self, role: str, wallet_address: str) -> dict[str, Any] | None:
        """Look up an account by wallet address. Returns None if not found."""
        table, _, _ = _account_table(role)
        with self._lock:
            row = self._db.execute(
                f"SELECT * FROM {table} WHERE wallet_address = ?",  # noqa: S608
                (wallet_address,),
            ).fetchone()
        return self._account_row(role, row)

    def get_account(self, role: str, account_id: str) -> dict[str, Any] | None:
        """Look up an account by ID. Returns None if not found."""
        table, id_column, _ = _account_table(role)
        with self._lock:
            row = self._db.execute(
                f"SELECT * FROM {table} WHERE {id_column} = ?",  # noqa: S608
                (account_id,),
            ).fetchone()
        return self._account_row(role, row)

    def rotate_nonce(self, role: str, account_id: str, expected_nonce: str, new_nonce: str) -> bool:
        """
        Replace the account nonce if it still equals expected_nonce.

        Returns False when another sign-in consumed the nonce first.
        """
        table, id_column, _ = _account_table(role)
        with self._lock:
            cursor = self._db.execute(
                f"UPDATE {table} SET nonce = ?, updated_at = ? "  # noqa: S608
                f"WHERE {id_column} = ? AND nonce = ?",
                (new_nonce, self._now(), account_id, expected_nonce),
            )
            self._db.commit()
            return cursor.rowcount == 1

    def _account_row(self, role: str, row: sqlite3.Row | None) -> dict[str, Any] | None:
        if row is None:
            return None
        _, id_column, _ = _account_table(role)
        account: dict[str, Any] = {
            "id": row[id_column],
            "wallet_address": row["wallet_address"],
            "nonce": row["nonce"],
            "created_at": row["created_at"],
            "updated_at": row["updated_at"],
        }
        if role == "worker":
            account["pending_balance"] = row["pending_balance"]
            account["locked_balance"] = row["locked_balance"]
        return account

    def count_accounts(self, role: str) -> int:
        """Count accounts of the given role."""
        table, _, _ = _account_table(role)
        with self._lock:
            row = self._db.execute(f"SELECT COUNT(*) FROM {table}").fetchone()  # noqa: S608
        return cast("int", row[0])

    # ------------------------------------------------------------------
    # Tasks
    # ------------------------------------------------------------------

    def insert_task(
        self,
        user_id: str,
        title: str,
        description: str,
        file_url: str,
        amount: int,
    ) -> dict[str, Any]:
        """Insert a PENDING task and return it."""
        with self._lock:
            now = self._now()
            task_id = self._new_id("t")
            try:
                self._db.execute("BEGIN IMMEDIATE")
                self._db.execute(
                    "INSERT INTO tasks "
                    "(task_id, user_id, title, description, file_url, amount, status, "
                    "created_at, updated_at) VALUES (?, ?, ?, ?, ?, ?, 'PENDING', ?, ?)",
                    (task_id, user_id, title, description, file_url, amount, now, now),
                )
                self._db.commit()
            except sqlite3.IntegrityError as exc:
                self._db.rollback()
                raise ServiceError("USER_NOT_FOUND", "User not found", 404, {}) from exc
            except Exception:
                self._db.rollback()
                raise

        task = self.get_task(task_id)
        if task is None:
            msg = "Task not found after insert"
            raise RuntimeError(msg)
        return task

    def get_task(self, task_id: str) -> dict[str, Any] | None:
        """Look up a task by ID, with its submission count."""
        with self._lock:
            row = self._db.execute(
                "SELECT t.*, "
                "(SELECT COUNT(*) FROM submissions s WHERE s.task_id = t.task_id) "
                "AS submissions_count "
                "FROM tasks t WHERE t.task_id = ?",
                (task_id,),
            ).fetchone()
        return None if row is None else dict(row)

    def list_tasks_for_user(self, user_id: str) -> list[dict[str, Any]]:
        """Tasks owned by a user, newest first, each with its submissions."""
        with self._lock:
            tasks = [
                dict(row)
                for row in self._db.execute(
                    "SELECT * FROM tasks WHERE user_id = ? ORDER BY created_at DESC, task_id DESC",
                    (user_id,),
                ).fetchall()
            ]
            submissions = self._db.execute(
                "SELECT s.submission_id, s.task_id, s.worker_id, s.file_url, s.created_at "
                "FROM submissions s JOIN tasks t ON t.task_id = s.task_id "
                "WHERE t.user_id = ? ORDER BY s.created_at DESC, s.submission_id DESC",
                (user_id,),
            ).fetchall()

        by_task: dict[str, list[dict[str, Any]]] = {}
        for row in submissions:
            by_task.setdefault(row["task_id"], []).append(dict(row))
        for task in tasks:
            task["submissions"] = by_task.get(task["task_id"], [])
            task["submissions_count"] = len(task["submissions"])
        return tasks

    def list_all_tasks(self, worker_id: str | None) -> list[dict[str, Any]]:
        """
        All tasks, newest first, with submission counts.

        When worker_id is given, each task carries has_submitted for that worker.
        """
        with self._lock:
            rows = self._db.execute(
                "SELECT t.*, "
                "(SELECT COUNT(*) FROM submissions s WHERE s.task_id = t.task_id) "
                "AS submissions_count, "
                "EXISTS (SELECT 1 FROM submissions s "
                "WHERE s.task_id = t.task_id AND s.worker_id = ?) AS has_submitted "
                "FROM tasks t ORDER BY t.created_at DESC, t.task_id DESC",
                (worker_id,),
            ).fetchall()
        tasks = []
        for row in rows:
            task = dict(row)
            task["has_submitted"] = bool(task["has_submitted"])
            tasks.append(task)
        return tasks

    def complete_task(self, task_id: str) -> int:
        """Move an IN_PROGRESS task to COMPLETED. Returns the number of rows changed."""
        with self._lock:
            cursor = self._db.execute(
                "UPDATE tasks SET status = 'COMPLETED', updated_at = ? "
                "WHERE task_id = ? AND status = 'IN_PROGRESS'",
                (self._now(), task_id),
            )
            self._db.commit()
            return cursor.rowcount

    def count_tasks(self) -> int:
        """Count all tasks."""
        with self._lock:
            row = self._db.execute("SELECT COUNT(*) FROM tasks").fetchone()
        return cast("int", row[0])

    # ------------------------------------------------------------------
    # Submissions
    # ------------------------------------------------------------------

    def insert_submission_with_credit(
        self,
        task_id: str,
        worker_id: str,
        file_url: str,
        reward_pct: int,
    ) -> dict[str, Any]:
        """
        Insert a submission and credit the worker's pending balance atomically.

        The first submission for a PENDING task also moves it to IN_PROGRESS.

        Returns:
            {"submission": {...}, "reward": N, "pending_balance": N}

        Raises:
            ServiceError: TASK_NOT_FOUND, WORKER_NOT_FOUND, TASK_CLOSED,
                DUPLICATE_SUBMISSION.
        """
        with self._lock:
            now = self._now()
            submission_id = self._new_id("sub")

            try:
                self._db.execute("BEGIN IMMEDIATE")
                task = self._db.execute(
                    "SELECT amount, status FROM tasks WHERE task_id = ?",
                    (task_id,),
                ).fetchone()
                if task is None:
                    raise ServiceError("TASK_NOT_FOUND", "Task not found", 404, {})
                if task["status"] == "COMPLETED":
                    raise ServiceError(
                        "TASK_CLOSED",
                        "Task is completed and no longer accepts submissions",
                        409,
                        {},
                    )

                worker = self._db.execute(
                    "SELECT pending_balance FROM workers WHERE worker_id = ?",
                    (worker_id,),
                ).fetchone()
                if worker is None:
                    raise ServiceError("WORKER_NOT_FOUND", "Worker not found", 404, {})

                reward = reward_for(cast("int", task["amount"]), reward_pct)
                if cast("int", worker["pending_balance"]) > MAX_LAMPORTS - reward:
                    raise ServiceError(
                        "INVALID_AMOUNT",
                        "Reward would exceed the maximum pending balance",
                        400,
                        {},
                    )

                self._db.execute(
                    "INSERT INTO submissions "
                    "(submission_id, task_id, worker_id, file_url, reward, created_at) "
                    "VALUES (?, ?, ?, ?, ?, ?)",
                    (submission_id, task_id, worker_id, file_url, reward, now),
                )
                self._db.execute(
                    "UPDATE workers SET pending_balance = pending_balance + ?, updated_at = ? "
                    "WHERE worker_id = ?",
                    (reward, now, worker_id),
                )
                self._db.execute(
                    "UPDATE tasks SET status = 'IN_PROGRESS', updated_at = ? "
                    "WHERE task_id = ? AND status = 'PENDING'",
                    (now, task_id),
                )
                row = self._db.execute(
                    "SELECT pending_balance FROM workers WHERE worker_id = ?",
                    (worker_id,),
                ).fetchone()
                pending_balance = cast("int", row[0])
                self._db.commit()
            except sqlite3.IntegrityError as exc:
                self._db.rollback()
                raise ServiceError(
                    "DUPLICATE_SUBMISSION",
                    "You have already submitted for this task",
                    409,
                    {},
                ) from exc
            except ServiceError:
                self._db.rollback()
                raise
            except Exception:
                self._db.rollback()
                raise

        return {
            "submission": {
                "submission_id": submission_id,
                "task_id": task_id,
                "worker_id": worker_id,
                "file_url": file_url,
                "reward": reward,
                "created_at": now,
            },
            "reward": reward,
            "pending_balance": pending_balance,
        }

    def list_submissions_for_worker(self, worker_id: str) -> list[dict[str, Any]]:
        """A worker's submissions, newest first, with task title and bounty."""
        with self._lock:
            rows = self._db.execute(
                "SELECT s.submission_id, s.task_id, s.file_url, s.reward, s.created_at, "
                "t.title AS task_title, t.amount AS task_amount, t.status AS task_status "
                "FROM submissions s JOIN tasks t ON t.task_id = s.task_id "
                "WHERE s.worker_id = ? ORDER BY s.created_at DESC, s.submission_id DESC",
                (worker_id,),
            ).fetchall()
        return [dict(row) for row in rows]

    # ------------------------------------------------------------------
    # Payments
    # ------------------------------------------------------------------

    def insert_payment(self, user_id: str, amount: int) -> dict[str, Any]:
        """Record a funding payment (bookkeeping only)."""
        with self._lock:
            now = self._now()
            payment_id = self._new_id("pay")
            try:
                self._db.execute("BEGIN IMMEDIATE")
                self._db.execute(
                    "INSERT INTO payments (payment_id, user_id, amount, created_at) "
                    "VALUES (?, ?, ?, ?)",
                    (payment_id, user_id, amount, now),
                )
                self._db.commit()
            except sqlite3.IntegrityError as exc:
                self._db.rollback()
                raise ServiceError("USER_NOT_FOUND", "User not found", 404, {}) from exc
            except Exception:
                self._db.rollback()
                raise
        return {"payment_id": payment_id, "user_id": user_id, "amount": amount, "created_at": now}

    # ------------------------------------------------------------------
    # Aggregates
    # ------------------------------------------------------------------

    def user_stats(self, user_id: str) -> dict[str, int]:
        """Task and payment totals for a user."""
        with self._lock:
            task_row = self._db.execute(
                "SELECT COUNT(*), COALESCE(SUM(status = 'COMPLETED'), 0) "
                "FROM tasks WHERE user_id = ?",
                (user_id,),
            ).fetchone()
            payment_row = self._db.execute(
                "SELECT COALESCE(SUM(amount), 0) FROM payments WHERE user_id = ?",
                (user_id,),
            ).fetchone()
        return {
            "total_tasks": cast("int", task_row[0]),
            "completed_tasks": cast("int", task_row[1]),
            "total_payments": cast("int", payment_row[0]),
        }

    def worker_stats(self, worker_id: str) -> dict[str, int]:
        """Submission totals for a worker."""
        with self._lock:
            row = self._db.execute(
                "SELECT COUNT(*), COALESCE(SUM(t.status = 'COMPLETED'), 0) "
                "FROM submissions s JOIN tasks t ON t.task_id = s.task_id "
                "WHERE s.worker_id = ?",
                (worker_id,),
            ).fetchone()
        return {
            "total_submissions": cast("int", row[0]),
            "completed_tasks": cast("int", row[1]),
        }

    def balance_totals(self) -> dict[str, int]:
        """Sum of pending and locked balances across all workers."""
        with self._lock:
            row = self._db.execute(
                "SELECT COALESCE(SUM(pending_balance), 0), COALESCE(SUM(locked_balance), 0) "
                "FROM workers"
            ).fetchone()
        return {"pending": cast("int", row[0]), "locked": cast("int", row[1])}

    # ------------------------------------------------------------------
    # Payouts
    # ------------------------------------------------------------------

    def reserve_payout(self, worker_id: str) -> dict[str, Any]:
        """
        Create a REQUESTED payout for the worker's entire pending balance.

        Raises:
            ServiceError: WORKER_NOT_FOUND, NO_PENDING_BALANCE, PAYOUT_IN_PROGRESS.
        """
        with self._lock:
            now = self._now()
            payout_id = self._new_id("po")

            try:
                self._db.execute("BEGIN IMMEDIATE")
                worker = self._db.execute(
                    "SELECT wallet_address, pending_balance FROM workers WHERE worker_id = ?",
                    (worker_id,),
                ).fetchone()
                if worker is None:
                    raise ServiceError("WORKER_NOT_FOUND", "Worker not found", 404, {})

                amount = cast("int", worker["pending_balance"])
                if amount == 0:
                    raise ServiceError(
                        "NO_PENDING_BALANCE",
                        "No pending balance to payout",
                        400,
                        {},
                    )

                self._db.execute(
                    f"INSERT INTO payouts ({_PAYOUT_COLUMNS_SQL}) "  # noqa: S608
                    "VALUES (?, ?, ?, ?, 'REQUESTED', NULL, NULL, NULL, 0, 1, ?, ?)",
                    (payout_id, worker_id, amount, worker["wallet_address"], now, now),
                )
                self._db.commit()
            except sqlite3.IntegrityError as exc:
                self._db.rollback()
                raise ServiceError(
                    "PAYOUT_IN_PROGRESS",
                    "A payout is already in progress for this worker",
                    409,
                    {},
                ) from exc
            except ServiceError:
                self._db.rollback()
                raise
            except Exception:
                self._db.rollback()
                raise

        return self._require_payout(payout_id)

    def mark_payout_sent(
        self,
        payout_id: str,
        tx_signature: str,
        last_valid_block_height: int,
    ) -> bool:
        """
        Record a signed transfer before it is broadcast (REQUESTED -> TRANSFER_SENT).

        Returns False if the payout was no longer REQUESTED.
        """
        with self._lock:
            cursor = self._db.execute(
                "UPDATE payouts SET status = 'TRANSFER_SENT', tx_signature = ?, "
                "last_valid_block_height = ?, updated_at = ? "
                "WHERE payout_id = ? AND status = 'REQUESTED'",
                (tx_signature, last_valid_block_height, self._now(), payout_id),
            )
            self._db.commit()
        return cursor.rowcount == 1

    def finalize_payout(
        self,
        payout_id: str,
        status: str,
        error: str | None,
    ) -> tuple[dict[str, Any], dict[str, int]]:
        """
        Close an in-flight payout and move its amount from pending to locked.

        The balance move is applied at most once per payout; finalizing a
        payout whose balance was already applied only updates its status.

        Args:
            payout_id: Payout to close.
            status: CONFIRMED, or FAILED when the balance moves despite a
                failed transfer.
            error: Transfer error text to record, if any.

        Returns:
            (payout record, {"pending": N, "locked": N})
        """
        if status not in ("CONFIRMED", "FAILED"):
            msg = f"Cannot finalize payout with status {status}"
            raise ValueError(msg)

        with self._lock:
            now = self._now()
            try:
                self._db.execute("BEGIN IMMEDIATE")
                payout = self._db.execute(
                    "SELECT worker_id, amount, status, balance_applied FROM payouts "
                    "WHERE payout_id = ?",
                    (payout_id,),
                ).fetchone()
                if payout is None:
                    raise ServiceError("PAYOUT_NOT_FOUND", "Payout not found", 404, {})
                if payout["status"] not in IN_FLIGHT_PAYOUT_STATUSES:
                    raise ServiceError(
                        "PAYOUT_NOT_RETRYABLE",
                        f"Payout is already {payout['status']}",
                        409,
                        {},
                    )

                if not payout["balance_applied"]:
                    cursor = self._db.execute(
                        "UPDATE workers SET locked_balance = locked_balance + ?, "
                        "pending_balance = pending_balance - ?, updated_at = ? "
                        "WHERE worker_id = ? AND pending_balance >= ?",
                        (
                            payout["amount"],
                            payout["amount"],
                            now,
                            payout["worker_id"],
                            payout["amount"],
                        ),
                    )
                    if cursor.rowcount == 0:
                        raise ServiceError(
                            "NO_PENDING_BALANCE",
                            "Pending balance no longer covers this payout",
                            409,
                            {},
                        )

                self._db.execute(
                    "UPDATE payouts SET status = ?, error = ?, balance_applied = 1, "
                    "updated_at = ? WHERE payout_id = ?",
                    (status, error, now, payout_id),
                )
                balance = self._db.execute(
                    "SELECT pending_balance, locked_balance FROM workers WHERE worker_id = ?",
                    (payout["worker_id"],),
                ).fetchone()
                self._db.commit()
            except ServiceError:
                self._db.rollback()
                raise
            except Exception:
                self._db.rollback()
                raise

        return self._require_payout(payout_id), {
            "pending": cast("int", balance[0]),
            "locked": cast("int", balance[1]),
        }

    def fail_payout(self, payout_id: str, error: str) -> dict[str, Any]:
        """Mark an in-flight payout FAILED without touching balances."""
        with self._lock:
            self._db.execute(
                "UPDATE payouts SET status = 'FAILED', error = ?, updated_at = ? "
                "WHERE payout_id = ? AND status IN ('REQUESTED', 'TRANSFER_SENT')",
                (error, self._now(), payout_id),
            )
            self._db.commit()
        return self._require_payout(payout_id)

    def fail_sent_payout(self, payout_id: str, tx_signature: str, error: str) -> bool:
        """
        Mark a TRANSFER_SENT payout FAILED once its transfer is known not to land.

        Only applies while the payout still carries tx_signature, so a
        concurrent retry that already moved on is left alone.
        """
        with self._lock:
            cursor = self._db.execute(
                "UPDATE payouts SET status = 'FAILED', error = ?, updated_at = ? "
                "WHERE payout_id = ? AND status = 'TRANSFER_SENT' AND tx_signature = ?",
                (error, self._now(), payout_id, tx_signature),
            )
            self._db.commit()
        return cursor.rowcount == 1

    def reopen_payout(self, worker_id: str, payout_id: str) -> dict[str, Any]:
        """
        Put a FAILED payout back in flight for another transfer attempt.

        Raises:
            ServiceError: PAYOUT_NOT_FOUND, PAYOUT_NOT_RETRYABLE,
                NO_PENDING_BALANCE, PAYOUT_IN_PROGRESS.
        """
        with self._lock:
            now = self._now()
            try:
                self._db.execute("BEGIN IMMEDIATE")
                payout = self._db.execute(
                    "SELECT amount, status, balance_applied FROM payouts "
                    "WHERE payout_id = ? AND worker_id = ?",
                    (payout_id, worker_id),
                ).fetchone()
                if payout is None:
                    raise ServiceError("PAYOUT_NOT_FOUND", "Payout not found", 404, {})
                if payout["status"] != "FAILED":
                    raise ServiceError(
                        "PAYOUT_NOT_RETRYABLE",
                        "Only failed payouts can be retried",
                        409,
                        {"status": payout["status"]},
                    )

                if not payout["balance_applied"]:
                    worker = self._db.execute(
                        "SELECT pending_balance FROM workers WHERE worker_id = ?",
                        (worker_id,),
                    ).fetchone()
                    if worker is None or worker["pending_balance"] < payout["amount"]:
                        raise ServiceError(
                            "NO_PENDING_BALANCE",
                            "Pending balance no longer covers this payout",
                            400,
                            {},
                        )

                self._db.execute(
                    "UPDATE payouts SET status = 'REQUESTED', error = NULL, tx_signature = NULL, "
                    "last_valid_block_height = NULL, attempts = attempts + 1, updated_at = ? "
                    "WHERE payout_id = ?",
                    (now, payout_id),
                )
                self._db.commit()
            except sqlite3.IntegrityError as exc:
                self._db.rollback()
                raise ServiceError(
                    "PAYOUT_IN_PROGRESS",
                    "A payout is already in progress for this worker",
                    409,
                    {},
                ) from exc
            except ServiceError:
                self._db.rollback()
                raise
            except Exception:
                self._db.rollback()
                raise

        return self._require_payout(payout_id)

    def get_payout(self, payout_id: str) -> dict[str, Any] | None:
        """Look up a payout by ID. Returns None if not found."""
        with self._lock:
            row = self._db.execute(
                f"SELECT {_PAYOUT_COLUMNS_SQL} FROM payouts WHERE payout_id = ?",  # noqa: S608
                (payout_id,),
            ).fetchone()
        return None if row is None else self._payout_row(row)

    def list_payouts(self, worker_id: str) -> list[dict[str, Any]]:
        """A worker's payouts, newest first."""
        with self._lock:
            rows = self._db.execute(
                f"SELECT {_PAYOUT_COLUMNS_SQL} FROM payouts WHERE worker_id = ? "  # noqa: S608
                "ORDER BY created_at DESC, payout_id DESC",
                (worker_id,),
            ).fetchall()
        return [self._payout_row(row) for row in rows]

    def _require_payout(self, payout_id: str) -> dict[str, Any]:
        payout = self.get_payout(payout_id)
        if payout is None:
            msg = "Payout not found after update"
            raise RuntimeError(msg)
        return payout

    def _payout_row(self, row: sqlite3.Row) -> dict[str, Any]:
        payout = dict(row)
        payout["balance_applied"] = bool(payout["balance_applied"])
        return payout

    def close(self) -> None:
        """Close the database connection."""
        with self._lock:
            self._db.close()
