"""Tasks, submissions, payments and profiles: the business logic behind the routers."""

from __future__ import annotations

import math
import re
from typing import TYPE_CHECKING, Any

from task_market_service.core.exceptions import ServiceError
from task_market_service.logging import get_logger
from task_market_service.services.settlement import MAX_LAMPORTS

if TYPE_CHECKING:
    from task_market_service.services.market_store import MarketStore
    from task_market_service.services.settlement import SettlementEngine
    from task_market_service.services.storage_keys import DeliveryUrlMapper

LAMPORTS_PER_SOL = 1_000_000_000

_DIGITS_RE = re.compile(r"^[0-9]+$")


def parse_bounty(value: object) -> int:
    """
    Parse a task bounty in lamports.

    Accepts a positive integer or a string of decimal digits. Rejects
    bools, fractional numbers, anything <= 0 and amounts too large to store.
    """
    if isinstance(value, bool):
        raise ServiceError("INVALID_AMOUNT", "Amount must be a positive number", 400, {})
    if isinstance(value, int):
        amount = value
    elif isinstance(value, float) and value.is_integer():
        amount = int(value)
    elif isinstance(value, str) and _DIGITS_RE.match(value.strip()):
        amount = int(value.strip())
    else:
        raise ServiceError("INVALID_AMOUNT", "Amount must be a positive number", 400, {})
    if amount <= 0:
        raise ServiceError("INVALID_AMOUNT", "Amount must be a positive number", 400, {})
    if amount > MAX_LAMPORTS:
        raise ServiceError("INVALID_AMOUNT", "Amount is too large", 400, {})
    return amount


def sol_to_lamports(value: object) -> int:
    """Convert a positive SOL amount to lamports, rounding to the nearest lamport."""
    if (
        isinstance(value, bool)
        or not isinstance(value, (int, float))
        or not math.isfinite(value)
        or value <= 0
    ):
        raise ServiceError("INVALID_AMOUNT", "Valid amount is required", 400, {})
    lamports = round(value * LAMPORTS_PER_SOL)
    if lamports <= 0:
        raise ServiceError("INVALID_AMOUNT", "Amount is smaller than one lamport", 400, {})
    if lamports > MAX_LAMPORTS:
        raise ServiceError("INVALID_AMOUNT", "Amount is too large", 400, {})
    return lamports


def lamports_to_sol(lamports: int) -> float:
    return lamports / LAMPORTS_PER_SOL


class TaskManager:
    """
    Orchestrates tasks and submissions between storage keys and database rows.

    Submission crediting is delegated to the SettlementEngine so the
    submission insert and the reward credit share one transaction.
    """

    def __init__(
        self,
        store: MarketStore,
        settlement: SettlementEngine,
        delivery: DeliveryUrlMapper,
    ) -> None:
        self._store = store
        self._settlement = settlement
        self._delivery = delivery
        self._logger = get_logger(__name__)

    # ------------------------------------------------------------------
    # Private helper methods
    # ------------------------------------------------------------------

    def _task_to_response(self, row: dict[str, Any]) -> dict[str, Any]:
        return {
            "id": row["task_id"],
            "title": row["title"],
            "description": row["description"],
            "fileUrl": row["file_url"],
            "status": row["status"],
            "amount": row["amount"],
            "createdAt": row["created_at"],
        }

    def _require_user(self, user_id: str) -> dict[str, Any]:
        user = self._store.get_account("user", user_id)
        if user is None:
            raise ServiceError("USER_NOT_FOUND", "User not found", 404, {})
        return user

    def _require_worker(self, worker_id: str) -> dict[str, Any]:
        worker = self._store.get_account("worker", worker_id)
        if worker is None:
            raise ServiceError("WORKER_NOT_FOUND", "Worker not found", 404, {})
        return worker

    # ------------------------------------------------------------------
    # Tasks
    # ------------------------------------------------------------------

    def create_task(
        self,
        user_id: str,
        title: object,
        description: object,
        amount: object,
        file_url: object,
    ) -> dict[str, Any]:
        """
        Create a PENDING task from an uploaded ZIP under uploads/.

        Raises:
            ServiceError: INVALID_PAYLOAD, INVALID_AMOUNT, INVALID_STORAGE_KEY.
        """
        if title is None or amount is None or file_url is None:
            raise ServiceError(
                "INVALID_PAYLOAD",
                "Title, amount, and fileUrl are required",
                400,
                {},
            )
        clean_title = str(title).strip()
        if not clean_title:
            raise ServiceError("INVALID_PAYLOAD", "Title and amount cannot be empty", 400, {})
        clean_description = "" if description is None else str(description).strip()

        bounty = parse_bounty(amount)
        key, delivery_url = self._delivery.resolve(file_url, "uploads")

        task = self._store.insert_task(user_id, clean_title, clean_description, delivery_url, bounty)
        self._logger.info(
            "Task created",
            extra={"task_id": task["task_id"], "user_id": user_id, "amount": bounty, "key": key},
        )
        return self._task_to_response(task)

    def complete_task(self, user_id: str, task_id: str) -> dict[str, Any]:
        """
        Approve a task's work: IN_PROGRESS -> COMPLETED. Owner only.

        Raises:
            ServiceError: TASK_NOT_FOUND, FORBIDDEN, INVALID_STATUS_TRANSITION.
        """
        task = self._store.get_task(task_id)
        if task is None:
            raise ServiceError("TASK_NOT_FOUND", "Task not found", 404, {})
        if task["user_id"] != user_id:
            raise ServiceError("FORBIDDEN", "You can only complete your own tasks", 403, {})

        if self._store.complete_task(task_id) == 0:
            current = self._store.get_task(task_id)
            status = current["status"] if current is not None else task["status"]
            raise ServiceError(
                "INVALID_STATUS_TRANSITION",
                f"Cannot complete a task in status {status}",
                409,
                {"status": status},
            )

        completed = self._store.get_task(task_id)
        if completed is None:
            msg = "Task not found after update"
            raise RuntimeError(msg)
        self._logger.info("Task completed", extra={"task_id": task_id, "user_id": user_id})
        return self._task_to_response(completed)

    def list_tasks_for_owner(self, user_id: str) -> list[dict[str, Any]]:
        tasks = []
        for row in self._store.list_tasks_for_user(user_id):
            task = self._task_to_response(row)
            task["submissionsCount"] = row["submissions_count"]
            task["submissions"] = [
                {
                    "id": sub["submission_id"],
                    "fileUrl": sub["file_url"],
                    "createdAt": sub["created_at"],
                    "worker": {"id": sub["worker_id"]},
                }
                for sub in row["submissions"]
            ]
            tasks.append(task)
        return tasks

    def list_all_tasks(self, worker_id: str) -> list[dict[str, Any]]:
        """Every task, with whether this worker has already submitted."""
        tasks = []
        for row in self._store.list_all_tasks(worker_id):
            task = self._task_to_response(row)
            task["submissionsCount"] = row["submissions_count"]
            task["hasSubmitted"] = row["has_submitted"]
            tasks.append(task)
        return tasks

    def list_open_tasks(self) -> list[dict[str, Any]]:
        """Every task with its submission count."""
        tasks = []
        for row in self._store.list_all_tasks(None):
            task = self._task_to_response(row)
            task["submissionsCount"] = row["submissions_count"]
            tasks.append(task)
        return tasks

    # ------------------------------------------------------------------
    # Submissions
    # ------------------------------------------------------------------

    def create_submission(
        self,
        worker_id: str,
        task_id: object,
        file_url: object,
    ) -> dict[str, Any]:
        """
        Record a worker's ZIP under submissions/ and credit the reward.

        Raises:
            ServiceError: INVALID_PAYLOAD, INVALID_STORAGE_KEY, TASK_NOT_FOUND,
                TASK_CLOSED, DUPLICATE_SUBMISSION.
        """
        if not isinstance(task_id, str) or not task_id.strip():
            raise ServiceError("INVALID_PAYLOAD", "taskId and fileUrl are required", 400, {})
        if file_url is None:
            raise ServiceError("INVALID_PAYLOAD", "taskId and fileUrl are required", 400, {})

        clean_task_id = task_id.strip()
        if self._store.get_task(clean_task_id) is None:
            raise ServiceError("TASK_NOT_FOUND", "Task not found", 404, {})

        _, delivery_url = self._delivery.resolve(file_url, "submissions")
        result = self._settlement.credit_submission(clean_task_id, worker_id, delivery_url)

        submission = result["submission"]
        return {
            "submission": {
                "id": submission["submission_id"],
                "fileUrl": submission["file_url"],
                "taskId": submission["task_id"],
                "createdAt": submission["created_at"],
            },
            "rewardEarned": result["reward"],
            "newPendingBalance": result["pending_balance"],
        }

    def list_submissions_for_worker(self, worker_id: str) -> list[dict[str, Any]]:
        return [
            {
                "id": row["submission_id"],
                "taskId": row["task_id"],
                "taskTitle": row["task_title"],
                "taskStatus": row["task_status"],
                "fileUrl": row["file_url"],
                "createdAt": row["created_at"],
                "reward": row["reward"],
                "taskAmount": row["task_amount"],
            }
            for row in self._store.list_submissions_for_worker(worker_id)
        ]

    # ------------------------------------------------------------------
    # Payments and profiles
    # ------------------------------------------------------------------

    def record_payment(self, user_id: str, amount_sol: object) -> dict[str, Any]:
        """Record a funding payment given in SOL; stored in lamports."""
        lamports = sol_to_lamports(amount_sol)
        payment = self._store.insert_payment(user_id, lamports)
        self._logger.info(
            "Payment recorded",
            extra={"payment_id": payment["payment_id"], "user_id": user_id, "amount": lamports},
        )
        return {
            "id": payment["payment_id"],
            "amount": lamports_to_sol(lamports),
            "amountLamports": lamports,
            "createdAt": payment["created_at"],
        }

    def user_profile(self, user_id: str) -> dict[str, Any]:
        user = self._require_user(user_id)
        stats = self._store.user_stats(user_id)
        return {
            "id": user["id"],
            "walletAddress": user["wallet_address"],
            "createdAt": user["created_at"],
            "updatedAt": user["updated_at"],
            "stats": {
                "totalTasks": stats["total_tasks"],
                "completedTasks": stats["completed_tasks"],
                "inProgressTasks": stats["total_tasks"] - stats["completed_tasks"],
                "totalPayments": stats["total_payments"],
            },
        }

    def worker_profile(self, worker_id: str) -> dict[str, Any]:
        worker = self._require_worker(worker_id)
        stats = self._store.worker_stats(worker_id)
        return {
            "id": worker["id"],
            "walletAddress": worker["wallet_address"],
            "createdAt": worker["created_at"],
            "stats": {
                "totalSubmissions": stats["total_submissions"],
                "pendingBalance": worker["pending_balance"],
                "lockedBalance": worker["locked_balance"],
                "completedTasks": stats["completed_tasks"],
            },
        }

    def get_stats(self) -> dict[str, int]:
        """Counts and balance totals for the health endpoint."""
        totals = self._store.balance_totals()
        return {
            "total_users": self._store.count_accounts("user"),
            "total_workers": self._store.count_accounts("worker"),
            "total_tasks": self._store.count_tasks(),
            "total_pending": totals["pending"],
            "total_locked": totals["locked"],
        }
