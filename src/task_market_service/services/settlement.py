"""Worker reward accrual and payout settlement."""

from __future__ import annotations

from typing import TYPE_CHECKING, Any, NoReturn

from task_market_service.clients.solana_transfer import FAILED, LANDED, NOT_FOUND
from task_market_service.core.exceptions import ServiceError
from task_market_service.logging import get_logger

if TYPE_CHECKING:
    from task_market_service.clients.solana_transfer import SolanaTransferClient
    from task_market_service.services.market_store import MarketStore

# Largest amount an SQLite INTEGER column holds
MAX_LAMPORTS = 2**63 - 1

TRANSFER_CONFIRMED_NOTE = "SOL transferred to wallet"
TRANSFERS_DISABLED_NOTE = (
    "Transfers disabled: configure a payer key to enable automatic SOL transfers"
)


def reward_for(amount: int, reward_pct: int) -> int:
    """Reward for one submission: floor(amount * reward_pct / 100)."""
    return amount * reward_pct // 100


def payout_to_response(payout: dict[str, Any]) -> dict[str, Any]:
    """Convert a payout record to its API representation."""
    return {
        "id": payout["payout_id"],
        "amount": payout["amount"],
        "destination": payout["destination"],
        "status": payout["status"],
        "txSignature": payout["tx_signature"],
        "error": payout["error"],
        "balanceApplied": payout["balance_applied"],
        "attempts": payout["attempts"],
        "createdAt": payout["created_at"],
        "updatedAt": payout["updated_at"],
    }


class SettlementEngine:
    """
    Owns the per-worker balance pair (pending, locked).

    Credits accrue to pending atomically with the submission that earned
    them. A payout is a persisted state machine:

        REQUESTED -> TRANSFER_SENT -> CONFIRMED | FAILED

    The pending -> locked move happens only when the payout is finalized.
    Under the "strict" policy a failed transfer leaves pending untouched and
    the payout can be retried. Under the "optimistic" policy the balance is
    moved anyway and the FAILED row is the audit record of the failure.
    """

    def __init__(
        self,
        store: MarketStore,
        transfer_client: SolanaTransferClient,
        reward_pct: int,
        failure_policy: str,
    ) -> None:
        if failure_policy not in ("strict", "optimistic"):
            msg = f"Unknown transfer failure policy: {failure_policy}"
            raise ValueError(msg)
        self._store = store
        self._transfer_client = transfer_client
        self._reward_pct = reward_pct
        self._failure_policy = failure_policy
        self._logger = get_logger(__name__)

    @property
    def reward_pct(self) -> int:
        return self._reward_pct

    @property
    def failure_policy(self) -> str:
        return self._failure_policy

    def reward_for(self, amount: int) -> int:
        """Reward a submission to a task with this bounty earns."""
        return reward_for(amount, self._reward_pct)

    # ------------------------------------------------------------------
    # Credit
    # ------------------------------------------------------------------

    def credit_submission(self, task_id: str, worker_id: str, file_url: str) -> dict[str, Any]:
        """
        Record a submission and credit its reward in one transaction.

        Returns:
            {"submission": {...}, "reward": N, "pending_balance": N}
        """
        result = self._store.insert_submission_with_credit(
            task_id,
            worker_id,
            file_url,
            self._reward_pct,
        )
        self._logger.info(
            "Submission credited",
            extra={
                "task_id": task_id,
                "worker_id": worker_id,
                "reward": result["reward"],
                "pending_balance": result["pending_balance"],
            },
        )
        return result

    # ------------------------------------------------------------------
    # Balances
    # ------------------------------------------------------------------

    def get_balance(self, worker_id: str) -> dict[str, int]:
        """Current pending and locked balance of a worker."""
        worker = self._store.get_account("worker", worker_id)
        if worker is None:
            raise ServiceError("WORKER_NOT_FOUND", "Worker not found", 404, {})
        return {"pending": worker["pending_balance"], "locked": worker["locked_balance"]}

    def list_payouts(self, worker_id: str) -> list[dict[str, Any]]:
        """Payout history of a worker, newest first."""
        return [payout_to_response(payout) for payout in self._store.list_payouts(worker_id)]

    # ------------------------------------------------------------------
    # Payout
    # ------------------------------------------------------------------

    async def payout(self, worker_id: str) -> dict[str, Any]:
        """
        Pay out the worker's entire pending balance.

        Raises:
            ServiceError: WORKER_NOT_FOUND, NO_PENDING_BALANCE (400),
                PAYOUT_IN_PROGRESS (409), TRANSFER_FAILED (502, strict policy).
        """
        payout = self._store.reserve_payout(worker_id)
        self._logger.info(
            "Payout requested",
            extra={
                "payout_id": payout["payout_id"],
                "worker_id": worker_id,
                "amount": payout["amount"],
            },
        )
        return await self._settle(payout)

    async def retry_payout(self, worker_id: str, payout_id: str) -> dict[str, Any]:
        """
        Re-attempt a FAILED or unconfirmed payout owned by the worker.

        A payout that still carries a transfer signature is reconciled
        first: a transfer that landed is finalized, and a new transfer is
        only sent once the old one failed on chain or its blockhash expired.

        Raises:
            ServiceError: PAYOUT_NOT_FOUND, PAYOUT_NOT_RETRYABLE,
                PAYOUT_IN_PROGRESS, NO_PENDING_BALANCE, TRANSFER_FAILED,
                TRANSFER_UNCONFIRMED.
        """
        payout = self._store.get_payout(payout_id)
        if payout is None or payout["worker_id"] != worker_id:
            raise ServiceError("PAYOUT_NOT_FOUND", "Payout not found", 404, {})

        if payout["tx_signature"] is not None and payout["status"] in ("TRANSFER_SENT", "FAILED"):
            settled = await self._reconcile(payout)
            if settled is not None:
                return settled

        payout = self._store.reopen_payout(worker_id, payout_id)
        self._logger.info(
            "Payout retry requested",
            extra={
                "payout_id": payout_id,
                "worker_id": worker_id,
                "attempts": payout["attempts"],
            },
        )
        return await self._settle(payout)

    async def _reconcile(self, payout: dict[str, Any]) -> dict[str, Any] | None:
        """
        Resolve the previous transfer of a payout before anything is resent.

        Returns the settled result if that transfer landed, or None when a
        new transfer may be sent.
        """
        payout_id = payout["payout_id"]
        signature = payout["tx_signature"]
        state = await self._transfer_client.signature_state(signature)

        if state.status == LANDED:
            if payout["status"] == "FAILED":
                self._store.reopen_payout(payout["worker_id"], payout_id)
                self._store.mark_payout_sent(
                    payout_id,
                    signature,
                    payout["last_valid_block_height"],
                )
            final, balance = self._store.finalize_payout(payout_id, "CONFIRMED", None)
            self._logger.info(
                "Payout reconciled",
                extra={"payout_id": payout_id, "tx_signature": signature},
            )
            return self._result(final, balance, TRANSFER_CONFIRMED_NOTE)

        if state.status == FAILED:
            self._store.fail_sent_payout(payout_id, signature, f"Transfer failed on chain: {state.error}")
            return None

        # FAILED is only recorded once a transfer is known not to land
        if payout["status"] == "FAILED":
            return None

        expiry = payout["last_valid_block_height"]
        if state.status == NOT_FOUND and expiry is not None:
            if await self._transfer_client.block_height() > expiry:
                self._store.fail_sent_payout(
                    payout_id,
                    signature,
                    "Transfer expired before confirmation",
                )
                return None

        raise ServiceError(
            "PAYOUT_IN_PROGRESS",
            "The previous transfer may still land; retry after it expires",
            409,
            {"payout": payout_to_response(payout)},
        )

    async def _settle(self, payout: dict[str, Any]) -> dict[str, Any]:
        payout_id = payout["payout_id"]

        if not self._transfer_client.enabled:
            self._logger.warning(
                "Payer key not configured, skipping transfer",
                extra={"payout_id": payout_id},
            )
            final, balance = self._store.finalize_payout(payout_id, "CONFIRMED", None)
            return self._result(final, balance, TRANSFERS_DISABLED_NOTE)

        try:
            prepared = await self._transfer_client.prepare(payout["destination"], payout["amount"])
        except ServiceError as exc:
            return self._handle_transfer_failure(payout, exc.message)
        except Exception as exc:
            return self._handle_transfer_failure(payout, str(exc) or type(exc).__name__)

        # The signature is stored before broadcast so an unanswered transfer can be reconciled
        try:
            recorded = self._store.mark_payout_sent(
                payout_id,
                prepared.signature,
                prepared.last_valid_block_height,
            )
        except Exception:
            self._store.fail_payout(payout_id, "Could not record the transfer")
            raise
        if not recorded:
            raise ServiceError(
                "PAYOUT_IN_PROGRESS",
                "Payout changed state before its transfer was sent",
                409,
                {},
            )

        try:
            await self._transfer_client.broadcast(prepared)
        except ServiceError as exc:
            if exc.error == "TRANSFER_FAILED":
                return self._handle_transfer_failure(payout, exc.message)
            self._raise_unconfirmed(payout_id, exc.message)
        self._logger.info(
            "Payout transfer sent",
            extra={"payout_id": payout_id, "tx_signature": prepared.signature},
        )

        try:
            state = await self._transfer_client.confirm(prepared.signature)
        except ServiceError as exc:
            self._raise_unconfirmed(payout_id, exc.message)

        if state.status == FAILED:
            return self._handle_transfer_failure(payout, f"Transfer failed on chain: {state.error}")
        if state.status != LANDED:
            self._raise_unconfirmed(payout_id, "Transfer was not confirmed in time")

        final, balance = self._store.finalize_payout(payout_id, "CONFIRMED", None)
        self._logger.info(
            "Payout confirmed",
            extra={
                "payout_id": payout_id,
                "worker_id": final["worker_id"],
                "amount": final["amount"],
                "tx_signature": final["tx_signature"],
            },
        )
        return self._result(final, balance, TRANSFER_CONFIRMED_NOTE)

    def _raise_unconfirmed(self, payout_id: str, reason: str) -> NoReturn:
        """Leave the payout TRANSFER_SENT; its outcome is settled by a later retry."""
        self._logger.warning(
            "Payout transfer unconfirmed",
            extra={"payout_id": payout_id, "error": reason},
        )
        payout = self._store.get_payout(payout_id)
        raise ServiceError(
            "TRANSFER_UNCONFIRMED",
            "Transfer was sent but is not confirmed yet; retry the payout to reconcile it",
            504,
            {"payout": None if payout is None else payout_to_response(payout)},
        )

    def _handle_transfer_failure(self, payout: dict[str, Any], error: str) -> dict[str, Any]:
        payout_id = payout["payout_id"]
        self._logger.warning(
            "Payout transfer failed",
            extra={
                "payout_id": payout_id,
                "worker_id": payout["worker_id"],
                "policy": self._failure_policy,
                "error": error,
            },
        )

        if self._failure_policy == "optimistic":
            final, balance = self._store.finalize_payout(payout_id, "FAILED", error)
            return self._result(final, balance, f"Transfer failed: {error}")

        failed = self._store.fail_payout(payout_id, error)
        raise ServiceError(
            "TRANSFER_FAILED",
            "Payout transfer failed; pending balance was not changed",
            502,
            {"payout": payout_to_response(failed)},
        )

    def _result(
        self,
        payout: dict[str, Any],
        balance: dict[str, int],
        note: str,
    ) -> dict[str, Any]:
        return {
            "balance": balance,
            "payoutAmount": payout["amount"],
            "transactionNote": note,
            "payout": payout_to_response(payout),
        }
