"""Async Solana client that pays workers with System Program transfers."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import Any

import base58
from solana.exceptions import SolanaRpcException
from solana.rpc.async_api import AsyncClient
from solana.rpc.commitment import Confirmed
from solana.rpc.core import RPCException
from solana.rpc.types import TxOpts
from solders.keypair import Keypair
from solders.message import Message
from solders.pubkey import Pubkey
from solders.signature import Signature
from solders.system_program import TransferParams, transfer
from solders.transaction import Transaction
from solders.transaction_status import TransactionConfirmationStatus

from task_market_service.core.exceptions import ServiceError
from task_market_service.logging import get_logger

SEED_BYTES = 32
SECRET_KEY_BYTES = 64

# Signature states as seen by the cluster
LANDED = "LANDED"
FAILED = "FAILED"
NOT_FOUND = "NOT_FOUND"
PENDING = "PENDING"

_CONFIRMED_LEVELS = (TransactionConfirmationStatus.Confirmed, TransactionConfirmationStatus.Finalized)
_POLL_INTERVAL_SECONDS = 0.5


@dataclass(frozen=True)
class PreparedTransfer:
    """A signed transfer that has not been broadcast yet."""

    signature: str
    transaction: bytes
    last_valid_block_height: int


@dataclass(frozen=True)
class SignatureState:
    status: str
    error: str | None = None


def load_payer(secret: str) -> Keypair:
    """
    Load the payer keypair from its base58 secret.

    Accepts the 64-byte secret key wallets export and a bare 32-byte seed.
    """
    try:
        raw = base58.b58decode(secret.strip())
    except ValueError as exc:
        msg = "Payer private key must be base58 encoded"
        raise ValueError(msg) from exc

    if len(raw) == SECRET_KEY_BYTES:
        return Keypair.from_bytes(raw)
    if len(raw) == SEED_BYTES:
        return Keypair.from_seed(raw)
    msg = "Payer private key must be a base58-encoded 64-byte secret key"
    raise ValueError(msg)


def unconfirmed(message: str, details: dict[str, Any] | None = None) -> ServiceError:
    """Error for a transfer whose outcome on chain is not known yet."""
    return ServiceError("TRANSFER_UNCONFIRMED", message, 504, details or {})


class SolanaTransferClient:
    """
    Sends lamports from the platform payer wallet to worker wallets.

    A transfer is prepared (signed against a recent blockhash), then
    broadcast, then confirmed. The signature is known before broadcast so
    callers can persist it first. When no payer key is configured the
    client is disabled for sending but can still look up signatures.
    """

    def __init__(
        self,
        rpc_url: str,
        payer_private_key: str | None,
        confirm_timeout_seconds: int,
        rpc_client: Any | None = None,
    ) -> None:
        self._rpc_url = rpc_url
        self._payer = load_payer(payer_private_key) if payer_private_key else None
        self._confirm_timeout_seconds = confirm_timeout_seconds
        if rpc_client is None:
            rpc_client = AsyncClient(rpc_url, commitment=Confirmed, timeout=confirm_timeout_seconds)
        self._client = rpc_client
        self._logger = get_logger(__name__)

    @property
    def enabled(self) -> bool:
        return self._payer is not None

    @property
    def payer_address(self) -> str | None:
        return None if self._payer is None else str(self._payer.pubkey())

    async def prepare(self, destination: str, lamports: int) -> PreparedTransfer:
        """
        Build and sign a transfer of lamports to destination.

        Nothing is sent to the cluster except the blockhash lookup.

        Raises:
            ServiceError: TRANSFER_FAILED (502) on an invalid destination or
                when no blockhash could be fetched.
        """
        if self._payer is None:
            msg = "Transfer client has no payer key configured"
            raise RuntimeError(msg)
        if lamports <= 0:
            msg = f"Transfer amount must be positive, got {lamports}"
            raise ValueError(msg)

        try:
            recipient = Pubkey.from_string(destination)
        except ValueError as exc:
            raise ServiceError(
                "TRANSFER_FAILED",
                f"Invalid destination address: {destination}",
                502,
                {},
            ) from exc

        try:
            response = await self._client.get_latest_blockhash(commitment=Confirmed)
        except (RPCException, SolanaRpcException) as exc:
            self._logger.warning(
                "Blockhash lookup failed",
                extra={"error": str(exc), "rpc_url": self._rpc_url},
            )
            raise ServiceError(
                "TRANSFER_FAILED",
                f"Solana RPC request failed: {exc}",
                502,
                {},
            ) from exc
        blockhash = response.value.blockhash

        instruction = transfer(
            TransferParams(
                from_pubkey=self._payer.pubkey(),
                to_pubkey=recipient,
                lamports=lamports,
            )
        )
        message = Message.new_with_blockhash([instruction], self._payer.pubkey(), blockhash)
        transaction = Transaction([self._payer], message, blockhash)

        return PreparedTransfer(
            signature=str(transaction.signatures[0]),
            transaction=bytes(transaction),
            last_valid_block_height=response.value.last_valid_block_height,
        )

    async def broadcast(self, prepared: PreparedTransfer) -> None:
        """
        Submit a prepared transfer.

        Raises:
            ServiceError: TRANSFER_FAILED (502) when the node rejects the
                transaction, TRANSFER_UNCONFIRMED (504) when the request
                failed in a way that may still have delivered it.
        """
        try:
            await self._client.send_raw_transaction(
                prepared.transaction,
                opts=TxOpts(skip_confirmation=True, preflight_commitment=Confirmed),
            )
        except RPCException as exc:
            raise ServiceError(
                "TRANSFER_FAILED",
                f"Transfer rejected: {exc}",
                502,
                {"tx_signature": prepared.signature},
            ) from exc
        except SolanaRpcException as exc:
            self._logger.warning(
                "Transfer broadcast outcome unknown",
                extra={"tx_signature": prepared.signature, "error": str(exc)},
            )
            raise unconfirmed(
                f"Solana RPC request failed: {exc}",
                {"tx_signature": prepared.signature},
            ) from exc

        self._logger.info("Solana transfer submitted", extra={"tx_signature": prepared.signature})

    async def signature_state(self, signature: str) -> SignatureState:
        """
        Look up a signature, searching the cluster's transaction history.

        Raises:
            ServiceError: TRANSFER_UNCONFIRMED (504) if the RPC is unreachable.
        """
        try:
            response = await self._client.get_signature_statuses(
                [Signature.from_string(signature)],
                search_transaction_history=True,
            )
        except (RPCException, SolanaRpcException) as exc:
            raise unconfirmed(
                f"Solana RPC request failed: {exc}",
                {"tx_signature": signature},
            ) from exc

        status = response.value[0] if response.value else None
        if status is None:
            return SignatureState(NOT_FOUND)
        if status.err is not None:
            return SignatureState(FAILED, str(status.err))
        if status.confirmation_status in _CONFIRMED_LEVELS:
            return SignatureState(LANDED)
        # Rooted entries from history may carry neither field
        if status.confirmation_status is None and status.confirmations is None:
            return SignatureState(LANDED)
        return SignatureState(PENDING)

    async def block_height(self) -> int:
        """Current confirmed block height, used to tell whether a blockhash expired."""
        try:
            response = await self._client.get_block_height(commitment=Confirmed)
        except (RPCException, SolanaRpcException) as exc:
            raise unconfirmed(f"Solana RPC request failed: {exc}") from exc
        return response.value

    async def confirm(self, signature: str) -> SignatureState:
        """
        Poll until the transaction lands or fails, up to the confirm timeout.

        Returns PENDING when the timeout elapses first; the transaction
        may still land until its blockhash expires.
        """
        try:
            return await asyncio.wait_for(
                self._wait_for_state(signature),
                timeout=self._confirm_timeout_seconds,
            )
        except TimeoutError:
            self._logger.warning(
                "Transfer not confirmed in time",
                extra={"tx_signature": signature, "timeout": self._confirm_timeout_seconds},
            )
            return SignatureState(PENDING)

    async def _wait_for_state(self, signature: str) -> SignatureState:
        while True:
            state = await self.signature_state(signature)
            if state.status in (LANDED, FAILED):
                return state
            await asyncio.sleep(_POLL_INTERVAL_SECONDS)

    async def close(self) -> None:
        """Close the underlying HTTP connection pool."""
        await self._client.close()
