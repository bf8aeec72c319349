"""Wallet challenge/response sign-in for users and workers."""

from __future__ import annotations

import secrets
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

import base58
from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives.asymmetric.ed25519 import Ed25519PublicKey
from solders.pubkey import Pubkey

from task_market_service.core.exceptions import ServiceError
from task_market_service.logging import get_logger

if TYPE_CHECKING:
    from task_market_service.services.market_store import MarketStore
    from task_market_service.services.token_service import TokenService

CHALLENGE_PREFIX = "Sign this message to authenticate: "
SIGNATURE_BYTES = 64


@dataclass(frozen=True)
class SignedMessageSignIn:
    """Sign-in by signing the current challenge with the wallet key."""

    public_key: str
    signature: bytes
    message: str


@dataclass(frozen=True)
class LegacyAddressSignIn:
    """Sign-in by bare wallet address (workers only, when enabled)."""

    wallet_address: str


SignInRequest = SignedMessageSignIn | LegacyAddressSignIn


def challenge_message(nonce: str) -> str:
    return f"{CHALLENGE_PREFIX}{nonce}"


def new_nonce() -> str:
    return secrets.token_hex(16)


def parse_public_key(value: object) -> str:
    """Normalize a base58 Solana address, raising ServiceError on failure."""
    if not isinstance(value, str) or not value.strip():
        raise ServiceError("INVALID_PAYLOAD", "publicKey is required", 400, {})
    try:
        Pubkey.from_string(value.strip())
    except ValueError as exc:
        raise ServiceError("INVALID_PUBLIC_KEY", "Invalid Solana wallet address", 400, {}) from exc
    return value.strip()


def decode_signature(value: object) -> bytes:
    """Accept a signature as a list of byte values or a base58 string."""
    if isinstance(value, list):
        if len(value) != SIGNATURE_BYTES or not all(
            isinstance(b, int) and not isinstance(b, bool) and 0 <= b <= 255 for b in value
        ):
            raise ServiceError(
                "INVALID_PAYLOAD",
                f"signature must be an array of {SIGNATURE_BYTES} bytes",
                400,
                {},
            )
        return bytes(value)

    if isinstance(value, str):
        try:
            raw = base58.b58decode(value.strip())
        except ValueError as exc:
            raise ServiceError("INVALID_PAYLOAD", "signature is not valid base58", 400, {}) from exc
        if len(raw) != SIGNATURE_BYTES:
            raise ServiceError(
                "INVALID_PAYLOAD",
                f"signature must decode to {SIGNATURE_BYTES} bytes",
                400,
                {},
            )
        return raw

    raise ServiceError("INVALID_PAYLOAD", "signature must be a byte array or base58 string", 400, {})


def parse_sign_in(data: dict[str, Any]) -> SignInRequest:
    """
    Turn a sign-in body into exactly one request variant.

    A body carrying any of publicKey/signature/message is a signed-message
    sign-in and must carry all three. Otherwise a walletAddress selects
    the legacy variant.
    """
    signed_fields = ("publicKey", "signature", "message")
    if any(data.get(name) is not None for name in signed_fields):
        if not all(data.get(name) for name in signed_fields):
            raise ServiceError(
                "INVALID_PAYLOAD",
                "publicKey, signature, and message are required",
                400,
                {},
            )
        message = data["message"]
        if not isinstance(message, str):
            raise ServiceError("INVALID_PAYLOAD", "message must be a string", 400, {})
        public_key = parse_public_key(data["publicKey"])
        return SignedMessageSignIn(
            public_key=public_key,
            signature=decode_signature(data["signature"]),
            message=message,
        )

    wallet_address = data.get("walletAddress")
    if wallet_address is not None:
        return LegacyAddressSignIn(wallet_address=parse_public_key(wallet_address))

    raise ServiceError(
        "INVALID_PAYLOAD",
        "publicKey, signature, and message are required",
        400,
        {},
    )


def verify_wallet_signature(public_key: str, message: str, signature: bytes) -> bool:
    """Check an Ed25519 signature over the UTF-8 message with the wallet's key."""
    verifier = Ed25519PublicKey.from_public_bytes(bytes(Pubkey.from_string(public_key)))
    try:
        verifier.verify(signature, message.encode("utf-8"))
    except InvalidSignature:
        return False
    return True


class WalletAuthenticator:
    """Runs the nonce challenge flow and issues namespace credentials."""

    def __init__(
        self,
        store: MarketStore,
        token_service: TokenService,
        allow_legacy_worker_signin: bool,
    ) -> None:
        self._store = store
        self._token_service = token_service
        self._allow_legacy_worker_signin = allow_legacy_worker_signin
        self._logger = get_logger(__name__)

    def issue_challenge(self, role: str, public_key: object) -> str:
        """Find or create the account for the wallet and return its challenge message."""
        wallet = parse_public_key(public_key)
        account, created = self._store.get_or_create_account(role, wallet, new_nonce())
        if created:
            self._logger.info(
                "Account created",
                extra={"role": role, "account_id": account["id"], "wallet_address": wallet},
            )
        return challenge_message(account["nonce"])

    def sign_in(self, role: str, request: SignInRequest) -> dict[str, Any]:
        """
        Authenticate a wallet and issue a credential.

        Returns:
            {"token": "...", "account": {...}}

        Raises:
            ServiceError: WALLET_NOT_REGISTERED (404), INVALID_SIGNATURE (401),
                LEGACY_SIGNIN_DISABLED (400).
        """
        if isinstance(request, SignedMessageSignIn):
            account = self._sign_in_with_signature(role, request)
        elif isinstance(request, LegacyAddressSignIn):
            account = self._sign_in_with_address(role, request)
        else:
            msg = f"Unsupported sign-in request: {type(request).__name__}"
            raise TypeError(msg)

        token = self._token_service.issue(role, account["id"])
        self._logger.info("Signed in", extra={"role": role, "account_id": account["id"]})
        return {"token": token, "account": account}

    def _sign_in_with_signature(self, role: str, request: SignedMessageSignIn) -> dict[str, Any]:
        account = self._store.get_account_by_wallet(role, request.public_key)
        if account is None:
            raise ServiceError(
                "WALLET_NOT_REGISTERED",
                "Wallet not registered. Please request a nonce first.",
                404,
                {},
            )

        nonce = account["nonce"]
        if request.message != challenge_message(nonce):
            raise ServiceError("INVALID_SIGNATURE", "Invalid signature.", 401, {})
        if not verify_wallet_signature(request.public_key, request.message, request.signature):
            raise ServiceError("INVALID_SIGNATURE", "Invalid signature.", 401, {})

        # Single-use challenge: losing this race means the nonce was already spent.
        if not self._store.rotate_nonce(role, account["id"], nonce, new_nonce()):
            raise ServiceError("INVALID_SIGNATURE", "Invalid signature.", 401, {})
        return account

    def _sign_in_with_address(self, role: str, request: LegacyAddressSignIn) -> dict[str, Any]:
        if role != "worker" or not self._allow_legacy_worker_signin:
            raise ServiceError(
                "LEGACY_SIGNIN_DISABLED",
                "publicKey, signature, and message are required",
                400,
                {},
            )
        account, created = self._store.get_or_create_account(
            role,
            request.wallet_address,
            new_nonce(),
        )
        self._logger.info(
            "Legacy address sign-in",
            extra={"account_id": account["id"], "created": created},
        )
        return account
