"""Shared test helpers: config files, wallets and seeded data."""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

import base58
from cryptography.hazmat.primitives.asymmetric.ed25519 import Ed25519PrivateKey

if TYPE_CHECKING:
    from pathlib import Path

    from task_market_service.services.market_store import MarketStore

USER_SECRET = "test-user-secret-0123456789abcdef0123456789"
WORKER_SECRET = "test-worker-secret-0123456789abcdef012345678"
DELIVERY_BASE_URL = "https://cdn.example.net"
ONE_SOL = 1_000_000_000


def write_config(
    tmp_path: Path,
    *,
    payer_private_key: str | None = None,
    transfer_failure_policy: str = "strict",
    allow_legacy_worker_signin: bool = False,
    reward_pct: int = 10,
    max_body_size: int = 1048576,
) -> Path:
    """Write a complete config.yaml under tmp_path and return its path."""
    payer = "null" if payer_private_key is None else f'"{payer_private_key}"'
    config_content = f"""\
service:
  name: "task-market"
  version: "0.1.0"
server:
  host: "127.0.0.1"
  port: 3000
  log_level: "info"
logging:
  level: "WARNING"
  directory: "{tmp_path / "logs"}"
database:
  path: "{tmp_path / "market.db"}"
auth:
  user_jwt_secret: "{USER_SECRET}"
  worker_jwt_secret: "{WORKER_SECRET}"
  token_ttl_seconds: 604800
  allow_legacy_worker_signin: {str(allow_legacy_worker_signin).lower()}
storage:
  bucket: "test-bucket"
  region: "us-east-1"
  access_key_id: "AKIATESTTESTTEST"
  secret_access_key: "test-secret-access-key"
  upload_url_ttl_seconds: 3600
delivery:
  base_url: "{DELIVERY_BASE_URL}"
settlement:
  rpc_url: "http://127.0.0.1:8899"
  payer_private_key: {payer}
  reward_pct: {reward_pct}
  transfer_failure_policy: "{transfer_failure_policy}"
  confirm_timeout_seconds: 5
request:
  max_body_size: {max_body_size}
"""
    config_path = tmp_path / "config.yaml"
    config_path.write_text(config_content)
    return config_path


def generate_wallet() -> Ed25519PrivateKey:
    """Generate a fresh Ed25519 wallet key."""
    return Ed25519PrivateKey.generate()


def wallet_address(keypair: Ed25519PrivateKey) -> str:
    return base58.b58encode(keypair.public_key().public_bytes_raw()).decode()


def secret_key_b58(keypair: Ed25519PrivateKey) -> str:
    """The base58 form of a 64-byte secret key (seed then public key), as wallets export it."""
    raw = keypair.private_bytes_raw() + keypair.public_key().public_bytes_raw()
    return base58.b58encode(raw).decode()


def sign_message(keypair: Ed25519PrivateKey, message: str) -> list[int]:
    """Sign a UTF-8 message the way wallet adapters do, as a byte array."""
    return list(keypair.sign(message.encode("utf-8")))


def seed_worker(store: MarketStore, wallet: str | None = None) -> dict[str, Any]:
    """Create a worker account and return it."""
    address = wallet or wallet_address(generate_wallet())
    account, _ = store.get_or_create_account("worker", address, "nonce-0")
    return account


def seed_task(store: MarketStore, amount: int, title: str = "Label images") -> dict[str, Any]:
    """Create a user and a PENDING task owned by them."""
    user, _ = store.get_or_create_account("user", wallet_address(generate_wallet()), "nonce-0")
    return store.insert_task(
        user["id"],
        title,
        "",
        f"{DELIVERY_BASE_URL}/uploads/{title.replace(' ', '-')}.zip",
        amount,
    )
