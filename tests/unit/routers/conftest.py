"""Router test fixtures: a real app on a temp database, with transfers mocked."""

from __future__ import annotations

import os
from typing import TYPE_CHECKING, Any
from unittest.mock import AsyncMock, MagicMock

import pytest
from httpx import ASGITransport, AsyncClient

from task_market_service.app import create_app
from task_market_service.clients.solana_transfer import LANDED, NOT_FOUND, PreparedTransfer, SignatureState
from task_market_service.config import clear_settings_cache
from task_market_service.core.lifespan import lifespan
from task_market_service.core.state import get_app_state, reset_app_state
from tests.helpers import ONE_SOL, generate_wallet, sign_message, wallet_address, write_config

if TYPE_CHECKING:
    from collections.abc import AsyncIterator

    from cryptography.hazmat.primitives.asymmetric.ed25519 import Ed25519PrivateKey

TX_SIGNATURE = "5igTestSignature"


# ---------------------------------------------------------------------------
# App + client fixtures
# ---------------------------------------------------------------------------
@pytest.fixture
def app_options() -> dict[str, Any]:
    """Overrides for write_config(); override this fixture in a module to change them."""
    return {}


@pytest.fixture
async def app(tmp_path, app_options) -> AsyncIterator[Any]:
    """Create a test app with a temp database and no payer key."""
    config_path = write_config(tmp_path, **app_options)

    old_config = os.environ.get("CONFIG_PATH")
    os.environ["CONFIG_PATH"] = str(config_path)

    clear_settings_cache()
    reset_app_state()

    test_app = create_app()
    async with lifespan(test_app):
        yield test_app

    reset_app_state()
    clear_settings_cache()
    if old_config is None:
        os.environ.pop("CONFIG_PATH", None)
    else:
        os.environ["CONFIG_PATH"] = old_config


@pytest.fixture
async def client(app: Any) -> AsyncIterator[AsyncClient]:
    """Create an async HTTP client for the test app."""
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as c:
        yield c


@pytest.fixture
def mock_transfer(app: Any) -> MagicMock:
    """Replace the transfer client with an enabled mock whose transfers succeed."""
    transfer = MagicMock()
    transfer.enabled = True
    transfer.payer_address = None
    transfer.prepare = AsyncMock(return_value=PreparedTransfer(TX_SIGNATURE, b"signed-transfer", 1_000))
    transfer.broadcast = AsyncMock(return_value=None)
    transfer.confirm = AsyncMock(return_value=SignatureState(LANDED))
    transfer.signature_state = AsyncMock(return_value=SignatureState(NOT_FOUND))
    transfer.block_height = AsyncMock(return_value=900)
    transfer.close = AsyncMock()

    # Propagate the mock to the settlement engine
    state = get_app_state()
    state.transfer_client = transfer
    if state.settlement is not None:
        state.settlement._transfer_client = transfer
    return transfer


# ---------------------------------------------------------------------------
# Flow helpers
# ---------------------------------------------------------------------------
def auth_header(token: str) -> dict[str, str]:
    return {"Authorization": f"Bearer {token}"}


async def sign_in(client: AsyncClient, role: str, keypair: Ed25519PrivateKey) -> dict[str, Any]:
    """Run the nonce + signature flow and return the sign-in response body."""
    address = wallet_address(keypair)
    nonce = await client.post(f"/api/{role}/wallet-nonce", json={"publicKey": address})
    assert nonce.status_code == 200
    message = nonce.json()["message"]

    response = await client.post(
        f"/api/{role}/wallet-signin",
        json={
            "publicKey": address,
            "signature": sign_message(keypair, message),
            "message": message,
        },
    )
    assert response.status_code == 200
    return response.json()


async def new_token(client: AsyncClient, role: str) -> str:
    """Sign in a fresh wallet and return its credential."""
    body = await sign_in(client, role, generate_wallet())
    return body["token"]


async def create_task(
    client: AsyncClient,
    user_token: str,
    amount: Any = ONE_SOL,
    title: str = "Label images",
    file_url: str = "uploads/task.zip",
) -> dict[str, Any]:
    response = await client.post(
        "/api/user/task-from-s3",
        json={"title": title, "description": "Draw boxes", "amount": amount, "fileUrl": file_url},
        headers=auth_header(user_token),
    )
    assert response.status_code == 200, response.text
    return response.json()["task"]


async def submit(
    client: AsyncClient,
    worker_token: str,
    task_id: str,
    file_url: str = "submissions/work.zip",
) -> Any:
    return await client.post(
        "/api/worker/submission-from-s3",
        json={"taskId": task_id, "fileUrl": file_url},
        headers=auth_header(worker_token),
    )
