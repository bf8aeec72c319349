"""Shared request parsing and authentication helpers for routers."""

from __future__ import annotations

import json
from typing import TYPE_CHECKING, Any

from task_market_service.core.exceptions import ServiceError
from task_market_service.core.state import get_app_state

if TYPE_CHECKING:
    from fastapi import Request

    from task_market_service.clients.object_storage import ObjectStorage
    from task_market_service.services.settlement import SettlementEngine
    from task_market_service.services.task_manager import TaskManager
    from task_market_service.services.wallet_auth import WalletAuthenticator


def parse_json_body(body: bytes) -> dict[str, Any]:
    """Parse JSON body, raising ServiceError on failure."""
    try:
        data = json.loads(body)
    except (json.JSONDecodeError, UnicodeDecodeError) as exc:
        raise ServiceError(
            "INVALID_JSON",
            "Request body is not valid JSON",
            400,
            {},
        ) from exc

    if not isinstance(data, dict):
        raise ServiceError(
            "INVALID_JSON",
            "Request body must be a JSON object",
            400,
            {},
        )

    return data


async def read_json_body(request: Request) -> dict[str, Any]:
    """Read the request body as a JSON object; an empty body is {}."""
    body = await request.body()
    return {} if body.strip() == b"" else parse_json_body(body)


def authenticate(request: Request, namespace: str) -> str:
    """Verify the bearer credential for a namespace and return the subject id."""
    state = get_app_state()
    if state.token_service is None:
        msg = "TokenService not initialized"
        raise RuntimeError(msg)
    return state.token_service.verify_header(namespace, request.headers.get("authorization"))


def get_task_manager() -> TaskManager:
    state = get_app_state()
    if state.task_manager is None:
        msg = "TaskManager not initialized"
        raise RuntimeError(msg)
    return state.task_manager


def get_settlement() -> SettlementEngine:
    state = get_app_state()
    if state.settlement is None:
        msg = "SettlementEngine not initialized"
        raise RuntimeError(msg)
    return state.settlement


def get_wallet_auth() -> WalletAuthenticator:
    state = get_app_state()
    if state.wallet_auth is None:
        msg = "WalletAuthenticator not initialized"
        raise RuntimeError(msg)
    return state.wallet_auth


def get_object_storage() -> ObjectStorage:
    state = get_app_state()
    if state.object_storage is None:
        msg = "ObjectStorage not initialized"
        raise RuntimeError(msg)
    return state.object_storage
