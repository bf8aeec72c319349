"""Application lifecycle management."""

from __future__ import annotations

from contextlib import asynccontextmanager
from pathlib import Path
from typing import TYPE_CHECKING

from task_market_service.clients.object_storage import ObjectStorage
from task_market_service.clients.solana_transfer import SolanaTransferClient
from task_market_service.config import get_safe_config, get_settings
from task_market_service.core.state import init_app_state
from task_market_service.logging import get_logger, setup_logging
from task_market_service.services.market_store import MarketStore
from task_market_service.services.settlement import SettlementEngine
from task_market_service.services.storage_keys import DeliveryUrlMapper
from task_market_service.services.task_manager import TaskManager
from task_market_service.services.token_service import TokenService
from task_market_service.services.wallet_auth import WalletAuthenticator

if TYPE_CHECKING:
    from collections.abc import AsyncIterator

    from fastapi import FastAPI


@asynccontextmanager
async def lifespan(_app: FastAPI) -> AsyncIterator[None]:
    """Manage application lifecycle."""
    # === STARTUP ===
    settings = get_settings()

    setup_logging(settings.logging.level, settings.service.name, settings.logging.directory)
    logger = get_logger(__name__)

    state = init_app_state()

    # Ensure database directory exists
    db_path = settings.database.path
    Path(db_path).parent.mkdir(parents=True, exist_ok=True)

    state.store = MarketStore(db_path=db_path)

    state.token_service = TokenService(
        user_secret=settings.auth.user_jwt_secret,
        worker_secret=settings.auth.worker_jwt_secret,
        ttl_seconds=settings.auth.token_ttl_seconds,
    )
    state.wallet_auth = WalletAuthenticator(
        store=state.store,
        token_service=state.token_service,
        allow_legacy_worker_signin=settings.auth.allow_legacy_worker_signin,
    )

    state.object_storage = ObjectStorage(
        bucket=settings.storage.bucket,
        region=settings.storage.region,
        access_key_id=settings.storage.access_key_id,
        secret_access_key=settings.storage.secret_access_key,
        upload_url_ttl_seconds=settings.storage.upload_url_ttl_seconds,
    )
    state.delivery = DeliveryUrlMapper(base_url=settings.delivery.base_url)

    state.transfer_client = SolanaTransferClient(
        rpc_url=settings.settlement.rpc_url,
        payer_private_key=settings.settlement.payer_private_key,
        confirm_timeout_seconds=settings.settlement.confirm_timeout_seconds,
    )
    state.settlement = SettlementEngine(
        store=state.store,
        transfer_client=state.transfer_client,
        reward_pct=settings.settlement.reward_pct,
        failure_policy=settings.settlement.transfer_failure_policy,
    )
    state.task_manager = TaskManager(
        store=state.store,
        settlement=state.settlement,
        delivery=state.delivery,
    )

    if not state.transfer_client.enabled:
        logger.warning("Payer key not configured, on-chain transfers are disabled")

    logger.info(
        "Service starting",
        extra={
            "service": settings.service.name,
            "version": settings.service.version,
            "port": settings.server.port,
            "payer_address": state.transfer_client.payer_address,
            "config": get_safe_config(),
        },
    )

    yield  # Application runs here

    # === SHUTDOWN ===
    logger.info("Service shutting down", extra={"uptime_seconds": state.uptime_seconds})
    await state.transfer_client.close()
    state.store.close()
