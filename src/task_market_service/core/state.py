"""Application state management."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from task_market_service.clients.object_storage import ObjectStorage
    from task_market_service.clients.solana_transfer import SolanaTransferClient
    from task_market_service.services.market_store import MarketStore
    from task_market_service.services.settlement import SettlementEngine
    from task_market_service.services.storage_keys import DeliveryUrlMapper
    from task_market_service.services.task_manager import TaskManager
    from task_market_service.services.token_service import TokenService
    from task_market_service.services.wallet_auth import WalletAuthenticator


@dataclass
class AppState:
    """Runtime application state: every dependency is built once at startup."""

    start_time: datetime = field(default_factory=lambda: datetime.now(UTC))
    store: MarketStore | None = None
    token_service: TokenService | None = None
    wallet_auth: WalletAuthenticator | None = None
    object_storage: ObjectStorage | None = None
    delivery: DeliveryUrlMapper | None = None
    transfer_client: SolanaTransferClient | None = None
    settlement: SettlementEngine | None = None
    task_manager: TaskManager | None = None

    @property
    def uptime_seconds(self) -> float:
        """Calculate uptime in seconds."""
        return (datetime.now(UTC) - self.start_time).total_seconds()

    @property
    def started_at(self) -> str:
        """ISO format start time."""
        return self.start_time.isoformat(timespec="seconds").replace("+00:00", "Z")


# Global application state container
_state_container: dict[str, AppState | None] = {"app_state": None}


def get_app_state() -> AppState:
    """Get the current application state."""
    app_state = _state_container["app_state"]
    if app_state is None:
        msg = "Application state not initialized"
        raise RuntimeError(msg)
    return app_state


def init_app_state() -> AppState:
    """Initialize application state. Called during startup."""
    app_state = AppState()
    _state_container["app_state"] = app_state
    return app_state


def reset_app_state() -> None:
    """Reset application state. Used in testing."""
    _state_container["app_state"] = None
