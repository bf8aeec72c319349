"""Pydantic response models for the API."""

from __future__ import annotations

from typing import Literal

from pydantic import BaseModel, ConfigDict


class HealthResponse(BaseModel):
    """Response model for GET /health."""

    model_config = ConfigDict(extra="forbid")
    status: Literal["ok"]
    uptime_seconds: float
    started_at: str
    total_users: int
    total_workers: int
    total_tasks: int
    total_pending: int
    total_locked: int


class ErrorResponse(BaseModel):
    """Standard error response model."""

    model_config = ConfigDict(extra="forbid")
    success: Literal[False]
    error: str
    message: str
    details: dict[str, object]


class Balance(BaseModel):
    """A worker's balance pair, in lamports."""

    model_config = ConfigDict(extra="forbid")
    pending: int
    locked: int


class BalanceResponse(BaseModel):
    """Response model for GET /api/worker/balance."""

    model_config = ConfigDict(extra="forbid")
    success: Literal[True]
    balance: Balance


ERROR_RESPONSES: dict[int | str, dict[str, object]] = {
    400: {"model": ErrorResponse},
    401: {"model": ErrorResponse},
    404: {"model": ErrorResponse},
    409: {"model": ErrorResponse},
}
