"""Health check endpoint."""

from __future__ import annotations

from fastapi import APIRouter
from starlette.concurrency import run_in_threadpool

from task_market_service.core.state import get_app_state
from task_market_service.schemas import HealthResponse

router = APIRouter()


@router.get("/health", response_model=HealthResponse)
async def health_check() -> HealthResponse:
    """Check service health and return statistics."""
    state = get_app_state()
    stats = {
        "total_users": 0,
        "total_workers": 0,
        "total_tasks": 0,
        "total_pending": 0,
        "total_locked": 0,
    }
    if state.task_manager is not None:
        stats = await run_in_threadpool(state.task_manager.get_stats)
    return HealthResponse(
        status="ok",
        uptime_seconds=state.uptime_seconds,
        started_at=state.started_at,
        **stats,
    )
