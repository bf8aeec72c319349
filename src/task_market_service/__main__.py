"""Run the task market service under uvicorn."""

from __future__ import annotations

import uvicorn

from task_market_service.app import create_app
from task_market_service.config import get_settings


def main() -> None:
    """Start the HTTP server. Invalid configuration aborts startup."""
    settings = get_settings()
    uvicorn.run(
        create_app(),
        host=settings.server.host,
        port=settings.server.port,
        log_level=settings.server.log_level,
    )


if __name__ == "__main__":
    main()
