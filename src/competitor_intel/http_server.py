"""Uvicorn runner for the internal FastAPI surface.

Services are wired by `lifespan_manager` in `main`, so uvicorn's own lifespan
handling is off and the server only serves requests.
"""

from __future__ import annotations

import uvicorn

from .config.settings import CompetitorIntelSettings, get_settings
from .http_app import app
from .observability.logger import get_logger

logger = get_logger(__name__)


def build_server_config(settings: CompetitorIntelSettings) -> uvicorn.Config:
    return uvicorn.Config(
        app=app,
        host=settings.http_host,
        port=settings.http_port,
        # structlog is the primary logger
        log_level="warning",
        access_log=settings.http_access_log,
        lifespan="off",
        timeout_graceful_shutdown=int(settings.http_graceful_shutdown_seconds),
        loop="asyncio",
    )


async def run_http_server() -> None:
    settings = get_settings()
    if not settings.http_enable:
        logger.warning("http_server_disabled", service_name=settings.service_name)
        return

    server = uvicorn.Server(build_server_config(settings))
    logger.info(
        "http_server_starting",
        address=f"http://{settings.http_host}:{settings.http_port}",
        routes=sorted(getattr(r, "path", "") for r in app.routes if getattr(r, "path", "").startswith("/api")),
    )
    await server.serve()
    logger.info("http_server_stopped")
