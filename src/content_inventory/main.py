"""
Content Inventory Server Application Entry Point

This module defines the FastAPI application instance, registers all routers,
configures global exception handling, and provides a test-friendly application
factory.

Design Goals
------------
- Deterministic startup
- Centralized router registration
- Global exception safety net
- Test-friendly via create_app()
"""

from __future__ import annotations

import asyncio
import logging
from fastapi import FastAPI

from .config import settings
from .core.errors import unhandled_exception_handler
from .db import async_engine
from .sessions.store import purge_expired_sessions_task

from .api import (
    csv_routes,
    health_routes,
    queue_routes,
)


logger = logging.getLogger("content_inventory.app")


# ---------------------------------------------------------------------
# Application Factory (Test-Friendly)
# ---------------------------------------------------------------------

def create_app() -> FastAPI:
    """
    Create and configure the FastAPI application.

    Returns
    -------
    FastAPI
        Fully configured FastAPI application.
    """
    logging.basicConfig(level=settings.log_level)

    app = FastAPI(
        title="content-inventory-server",
        version="1.0.0",
        docs_url="/docs",
        redoc_url="/redoc",
        openapi_url="/openapi.json",
    )

    # --------------------------------------------------------------
    # Global Exception Handling
    # --------------------------------------------------------------

    app.add_exception_handler(Exception, unhandled_exception_handler)

    # --------------------------------------------------------------
    # Router Registration
    # --------------------------------------------------------------

    app.include_router(health_routes.router)
    app.include_router(csv_routes.router)
    app.include_router(queue_routes.router)

    # --------------------------------------------------------------
    # Startup Hook
    # --------------------------------------------------------------

    @app.on_event("startup")
    async def _startup() -> None:
        """
        Fail-fast configuration check and background housekeeping.
        """
        logger.info("Starting content-inventory-server")

        # Touch critical secrets to force validation now (not at first use)
        _ = settings.jwt_secret.get_secret_value()

        app.state.session_purge_task = asyncio.create_task(purge_expired_sessions_task())

        logger.info(
            "Configuration validated (indexing %s, session TTL %ss)",
            "enabled" if settings.enable_indexing else "disabled",
            settings.import_session_ttl_seconds,
        )

    # --------------------------------------------------------------
    # Shutdown Hook
    # --------------------------------------------------------------

    @app.on_event("shutdown")
    async def _shutdown() -> None:
        """
        Stop the purge worker and release pooled database connections.
        """
        logger.info("Shutting down content-inventory-server")

        task = getattr(app.state, "session_purge_task", None)
        if task is not None:
            task.cancel()
            await asyncio.gather(task, return_exceptions=True)

        await async_engine.dispose()

    return app


# ---------------------------------------------------------------------
# Default Application Instance (for Uvicorn/Gunicorn)
# ---------------------------------------------------------------------

app = create_app()
