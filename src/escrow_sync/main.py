"""FastAPI application entry point for the escrow sync engine.

Lifecycle:
    1. Startup: initialize logging and the database, build the SyncRuntime and
       (when RUN_LISTENERS_IN_API is set) start the listeners and the monitor.
    2. Running: serve the REST API at /api/v1/* and /health.
    3. Shutdown: stop the runtime, then close the database engine.

Run with:
    uv run uvicorn escrow_sync.main:app --reload --host 0.0.0.0 --port 8000
"""

from __future__ import annotations

from contextlib import asynccontextmanager
from typing import TYPE_CHECKING

from fastapi import FastAPI

from escrow_sync import __version__
from escrow_sync.config import get_settings
from escrow_sync.logging_config import get_logger, setup_logging

if TYPE_CHECKING:
    from collections.abc import AsyncGenerator


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Manage application startup and shutdown lifecycle."""
    settings = get_settings()

    # 1. Setup structured logging
    setup_logging(
        log_level=settings.app_log_level,
        json_logs=not settings.is_development,
    )
    logger = get_logger(__name__)
    logger.info("app.starting", env=settings.app_env, debug=settings.app_debug)

    # 2. Initialize database
    from escrow_sync.infrastructure.database.engine import close_db, init_db

    await init_db()

    # 3. Runtime (listeners + monitor run in-process unless a worker owns them)
    from escrow_sync.runtime import SyncRuntime

    runtime = SyncRuntime(settings)
    app.state.runtime = runtime
    if settings.run_listeners_in_api:
        await runtime.start()

    logger.info("app.started", host=settings.app_host, port=settings.app_port)

    yield

    # Shutdown
    logger.info("app.shutting_down")
    await runtime.stop()
    await close_db()
    logger.info("app.stopped")


def create_app() -> FastAPI:
    """Application factory: creates and configures the FastAPI app."""
    settings = get_settings()

    app = FastAPI(
        title="Escrow Sync",
        description="Multi-chain escrow event ingestion and reconciliation.",
        version=__version__,
        lifespan=lifespan,
        debug=settings.app_debug,
        docs_url="/docs" if settings.is_development else None,
        redoc_url="/redoc" if settings.is_development else None,
    )

    # --- Middleware ---
    from escrow_sync.api.middleware import setup_middleware

    setup_middleware(app)

    # --- REST API Routes ---
    from escrow_sync.api.routes.escrows import router as escrows_router
    from escrow_sync.api.routes.health import router as health_router
    from escrow_sync.api.routes.networks import router as networks_router

    app.include_router(health_router)
    app.include_router(networks_router)
    app.include_router(escrows_router)

    return app


# The app instance used by Uvicorn
app = create_app()
