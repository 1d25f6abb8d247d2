"""FastAPI application entry point for Proof Escrow.

Lifecycle:
    1. Startup: Initialize logging, database, Redis, create tables (dev mode),
       start the in-process verification scheduler when enabled.
    2. Running: Serve the REST API on a single Uvicorn process.
    3. Shutdown: Stop the scheduler, close database and Redis connections.

With ``SCHEDULER_ENABLED=false`` the tick is driven externally through
``POST /internal/cron/tick``.

Run with:
    uv run uvicorn proof_escrow.main:app --reload --host 0.0.0.0 --port 8000
"""

from __future__ import annotations

from contextlib import asynccontextmanager
from typing import TYPE_CHECKING

from fastapi import FastAPI

from proof_escrow.config import get_settings
from proof_escrow.logging_config import get_logger, setup_logging

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
    logger.info(
        "app.starting",
        env=settings.app_env,
        debug=settings.app_debug,
    )

    # 2. Initialize database
    from proof_escrow.infrastructure.database.engine import close_db, init_db

    await init_db()

    # 3. Initialize Redis
    from proof_escrow.infrastructure.redis_client import close_redis, init_redis

    try:
        await init_redis()
    except Exception as exc:
        logger.warning("app.redis_unavailable", error=str(exc))

    # 4. Start the verification scheduler
    app.state.cron = None
    if settings.scheduler_enabled:
        from proof_escrow.api.deps import get_services
        from proof_escrow.orchestration.cron import build_scheduler

        cron = build_scheduler(get_services().scheduler, settings)
        cron.start()
        app.state.cron = cron
        logger.info("app.scheduler_started", interval=settings.scheduler_interval_seconds)

    logger.info("app.started", host=settings.app_host, port=settings.app_port)

    yield

    # Shutdown
    logger.info("app.shutting_down")
    if app.state.cron is not None:
        app.state.cron.shutdown(wait=False)
    await close_db()
    await close_redis()
    logger.info("app.stopped")


def create_app() -> FastAPI:
    """Application factory — creates and configures the FastAPI app."""
    settings = get_settings()

    app = FastAPI(
        title="Proof Escrow",
        description=(
            "Escrow for sponsored social posts. "
            "Funds release only after the post is verified for its full duration."
        ),
        version="0.1.0",
        lifespan=lifespan,
        debug=settings.app_debug,
        docs_url="/docs" if settings.is_development else None,
        redoc_url="/redoc" if settings.is_development else None,
    )

    # --- Middleware ---
    from proof_escrow.api.middleware import setup_middleware

    setup_middleware(app, settings)

    # --- REST API Routes ---
    from proof_escrow.api.routes.deals import router as deals_router
    from proof_escrow.api.routes.health import router as health_router
    from proof_escrow.api.routes.internal import router as internal_router
    from proof_escrow.api.routes.orchestrator import router as orchestrator_router
    from proof_escrow.api.routes.reviews import router as reviews_router
    from proof_escrow.api.routes.settlement import router as settlement_router

    app.include_router(health_router)
    app.include_router(deals_router)
    app.include_router(orchestrator_router)
    app.include_router(reviews_router)
    app.include_router(settlement_router)
    app.include_router(internal_router)

    return app


# The app instance used by Uvicorn
app = create_app()
