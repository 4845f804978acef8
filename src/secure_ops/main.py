"""FastAPI application entry point for the secure operations workflow engine.

Lifecycle:
    1. Startup: Initialize logging, the persistence backend (Redis or in-memory)
       and the workflow object graph.
    2. Running: Serve the REST API on a single Uvicorn process.
    3. Shutdown: Close the Redis connection gracefully.

Run with:
    uv run uvicorn secure_ops.main:app --reload --host 0.0.0.0 --port 8000
"""

from __future__ import annotations

from contextlib import asynccontextmanager
from typing import TYPE_CHECKING

from fastapi import FastAPI

from secure_ops import __version__
from secure_ops.config import get_settings
from secure_ops.logging_config import get_logger, setup_logging

if TYPE_CHECKING:
    from collections.abc import AsyncGenerator

    from secure_ops.config import Settings
    from secure_ops.container import WorkflowContainer


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Manage application startup and shutdown lifecycle."""
    settings: Settings = app.state.settings

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
        storage=settings.storage_backend,
        simulate_chain=settings.simulate_chain,
    )

    # 2. Persistence + object graph (a pre-built container wins)
    from secure_ops.infrastructure.redis_client import close_redis, init_redis

    if getattr(app.state, "container", None) is None:
        from secure_ops.container import build_container
        from secure_ops.infrastructure.kv_store import InMemoryKeyValueStore, RedisKeyValueStore

        if settings.storage_backend == "redis":
            store = RedisKeyValueStore(await init_redis())
        else:
            store = InMemoryKeyValueStore()
        app.state.container = build_container(settings, store=store)

    logger.info("app.started", host=settings.app_host, port=settings.app_port)

    yield

    # Shutdown
    logger.info("app.shutting_down")
    await close_redis()
    logger.info("app.stopped")


def create_app(
    settings: Settings | None = None, container: WorkflowContainer | None = None
) -> FastAPI:
    """Application factory: creates and configures the FastAPI app."""
    settings = settings or get_settings()

    app = FastAPI(
        title="Secure Operations Workflow Engine",
        description=(
            "Drives time-locked and meta-transaction security operations on "
            "secure-ownable contracts."
        ),
        version=__version__,
        lifespan=lifespan,
        debug=settings.app_debug,
        docs_url="/docs" if settings.is_development else None,
        redoc_url="/redoc" if settings.is_development else None,
    )
    app.state.settings = settings
    app.state.container = container

    # --- Middleware ---
    from secure_ops.api.middleware import setup_middleware

    setup_middleware(app)

    # --- REST API Routes ---
    from secure_ops.api.routes.health import router as health_router
    from secure_ops.api.routes.operations import router as operations_router

    app.include_router(health_router)
    app.include_router(operations_router)

    if settings.simulate_chain:
        from secure_ops.api.routes.simulator import router as simulator_router

        app.include_router(simulator_router)

    return app


# The app instance used by Uvicorn
app = create_app()
