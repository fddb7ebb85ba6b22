"""FastAPI application entry point."""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from collections.abc import AsyncIterator

    from detectx.config import Settings

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from detectx.api.routes import router
from detectx.clients import ClientRegistry, build_coordinator, build_result_store, build_upload_authorizer
from detectx.config import get_settings
from detectx.errors import ConfigurationError
from detectx.pipeline.pool import ProcessingPool

logger = logging.getLogger(__name__)


def init_app_state(app: FastAPI, settings: Settings) -> None:
    """Build shared clients and pipeline components onto ``app.state``.

    Components whose settings are missing are left as None; their routes
    answer 503 instead of failing startup.
    """
    registry = ClientRegistry(settings)
    app.state.settings = settings
    app.state.client_registry = registry
    app.state.processing_pool = ProcessingPool(settings.max_concurrent)

    try:
        app.state.result_store = build_result_store(settings, registry)
        app.state.coordinator = build_coordinator(settings, registry, store=app.state.result_store)
    except ConfigurationError as exc:
        logger.warning("Event processing disabled: %s", exc)
        app.state.result_store = None
        app.state.coordinator = None

    try:
        app.state.upload_authorizer = build_upload_authorizer(settings, registry)
    except ConfigurationError as exc:
        logger.warning("Upload URLs disabled: %s", exc)
        app.state.upload_authorizer = None


def shutdown_app_state(app: FastAPI) -> None:
    app.state.processing_pool.shutdown()
    app.state.client_registry.shutdown()


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Application lifespan: initialize on startup, clean up on shutdown."""
    settings = get_settings()

    logging.basicConfig(
        level=settings.log_level,
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )

    logger.info(
        "Starting DetectX (region=%s, table=%s, target=%s, max_labels=%s, max_concurrent=%s)",
        settings.aws_region,
        settings.results_table_name,
        settings.target_label,
        settings.max_labels,
        settings.max_concurrent,
    )

    init_app_state(app, settings)

    logger.info("DetectX ready")
    yield

    logger.info("Shutting down DetectX")
    shutdown_app_state(app)
    logger.info("DetectX shutdown complete")


def create_app() -> FastAPI:
    """Create and configure the FastAPI application."""
    application = FastAPI(
        title="DetectX",
        description="Content-addressed, idempotent image label detection",
        version="0.1.0",
        lifespan=lifespan,
    )

    application.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["*"],
        allow_headers=["*"],
    )

    application.include_router(router)
    return application


app = create_app()
