"""FastAPI application entry point."""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from collections.abc import AsyncIterator

    from reshapex.config import Settings

import uvicorn
from fastapi import FastAPI

from reshapex.api.middleware import setup_exception_handlers
from reshapex.api.routes import api_router, router
from reshapex.config import get_settings
from reshapex.pipeline.orchestrator import TransformationOrchestrator
from reshapex.pipeline.pool import TransformPool
from reshapex.storage.artifact_store import LocalArtifactStore

logger = logging.getLogger(__name__)


def init_state(app: FastAPI, settings: Settings) -> None:
    """Attach settings, the orchestrator and the worker pool to ``app.state``."""
    app.state.settings = settings
    app.state.orchestrator = TransformationOrchestrator(settings, LocalArtifactStore(settings.cache_dir))
    app.state.transform_pool = TransformPool(settings)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Application lifespan: initialize on startup, clean up on shutdown."""
    settings = get_settings()

    logging.basicConfig(
        level=settings.log_level.upper(),
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )

    logger.info(
        "Starting reshapex (max_concurrent=%s, restricted_domains=%s, cache_dir=%s)",
        settings.max_concurrent,
        settings.restricted_domains,
        settings.cache_dir,
    )

    init_state(app, settings)

    logger.info("reshapex ready")
    yield

    logger.info("Shutting down reshapex")
    app.state.transform_pool.shutdown()
    logger.info("reshapex shutdown complete")


def create_app() -> FastAPI:
    """Create and configure the FastAPI application."""
    application = FastAPI(
        title="reshapex",
        description="On-demand image transformation and caching service",
        version="0.1.0",
        lifespan=lifespan,
    )

    setup_exception_handlers(application)
    application.include_router(router)
    application.include_router(api_router)
    return application


app = create_app()


def run() -> None:
    """Console entry point: serve the app with uvicorn."""
    settings = get_settings()
    uvicorn.run("reshapex.main:app", host=settings.host, port=settings.port, log_level=settings.log_level.lower())
