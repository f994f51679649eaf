"""FastAPI application factory with lifespan management."""

from __future__ import annotations

from contextlib import asynccontextmanager
from typing import AsyncGenerator

import structlog
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from sqlalchemy.exc import SQLAlchemyError

from waflens import __version__
from waflens.api.routes import reindex_router, rollups_router, upload_router
from waflens.config import get_config
from waflens.persistence.database import close_db, init_db

logger = structlog.get_logger()


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Manage application lifespan - startup and shutdown.

    On startup:
    - Create missing tables

    On shutdown:
    - Close database connections
    """
    logger.info("api_starting")

    try:
        await init_db()
        logger.info("database_initialized")
    except (SQLAlchemyError, OSError) as e:
        # Requests still get a 503 from the session dependency
        logger.warning("database_init_failed", error=str(e))

    yield

    logger.info("api_shutting_down")
    await close_db()
    logger.info("database_closed")


def create_app() -> FastAPI:
    """Create and configure the FastAPI application.

    Returns:
        Configured FastAPI application instance.
    """
    config = get_config()

    app = FastAPI(
        title="waflens API",
        description="Ingestion and aggregation API for WAF security logs",
        version=__version__,
        lifespan=lifespan,
    )

    # Configure CORS
    app.add_middleware(
        CORSMiddleware,
        allow_origins=config.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # Include routers
    app.include_router(upload_router, prefix="/api")
    app.include_router(reindex_router, prefix="/api")
    app.include_router(rollups_router, prefix="/api")

    # Health check endpoint
    @app.get("/health")
    async def health_check() -> dict[str, str]:
        """Basic health check endpoint."""
        return {"status": "healthy"}

    @app.get("/")
    async def root() -> dict[str, str]:
        """Root endpoint with API information."""
        return {
            "name": "waflens API",
            "version": __version__,
            "docs": "/docs",
        }

    return app
