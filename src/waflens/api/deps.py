"""FastAPI dependency injection for database, storage and services."""

from __future__ import annotations

from typing import Annotated, AsyncGenerator

import structlog
from fastapi import Depends, HTTPException
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

from waflens.config import Config, get_config
from waflens.ingest.service import IngestionService
from waflens.persistence.blobs import BlobStore, LocalBlobStore
from waflens.persistence.database import get_async_session_factory

logger = structlog.get_logger()


async def get_db_session() -> AsyncGenerator[AsyncSession, None]:
    """Get an async database session for FastAPI dependency injection.

    Yields:
        AsyncSession that auto-commits on success, auto-rollbacks on failure.

    Raises:
        HTTPException: 503 if database connection fails.
    """
    try:
        factory = get_async_session_factory()
        async with factory() as session:
            # Test the connection is actually working
            try:
                await session.execute(text("SELECT 1"))
            except Exception as e:
                logger.warning("database_connection_failed", error=str(e))
                raise HTTPException(
                    status_code=503,
                    detail="Database not available. Please check WAFLENS_DATABASE_URL.",
                )
            try:
                yield session
                await session.commit()
            except Exception:
                await session.rollback()
                raise
    except HTTPException:
        raise
    except Exception as e:
        logger.warning("database_session_error", error=str(e))
        raise HTTPException(
            status_code=503,
            detail="Database not available. Please check WAFLENS_DATABASE_URL.",
        )


def get_app_config() -> Config:
    """Configuration dependency, overridable in tests."""
    return get_config()


def get_blob_store(config: Annotated[Config, Depends(get_app_config)]) -> BlobStore:
    """Blob store holding retained raw uploads.

    Reads stay possible when retention is later disabled; writes are gated
    by the service on ``storage.retain_raw``.
    """
    return LocalBlobStore(config.storage.blob_dir)


def get_ingestion_service(
    session: Annotated[AsyncSession, Depends(get_db_session)],
    config: Annotated[Config, Depends(get_app_config)],
    blob_store: Annotated[BlobStore, Depends(get_blob_store)],
) -> IngestionService:
    return IngestionService(session, blob_store=blob_store, config=config)


# Type aliases for cleaner dependency injection
DbSession = Annotated[AsyncSession, Depends(get_db_session)]
IngestionServiceDep = Annotated[IngestionService, Depends(get_ingestion_service)]
