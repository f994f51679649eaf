"""Reindex endpoint for files with retained raw content."""

from __future__ import annotations

from typing import Optional

import structlog
from fastapi import APIRouter, HTTPException
from pydantic import BaseModel, Field

from waflens.api.deps import IngestionServiceDep
from waflens.ingest.parser import UnreadableContentError
from waflens.ingest.results import UploadResult
from waflens.ingest.service import (
    RawContentMissingError,
    RawContentNotRetainedError,
    RawRetentionError,
    UploadNotFoundError,
)

logger = structlog.get_logger()

router = APIRouter(tags=["reindex"])


class ReindexRequest(BaseModel):
    """Identifies the upload to reprocess."""

    checksum: Optional[str] = Field(None, description="Content checksum of the upload")
    file_id: Optional[int] = Field(None, description="Upload id")


@router.post("/reindex", response_model=UploadResult)
async def reindex_file(request: ReindexRequest, service: IngestionServiceDep) -> UploadResult:
    """Rebuild a file's events and rollups from its retained raw content.

    Returns:
        Upload statistics recomputed from the raw content.
    """
    if not request.checksum and request.file_id is None:
        raise HTTPException(status_code=400, detail="Either checksum or file_id is required")

    try:
        return await service.reindex(checksum=request.checksum, file_id=request.file_id)
    except UploadNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e)) from e
    except RawContentMissingError as e:
        raise HTTPException(status_code=404, detail=str(e)) from e
    except (RawContentNotRetainedError, UnreadableContentError) as e:
        raise HTTPException(status_code=400, detail=str(e)) from e
    except RawRetentionError as e:
        logger.error("reindex_blob_read_failed", file_id=request.file_id, error=str(e))
        raise HTTPException(status_code=500, detail=str(e)) from e
