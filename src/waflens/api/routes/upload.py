"""File upload endpoint."""

from __future__ import annotations

import structlog
from fastapi import APIRouter, File, HTTPException, UploadFile
from pydantic import BaseModel
from sqlalchemy.exc import SQLAlchemyError

from waflens.api.deps import IngestionServiceDep
from waflens.ingest.parser import IngestError
from waflens.ingest.results import UploadResult

logger = structlog.get_logger()

router = APIRouter(tags=["upload"])


class UploadResponse(BaseModel):
    """One result per uploaded file, in request order."""

    results: list[UploadResult]


@router.post("/upload", response_model=UploadResponse)
async def upload_files(
    service: IngestionServiceDep,
    files: list[UploadFile] = File(..., description="WAF export files (JSON or NDJSON)"),
) -> UploadResponse:
    """Ingest one or more WAF export files.

    Files are processed one after another. A file that fails is reported in
    its own result and never aborts the files after it.

    Args:
        service: Ingestion service bound to the request session.
        files: Multipart ``files`` fields.

    Returns:
        Per-file upload statistics.
    """
    if not files:
        raise HTTPException(status_code=400, detail="No files provided")

    results: list[UploadResult] = []
    for upload in files:
        filename = upload.filename or "upload"
        data = await upload.read()
        try:
            result = await service.ingest_file(filename, data)
        except IngestError as e:
            logger.warning("upload_rejected", filename=filename, error=str(e))
            result = UploadResult.failed(filename, str(e))
        except SQLAlchemyError as e:
            logger.exception("upload_failed", filename=filename)
            await service.session.rollback()
            result = UploadResult.failed(filename, f"Storage error: {e}")
        except Exception as e:
            # Reported in this file's result; the remaining files still run
            logger.exception("upload_failed", filename=filename)
            await service.session.rollback()
            result = UploadResult.failed(filename, f"Unexpected error: {e}")
        results.append(result)

    return UploadResponse(results=results)
