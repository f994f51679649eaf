"""Per-file ingestion result models returned to callers."""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field


class UploadStatus(str, Enum):
    """Outcome of ingesting or reindexing one file."""

    SUCCESS = "success"
    ALREADY_PROCESSED = "already_processed"
    NO_VALID_EVENTS = "no_valid_events"
    ERROR = "error"


def format_epoch_ms(value: int) -> str:
    """Render epoch milliseconds as an ISO-8601 UTC string (``...Z``)."""
    moment = datetime.fromtimestamp(value / 1000, tz=timezone.utc)
    return moment.isoformat(timespec="milliseconds").replace("+00:00", "Z")


class TimeRange(BaseModel):
    """Earliest and latest event timestamps of a file."""

    earliest: str = Field(..., description="Earliest event timestamp (ISO-8601 UTC)")
    latest: str = Field(..., description="Latest event timestamp (ISO-8601 UTC)")

    @classmethod
    def from_epoch_ms(cls, bounds: Optional[tuple[int, int]]) -> Optional["TimeRange"]:
        if bounds is None:
            return None
        earliest, latest = bounds
        return cls(earliest=format_epoch_ms(earliest), latest=format_epoch_ms(latest))


class UploadResult(BaseModel):
    """Statistics reported for one uploaded or reindexed file."""

    filename: str = Field(..., description="Name the file was uploaded under")
    checksum: Optional[str] = Field(None, description="SHA-256 of the file content")
    file_id: Optional[int] = Field(None, description="Upload id owning the events")
    status: UploadStatus = Field(..., description="Outcome of the run")
    total: int = Field(default=0, ge=0, description="Events written or deduped")
    inserted: int = Field(default=0, ge=0, description="Events newly stored")
    deduped: int = Field(default=0, ge=0, description="Events already stored")
    errors: list[str] = Field(default_factory=list, description="First record-level errors")
    parse_errors: int = Field(default=0, ge=0, description="Total record-level errors")
    time_range: Optional[TimeRange] = Field(None, description="Event timestamp bounds")
    note: Optional[str] = Field(None, description="Hint for the caller")

    @classmethod
    def failed(
        cls,
        filename: str,
        error: str,
        checksum: Optional[str] = None,
        file_id: Optional[int] = None,
    ) -> "UploadResult":
        """Result for a file that could not be processed at all."""
        return cls(
            filename=filename,
            checksum=checksum,
            file_id=file_id,
            status=UploadStatus.ERROR,
            errors=[error],
            parse_errors=0,
        )
