"""File ingestion: normalization, parsing and result models."""

from waflens.ingest.normalizer import NormalizedEvent, normalize_record
from waflens.ingest.parser import (
    IngestError,
    ParseResult,
    UnreadableContentError,
    compute_checksum,
    parse_content,
)
from waflens.ingest.results import TimeRange, UploadResult, UploadStatus

__all__ = [
    "IngestError",
    "NormalizedEvent",
    "ParseResult",
    "TimeRange",
    "UnreadableContentError",
    "UploadResult",
    "UploadStatus",
    "compute_checksum",
    "normalize_record",
    "parse_content",
]
