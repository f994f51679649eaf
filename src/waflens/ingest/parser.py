"""Content parser splitting an export file into normalized events."""

from __future__ import annotations

import codecs
import hashlib
import json
from dataclasses import dataclass, field
from typing import Any

import structlog

from waflens.ingest.normalizer import NormalizedEvent, normalize_record

logger = structlog.get_logger()


class IngestError(Exception):
    """Base class for file-level ingestion failures."""


class UnreadableContentError(IngestError):
    """Raised when file bytes cannot be decoded as UTF-8 text."""

    def __init__(self, reason: str):
        self.reason = reason
        super().__init__(f"File content is not valid UTF-8 text: {reason}")


@dataclass
class ParseResult:
    """Events extracted from one file plus per-record error messages."""

    events: list[NormalizedEvent] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)
    skipped: int = 0

    @property
    def time_range(self) -> tuple[int, int] | None:
        """Earliest and latest event timestamps (ms), None when empty."""
        if not self.events:
            return None
        timestamps = [event.event_ts for event in self.events]
        return min(timestamps), max(timestamps)


def compute_checksum(content: bytes | str) -> str:
    """SHA-256 hex digest of the exact file content."""
    if isinstance(content, str):
        content = content.encode("utf-8")
    return hashlib.sha256(content).hexdigest()


def decode_content(data: bytes) -> str:
    """Decode raw upload bytes as UTF-8, dropping a leading BOM.

    Raises:
        UnreadableContentError: If the bytes are not valid UTF-8.
    """
    if data.startswith(codecs.BOM_UTF8):
        data = data[len(codecs.BOM_UTF8):]
    try:
        return data.decode("utf-8")
    except UnicodeDecodeError as e:
        raise UnreadableContentError(str(e)) from e


def parse_content(content: str) -> ParseResult:
    """Parse a JSON array or NDJSON document into normalized events.

    A document that parses as a JSON list is treated as one record per
    element. Anything else falls back to line mode, where each non-blank
    line is decoded on its own and a bad line only costs that line.

    Records the normalizer rejects (no correlation id or timestamp) are
    counted in ``skipped`` and never reported as errors.

    Args:
        content: Full text of the uploaded file.

    Returns:
        ParseResult with the events and human-readable error strings.
    """
    try:
        document = json.loads(content)
    except json.JSONDecodeError:
        document = None
    else:
        if isinstance(document, list):
            return _parse_records(document)

    return _parse_lines(content)


def _parse_records(records: list[Any]) -> ParseResult:
    result = ParseResult()
    for index, record in enumerate(records):
        _collect(result, record, f"Record {index + 1}")
    return result


def _parse_lines(content: str) -> ParseResult:
    result = ParseResult()
    for line_number, line in enumerate(content.splitlines(), start=1):
        if not line.strip():
            continue
        try:
            record = json.loads(line)
        except json.JSONDecodeError as e:
            result.errors.append(f"Line {line_number}: {e.msg} (column {e.colno})")
            continue
        _collect(result, record, f"Line {line_number}")
    return result


def _collect(result: ParseResult, record: Any, location: str) -> None:
    try:
        event = normalize_record(record)
    except (TypeError, ValueError, OverflowError) as e:
        result.errors.append(f"{location}: failed to normalize record: {e}")
        logger.debug("record_normalize_failed", location=location, error=str(e))
        return

    if event is None:
        result.skipped += 1
        return
    result.events.append(event)
