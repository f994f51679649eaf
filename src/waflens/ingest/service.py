"""Ingestion service: dedup gate, batched writes, rollups and reindex."""

from __future__ import annotations

import time
from typing import Optional

import structlog
from sqlalchemy.ext.asyncio import AsyncSession

from waflens.config import Config, get_config
from waflens.ingest.parser import (
    IngestError,
    ParseResult,
    compute_checksum,
    decode_content,
    parse_content,
)
from waflens.ingest.results import TimeRange, UploadResult, UploadStatus
from waflens.persistence.blobs import BlobStore, raw_key_for
from waflens.persistence.models import Upload
from waflens.persistence.projector import RollupProjector
from waflens.persistence.store import BatchTally, BatchWriteError, EventStore

logger = structlog.get_logger()

ALREADY_PROCESSED_NOTE = "File was already processed. Use /api/reindex to reprocess."
OUTSIDE_DEFAULT_WINDOW_NOTE = (
    "Events are outside the default 24-hour dashboard view. "
    "Adjust the date range to see them."
)
DEFAULT_WINDOW_MS = 24 * 60 * 60 * 1000


class FileTooLargeError(IngestError):
    """Raised when an upload exceeds the configured size limit."""

    def __init__(self, size: int, limit: int):
        self.size = size
        self.limit = limit
        super().__init__(f"File is {size} bytes, larger than the {limit} byte limit")


class UploadNotFoundError(IngestError):
    """Raised when a reindex names an upload that does not exist."""

    def __init__(self, reference: str):
        self.reference = reference
        super().__init__(f"File not found: {reference}")


class RawContentUnavailableError(IngestError):
    """Raised when an upload's raw content cannot be fetched for reindex."""


class RawContentNotRetainedError(RawContentUnavailableError):
    """Raw content was never retained for this upload."""

    def __init__(self, file_id: int):
        self.file_id = file_id
        super().__init__(f"Raw file not available for reprocessing (file {file_id})")


class RawContentMissingError(RawContentUnavailableError):
    """Raw content was retained but the blob is gone."""

    def __init__(self, file_id: int, raw_key: str):
        self.file_id = file_id
        self.raw_key = raw_key
        super().__init__(f"Raw file not found in storage: {raw_key}")


class RawRetentionError(IngestError):
    """Raised when the blob store fails to store or read raw content."""

    def __init__(self, checksum: str, cause: OSError):
        self.checksum = checksum
        self.cause = cause
        super().__init__(f"Raw file storage failed: {cause}")


class IngestionService:
    """Runs the parse, write and rollup sequence for one file at a time.

    Files are processed sequentially on the session given; nothing here
    takes locks, so two concurrent runs against the same checksum are not
    coordinated.
    """

    def __init__(
        self,
        session: AsyncSession,
        blob_store: Optional[BlobStore] = None,
        config: Optional[Config] = None,
    ):
        """Initialize the service.

        Args:
            session: Async SQLAlchemy session for database operations
            blob_store: Storage for raw file retention and reindex
            config: Configuration, defaults to the global configuration
        """
        self.session = session
        self.blob_store = blob_store
        self.config = config or get_config()
        self.store = EventStore(session)
        self.projector = RollupProjector(session)

    @property
    def retains_raw(self) -> bool:
        return self.config.storage.retain_raw and self.blob_store is not None

    async def ingest_file(self, filename: str, data: bytes) -> UploadResult:
        """Ingest one uploaded file.

        Args:
            filename: Name the file was uploaded under
            data: Exact file bytes

        Returns:
            Per-file statistics

        Raises:
            FileTooLargeError: If the file exceeds the size limit.
            UnreadableContentError: If the bytes are not UTF-8 text.
            RawRetentionError: If raw retention is on and the blob store fails.
        """
        limit = self.config.ingest.max_file_size_bytes
        if len(data) > limit:
            raise FileTooLargeError(len(data), limit)

        checksum = compute_checksum(data)
        existing = await self.store.get_upload_by_checksum(checksum)
        if existing is not None and existing.inserted_records > 0 and existing.rollups_applied:
            logger.info(
                "upload_already_processed",
                filename=filename,
                checksum=checksum,
                file_id=existing.id,
            )
            return self._already_processed(filename, existing)

        content = decode_content(data)

        if existing is not None:
            # Earlier attempt never completed; drop it and its events and start over
            logger.info(
                "stale_upload_discarded",
                filename=filename,
                checksum=checksum,
                file_id=existing.id,
                inserted=existing.inserted_records,
            )
            await self.store.delete_upload(existing.id)

        raw_key = await self._retain_raw(checksum, data) if self.retains_raw else None
        upload = await self.store.create_upload(filename, checksum, len(data))
        file_id = upload.id
        if raw_key is not None:
            await self.store.set_raw_key(file_id, raw_key)

        parsed = parse_content(content)
        logger.info(
            "file_parsed",
            filename=filename,
            file_id=file_id,
            events=len(parsed.events),
            errors=len(parsed.errors),
            skipped=parsed.skipped,
        )

        if not parsed.events:
            await self.store.update_upload_stats(file_id, total=0, inserted=0, deduped=0)
            return self._result(filename, checksum, file_id, parsed, BatchTally())

        tally, failure = await self._write_events(parsed, file_id)
        await self._apply_rollups(file_id, tally)

        logger.info(
            "file_ingested",
            filename=filename,
            file_id=file_id,
            inserted=tally.inserted,
            deduped=tally.deduped,
            failed=failure is not None,
        )

        result = self._result(filename, checksum, file_id, parsed, tally, failure)
        if result.status is UploadStatus.SUCCESS:
            result.note = self._window_note(parsed)
        return result

    async def reindex(
        self,
        checksum: Optional[str] = None,
        file_id: Optional[int] = None,
    ) -> UploadResult:
        """Re-run parsing and writes for a previously uploaded file.

        The file's events are deleted and every rollup bucket they touched is
        recomputed from the remaining events in the same transaction. Events
        are then rebuilt from the retained raw content, projected, and the
        upload counters overwritten.

        Args:
            checksum: Content checksum of the upload
            file_id: Upload id, used when no checksum is given

        Raises:
            ValueError: If neither checksum nor file_id is given.
            UploadNotFoundError: If no upload matches.
            RawContentNotRetainedError: If the raw content was not kept.
            RawContentMissingError: If the retained blob no longer exists.
            RawRetentionError: If the blob store cannot be read.
        """
        if checksum:
            upload = await self.store.get_upload_by_checksum(checksum)
            reference = f"checksum {checksum}"
        elif file_id is not None:
            upload = await self.store.get_upload(file_id)
            reference = f"file_id {file_id}"
        else:
            raise ValueError("Either checksum or file_id is required")

        if upload is None:
            raise UploadNotFoundError(reference)
        file_id, filename, checksum, raw_key = (
            upload.id,
            upload.filename,
            upload.checksum,
            upload.raw_key,
        )
        if not raw_key or self.blob_store is None:
            raise RawContentNotRetainedError(file_id)

        try:
            data = await self.blob_store.get(raw_key)
        except OSError as e:
            raise RawRetentionError(checksum, e) from e
        if data is None:
            raise RawContentMissingError(file_id, raw_key)
        content = decode_content(data)

        stale_keys = await self.projector.keys_for_file(file_id)
        deleted = await self.store.delete_events_for_file(file_id)
        await self.projector.refresh(stale_keys)
        await self.store.update_upload_stats(file_id, total=0, inserted=0, deduped=0)

        parsed = parse_content(content)
        tally, failure = await self._write_events(parsed, file_id)
        await self._apply_rollups(file_id, tally)

        logger.info(
            "file_reindexed",
            file_id=file_id,
            checksum=checksum,
            deleted=deleted,
            inserted=tally.inserted,
            deduped=tally.deduped,
            failed=failure is not None,
        )
        return self._result(filename, checksum, file_id, parsed, tally, failure)

    async def rebuild_rollups(self) -> int:
        """Regenerate every rollup table from all stored events."""
        events = await self.projector.rebuild()
        await self.session.commit()
        return events

    async def _retain_raw(self, checksum: str, data: bytes) -> str:
        raw_key = raw_key_for(checksum)
        try:
            await self.blob_store.put(raw_key, data)
        except OSError as e:
            raise RawRetentionError(checksum, e) from e
        return raw_key

    async def _apply_rollups(self, file_id: int, tally: BatchTally) -> None:
        """Project the file's events and record final counters in one commit."""
        if tally.inserted > 0:
            await self.projector.project_file(file_id)
        await self.store.update_upload_stats(
            file_id,
            total=tally.total,
            inserted=tally.inserted,
            deduped=tally.deduped,
            rollups_applied=True,
        )

    async def _write_events(
        self, parsed: ParseResult, file_id: int
    ) -> tuple[BatchTally, Optional[BatchWriteError]]:
        try:
            tally = await self.store.insert_events(
                parsed.events,
                file_id,
                batch_size=self.config.ingest.batch_size,
            )
        except BatchWriteError as e:
            return e.tally, e
        return tally, None

    def _result(
        self,
        filename: str,
        checksum: str,
        file_id: int,
        parsed: ParseResult,
        tally: BatchTally,
        failure: Optional[BatchWriteError] = None,
    ) -> UploadResult:
        errors = list(parsed.errors)
        if failure is not None:
            status = UploadStatus.ERROR
            errors.insert(0, f"Storage error: {failure.cause}")
        elif not parsed.events:
            status = UploadStatus.NO_VALID_EVENTS
        else:
            status = UploadStatus.SUCCESS

        return UploadResult(
            filename=filename,
            checksum=checksum,
            file_id=file_id,
            status=status,
            total=tally.total,
            inserted=tally.inserted,
            deduped=tally.deduped,
            errors=errors[: self.config.ingest.max_errors_reported],
            parse_errors=len(parsed.errors),
            time_range=TimeRange.from_epoch_ms(parsed.time_range),
        )

    @staticmethod
    def _already_processed(filename: str, upload: Upload) -> UploadResult:
        return UploadResult(
            filename=filename,
            checksum=upload.checksum,
            file_id=upload.id,
            status=UploadStatus.ALREADY_PROCESSED,
            total=upload.total_records,
            inserted=upload.inserted_records,
            deduped=upload.deduped_records,
            note=ALREADY_PROCESSED_NOTE,
        )

    @staticmethod
    def _window_note(parsed: ParseResult) -> Optional[str]:
        bounds = parsed.time_range
        if bounds is None:
            return None
        now_ms = int(time.time() * 1000)
        if bounds[0] < now_ms - DEFAULT_WINDOW_MS:
            return OUTSIDE_DEFAULT_WINDOW_NOTE
        return None
