"""Event store with idempotent batched inserts and upload bookkeeping."""

from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass
from typing import Any

import structlog
from sqlalchemy import delete, select, update
from sqlalchemy.dialects import postgresql as postgres_dialect
from sqlalchemy.dialects import sqlite as sqlite_dialect
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.sql import Insert

from waflens.ingest.normalizer import NormalizedEvent
from waflens.persistence.models import Upload, WafEvent, epoch_ms

logger = structlog.get_logger()

# Stay under the bind parameter limits of asyncpg (32767) and SQLite (32766)
MAX_BIND_PARAMETERS = 30000

EVENT_COLUMNS = len(NormalizedEvent.__dataclass_fields__) + 2  # + file_id, ingested_at


@dataclass(frozen=True)
class BatchTally:
    """Running inserted/deduped counts, merged after every chunk."""

    inserted: int = 0
    deduped: int = 0

    @property
    def total(self) -> int:
        return self.inserted + self.deduped

    def __add__(self, other: BatchTally) -> BatchTally:
        return BatchTally(
            inserted=self.inserted + other.inserted,
            deduped=self.deduped + other.deduped,
        )


class BatchWriteError(Exception):
    """Raised when a chunk fails to write. Earlier chunks stay committed."""

    def __init__(self, file_id: int, tally: BatchTally, cause: Exception):
        self.file_id = file_id
        self.tally = tally
        self.cause = cause
        super().__init__(
            f"Batch write failed for file {file_id} after {tally.total} rows: {cause}"
        )


def dialect_insert(session: AsyncSession, table: Any) -> Insert:
    """Return the dialect-specific INSERT construct supporting ON CONFLICT."""
    dialect_name = session.bind.dialect.name if session.bind else ""
    if dialect_name == "postgresql":
        return postgres_dialect.insert(table)
    if dialect_name == "sqlite":
        return sqlite_dialect.insert(table)
    raise NotImplementedError(f"Upserts are not supported on dialect {dialect_name!r}")


def chunked(items: Sequence[Any], size: int) -> list[Sequence[Any]]:
    """Split a sequence into consecutive slices of at most ``size`` items."""
    if size < 1:
        raise ValueError(f"Chunk size must be positive, got {size}")
    return [items[i:i + size] for i in range(0, len(items), size)]


class EventStore:
    """Persistence for canonical events and their owning uploads."""

    def __init__(self, session: AsyncSession):
        """Initialize the event store with a database session.

        Args:
            session: Async SQLAlchemy session for database operations
        """
        self.session = session

    # =========================================================================
    # Events
    # =========================================================================

    async def insert_events(
        self,
        events: Sequence[NormalizedEvent],
        file_id: int,
        batch_size: int = 1000,
    ) -> BatchTally:
        """Insert events in fixed-size chunks, committing after each chunk.

        Rows whose (correlation_id, event_ts) already exist are skipped by the
        database and counted as deduped. The upload's counters are updated
        with the running tally in the same transaction as each chunk.

        Args:
            events: Normalized events in file order
            file_id: Owning upload id stamped on every row
            batch_size: Number of events per chunk

        Returns:
            Tally of inserted and deduped rows

        Raises:
            BatchWriteError: If a chunk fails. Carries the tally of the chunks
                committed before the failure.
        """
        tally = BatchTally()
        for index, chunk in enumerate(chunked(events, batch_size)):
            try:
                chunk_tally = await self.insert_batch(chunk, file_id)
                await self._record_progress(file_id, tally + chunk_tally)
                await self.session.commit()
            except (SQLAlchemyError, OverflowError) as e:
                # OverflowError: the driver could not bind an integer value
                await self.session.rollback()
                logger.error(
                    "batch_write_failed",
                    file_id=file_id,
                    batch=index,
                    inserted=tally.inserted,
                    deduped=tally.deduped,
                    error=str(e),
                )
                raise BatchWriteError(file_id, tally, e) from e

            tally = tally + chunk_tally
            logger.debug(
                "batch_written",
                file_id=file_id,
                batch=index,
                inserted=chunk_tally.inserted,
                deduped=chunk_tally.deduped,
            )
        return tally

    async def insert_batch(
        self,
        events: Sequence[NormalizedEvent],
        file_id: int,
    ) -> BatchTally:
        """Insert one chunk with INSERT ... ON CONFLICT DO NOTHING.

        Args:
            events: Events of this chunk
            file_id: Owning upload id

        Returns:
            Tally for this chunk only
        """
        if not events:
            return BatchTally()

        ingested_at = epoch_ms()
        rows = []
        for event in events:
            row = event.to_row()
            row["file_id"] = file_id
            row["ingested_at"] = ingested_at
            rows.append(row)

        inserted = 0
        rows_per_statement = max(1, MAX_BIND_PARAMETERS // EVENT_COLUMNS)
        for statement_rows in chunked(rows, rows_per_statement):
            stmt = (
                dialect_insert(self.session, WafEvent.__table__)
                .values(list(statement_rows))
                .on_conflict_do_nothing(index_elements=["correlation_id", "event_ts"])
                .returning(WafEvent.__table__.c.id)
            )
            result = await self.session.execute(stmt)
            inserted += len(result.scalars().all())

        return BatchTally(inserted=inserted, deduped=len(rows) - inserted)

    async def delete_events_for_file(self, file_id: int) -> int:
        """Delete every event owned by a file.

        Returns:
            Number of rows deleted
        """
        result = await self.session.execute(
            delete(WafEvent).where(WafEvent.file_id == file_id)
        )
        logger.info("file_events_deleted", file_id=file_id, deleted=result.rowcount)
        return result.rowcount or 0

    async def _record_progress(self, file_id: int, tally: BatchTally) -> None:
        await self.session.execute(
            update(Upload)
            .where(Upload.id == file_id)
            .values(
                total_records=tally.total,
                inserted_records=tally.inserted,
                deduped_records=tally.deduped,
            )
        )

    # =========================================================================
    # Uploads
    # =========================================================================

    async def get_upload(self, file_id: int) -> Upload | None:
        """Get an upload by id."""
        result = await self.session.execute(
            select(Upload)
            .where(Upload.id == file_id)
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def get_upload_by_checksum(self, checksum: str) -> Upload | None:
        """Get an upload by content checksum."""
        result = await self.session.execute(
            select(Upload)
            .where(Upload.checksum == checksum)
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def create_upload(self, filename: str, checksum: str, size: int) -> Upload:
        """Create and commit a new upload row.

        Committing before any event is written leaves an audit trail even if
        ingestion dies half way.
        """
        upload = Upload(filename=filename, checksum=checksum, size=size, uploaded_at=epoch_ms())
        self.session.add(upload)
        await self.session.flush()
        await self.session.commit()
        logger.info("upload_created", file_id=upload.id, filename=filename, checksum=checksum)
        return upload

    async def delete_upload(self, file_id: int) -> None:
        """Delete an upload row and any events still owned by it."""
        await self.session.execute(delete(WafEvent).where(WafEvent.file_id == file_id))
        await self.session.execute(delete(Upload).where(Upload.id == file_id))
        await self.session.commit()

    async def set_raw_key(self, file_id: int, raw_key: str) -> None:
        """Record where the raw file content was retained."""
        await self.session.execute(
            update(Upload).where(Upload.id == file_id).values(raw_key=raw_key)
        )
        await self.session.commit()

    async def update_upload_stats(
        self,
        file_id: int,
        total: int,
        inserted: int,
        deduped: int,
        rollups_applied: bool = False,
    ) -> None:
        """Overwrite the record counters of an upload and commit.

        Anything pending on the session (rollup writes in particular) is
        committed together with the counters.
        """
        await self.session.execute(
            update(Upload)
            .where(Upload.id == file_id)
            .values(
                total_records=total,
                inserted_records=inserted,
                deduped_records=deduped,
                rollups_applied=rollups_applied,
            )
        )
        await self.session.commit()
