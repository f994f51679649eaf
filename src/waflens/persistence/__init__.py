"""Persistence layer for waflens - events, uploads and rollups."""

from waflens.persistence.blobs import BlobStore, LocalBlobStore, raw_key_for
from waflens.persistence.database import (
    close_db,
    get_async_engine,
    get_async_session,
    init_db,
)
from waflens.persistence.models import (
    AttackPath,
    DailyAction,
    TopIP,
    TopRule,
    Upload,
    WafEvent,
)
from waflens.persistence.projector import RollupAccumulator, RollupKeys, RollupProjector
from waflens.persistence.store import BatchTally, BatchWriteError, EventStore

__all__ = [
    # Blobs
    "BlobStore",
    "LocalBlobStore",
    "raw_key_for",
    # Database
    "close_db",
    "get_async_engine",
    "get_async_session",
    "init_db",
    # Store
    "BatchTally",
    "BatchWriteError",
    "EventStore",
    # Projector
    "RollupAccumulator",
    "RollupKeys",
    "RollupProjector",
    # Models
    "AttackPath",
    "DailyAction",
    "TopIP",
    "TopRule",
    "Upload",
    "WafEvent",
]
