"""Blob storage for optional raw-file retention."""

from __future__ import annotations

import asyncio
from pathlib import Path
from typing import Protocol

import structlog

logger = structlog.get_logger()


class BlobStore(Protocol):
    """Minimal key/value blob storage used for raw upload retention."""

    async def put(self, key: str, data: bytes) -> None:
        """Store bytes under a key, replacing any previous value."""

    async def get(self, key: str) -> bytes | None:
        """Return the bytes stored under a key, or None if absent."""

    async def delete(self, key: str) -> None:
        """Remove a key. Missing keys are ignored."""


def raw_key_for(checksum: str) -> str:
    """Blob key used to retain an upload's raw content."""
    return f"uploads/{checksum}"


class LocalBlobStore:
    """Filesystem-backed blob store rooted at a directory."""

    def __init__(self, root: Path | str):
        self.root = Path(root).resolve()

    def _path_for(self, key: str) -> Path:
        path = (self.root / key).resolve()
        if not path.is_relative_to(self.root):
            raise ValueError(f"Blob key escapes storage root: {key!r}")
        return path

    async def put(self, key: str, data: bytes) -> None:
        path = self._path_for(key)

        def _write() -> None:
            path.parent.mkdir(parents=True, exist_ok=True)
            tmp_path = path.with_name(path.name + ".tmp")
            tmp_path.write_bytes(data)
            tmp_path.replace(path)

        await asyncio.to_thread(_write)
        logger.debug("blob_stored", key=key, size=len(data))

    async def get(self, key: str) -> bytes | None:
        path = self._path_for(key)

        def _read() -> bytes | None:
            try:
                return path.read_bytes()
            except FileNotFoundError:
                return None

        return await asyncio.to_thread(_read)

    async def delete(self, key: str) -> None:
        path = self._path_for(key)
        await asyncio.to_thread(path.unlink, missing_ok=True)
