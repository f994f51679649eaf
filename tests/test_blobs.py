"""Tests for raw content blob storage."""

import pytest

from waflens.persistence.blobs import LocalBlobStore, raw_key_for


class TestLocalBlobStore:
    """Tests for the filesystem blob store."""

    @pytest.fixture
    def blob_store(self, tmp_path) -> LocalBlobStore:
        return LocalBlobStore(tmp_path / "blobs")

    async def test_put_get_roundtrip(self, blob_store: LocalBlobStore):
        key = raw_key_for("ab" * 32)

        await blob_store.put(key, b'{"RayID": "x"}')

        assert await blob_store.get(key) == b'{"RayID": "x"}'

    async def test_put_replaces(self, blob_store: LocalBlobStore):
        await blob_store.put("uploads/x", b"one")
        await blob_store.put("uploads/x", b"two")

        assert await blob_store.get("uploads/x") == b"two"

    async def test_missing_key_returns_none(self, blob_store: LocalBlobStore):
        assert await blob_store.get("uploads/missing") is None

    async def test_delete(self, blob_store: LocalBlobStore):
        await blob_store.put("uploads/x", b"data")

        await blob_store.delete("uploads/x")
        await blob_store.delete("uploads/x")

        assert await blob_store.get("uploads/x") is None

    async def test_key_cannot_escape_root(self, blob_store: LocalBlobStore):
        with pytest.raises(ValueError):
            await blob_store.put("../outside", b"data")


def test_raw_key_for():
    assert raw_key_for("deadbeef") == "uploads/deadbeef"
