"""Pytest fixtures for waflens tests."""

import json
from typing import Any, AsyncGenerator
from unittest.mock import AsyncMock, MagicMock

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool
from sqlmodel import SQLModel

from waflens.config import Config, IngestConfig, StorageConfig
from waflens.persistence import models  # noqa: F401  (registers tables)

# 2024-03-01T12:00:00Z
BASE_TS_MS = 1_709_294_400_000


@pytest.fixture
def mock_session() -> AsyncMock:
    """Create a mock async database session."""
    session = AsyncMock(spec=AsyncSession)
    session.add = MagicMock()
    session.flush = AsyncMock()
    session.rollback = AsyncMock()
    session.commit = AsyncMock()
    session.bind = MagicMock()
    session.bind.dialect.name = "postgresql"
    return session


@pytest_asyncio.fixture
async def db_engine() -> AsyncGenerator[AsyncEngine, None]:
    """In-memory SQLite engine with a fresh schema."""
    engine = create_async_engine(
        "sqlite+aiosqlite:///:memory:",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    async with engine.begin() as conn:
        await conn.run_sync(SQLModel.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest_asyncio.fixture
async def db_session(db_engine: AsyncEngine) -> AsyncGenerator[AsyncSession, None]:
    """Session on the in-memory SQLite database."""
    factory = async_sessionmaker(db_engine, class_=AsyncSession, expire_on_commit=False)
    async with factory() as session:
        yield session


@pytest.fixture
def test_config(tmp_path) -> Config:
    """Configuration with small batches and raw retention under tmp_path."""
    return Config(
        ingest=IngestConfig(batch_size=5, max_file_size_mb=1, max_errors_reported=10),
        storage=StorageConfig(retain_raw=True, blob_dir=tmp_path / "raw"),
    )


def build_record(ray_id: str, offset_ms: int = 0, **fields: Any) -> dict[str, Any]:
    """Helper function to build a Cloudflare-style firewall event record."""
    record: dict[str, Any] = {
        "RayID": ray_id,
        "EdgeStartTimestamp": BASE_TS_MS + offset_ms,
        "ClientIP": "203.0.113.7",
        "ClientCountry": "us",
        "ClientASN": 64500,
        "ClientRequestHost": "shop.example.com",
        "ClientRequestPath": "/login",
        "ClientRequestMethod": "POST",
        "EdgeResponseStatus": 403,
        "FirewallMatchesRuleIDs": ["managed_sqli_942100"],
        "FirewallMatchesActions": ["block"],
        "FirewallMatchesSources": ["firewallManaged"],
        "WAFRuleMessage": "SQL Injection Attack Detected",
    }
    record.update(fields)
    return record


def to_ndjson(records: list[Any]) -> bytes:
    """Helper function to serialize records as NDJSON bytes."""
    return ("\n".join(json.dumps(r) for r in records) + "\n").encode()


@pytest.fixture
def make_record():
    """Factory fixture for raw event records."""
    return build_record


@pytest.fixture
def ndjson():
    """Factory fixture serializing records as NDJSON bytes."""
    return to_ndjson
