"""Integration tests for API endpoints."""

from unittest.mock import AsyncMock, MagicMock

import httpx
import pytest
from fastapi.testclient import TestClient
from sqlalchemy import select
from sqlalchemy.exc import OperationalError

from waflens.api.app import create_app
from waflens.api.deps import get_app_config, get_db_session, get_ingestion_service
from waflens.config import StorageConfig, reset_config
from waflens.ingest.parser import UnreadableContentError
from waflens.ingest.results import TimeRange, UploadResult, UploadStatus
from waflens.ingest.service import (
    FileTooLargeError,
    RawContentMissingError,
    RawContentNotRetainedError,
    RawRetentionError,
    UploadNotFoundError,
)
from waflens.persistence.models import AttackPath, DailyAction, TopIP, TopRule, Upload


@pytest.fixture
def mock_db_session():
    """Create a mock async database session."""
    session = AsyncMock()
    session.add = MagicMock()
    session.commit = AsyncMock()
    session.rollback = AsyncMock()
    return session


@pytest.fixture
def mock_service(mock_db_session):
    """Create a mock ingestion service."""
    service = MagicMock()
    service.session = mock_db_session
    service.ingest_file = AsyncMock()
    service.reindex = AsyncMock()
    service.rebuild_rollups = AsyncMock()
    return service


@pytest.fixture
def app(monkeypatch, mock_db_session, mock_service):
    """Create test app with mock dependencies."""
    monkeypatch.setenv("WAFLENS_DATABASE_URL", "sqlite+aiosqlite:///:memory:")
    reset_config()
    app = create_app()

    async def override_get_db_session():
        yield mock_db_session

    app.dependency_overrides[get_db_session] = override_get_db_session
    app.dependency_overrides[get_ingestion_service] = lambda: mock_service
    yield app
    reset_config()


@pytest.fixture
def client(app):
    """Create test client."""
    with TestClient(app) as client:
        yield client


def success_result(filename: str = "events.ndjson") -> UploadResult:
    return UploadResult(
        filename=filename,
        checksum="ab" * 32,
        file_id=1,
        status=UploadStatus.SUCCESS,
        total=2,
        inserted=2,
        deduped=0,
        errors=["Line 2: Expecting property name enclosed in double quotes (column 2)"],
        parse_errors=1,
        time_range=TimeRange.from_epoch_ms((1_709_294_400_000, 1_709_294_460_000)),
    )


class TestHealthEndpoints:
    """Tests for health check endpoints."""

    def test_health_check(self, client):
        """Test health check endpoint returns healthy status."""
        response = client.get("/health")
        assert response.status_code == 200
        assert response.json() == {"status": "healthy"}

    def test_root_endpoint(self, client):
        """Test root endpoint returns API info."""
        response = client.get("/")
        assert response.status_code == 200
        data = response.json()
        assert data["name"] == "waflens API"
        assert data["version"] == "0.1.0"
        assert "docs" in data


class TestUploadEndpoint:
    """Tests for POST /api/upload."""

    def test_upload_single_file(self, client, mock_service):
        """Test one file produces one result."""
        mock_service.ingest_file.return_value = success_result()

        response = client.post(
            "/api/upload",
            files=[("files", ("events.ndjson", b'{"RayID": "a"}\n', "application/x-ndjson"))],
        )

        assert response.status_code == 200
        (result,) = response.json()["results"]
        assert result["status"] == "success"
        assert result["inserted"] == 2
        assert result["time_range"] == {
            "earliest": "2024-03-01T12:00:00.000Z",
            "latest": "2024-03-01T12:01:00.000Z",
        }
        mock_service.ingest_file.assert_awaited_once_with("events.ndjson", b'{"RayID": "a"}\n')

    def test_failing_file_does_not_abort_siblings(self, client, mock_service):
        """Test files are processed in order and failures are per file."""
        mock_service.ingest_file.side_effect = [
            FileTooLargeError(60 * 1024 * 1024, 50 * 1024 * 1024),
            UnreadableContentError("invalid start byte"),
            success_result("c.json"),
        ]

        response = client.post(
            "/api/upload",
            files=[
                ("files", ("a.json", b"[]", "application/json")),
                ("files", ("b.json", b"\xff", "application/json")),
                ("files", ("c.json", b"[]", "application/json")),
            ],
        )

        assert response.status_code == 200
        results = response.json()["results"]
        assert [r["filename"] for r in results] == ["a.json", "b.json", "c.json"]
        assert [r["status"] for r in results] == ["error", "error", "success"]
        assert "larger than" in results[0]["errors"][0]

    def test_storage_error_is_reported_per_file(self, client, mock_service, mock_db_session):
        mock_service.ingest_file.side_effect = OperationalError(
            "INSERT", {}, Exception("database is locked")
        )

        response = client.post(
            "/api/upload",
            files=[("files", ("a.json", b"[]", "application/json"))],
        )

        assert response.status_code == 200
        (result,) = response.json()["results"]
        assert result["status"] == "error"
        assert result["errors"][0].startswith("Storage error:")
        mock_db_session.rollback.assert_awaited()

    def test_unexpected_error_is_reported_per_file(self, client, mock_service, mock_db_session):
        mock_service.ingest_file.side_effect = [RuntimeError("boom"), success_result("b.json")]

        response = client.post(
            "/api/upload",
            files=[
                ("files", ("a.json", b"[]", "application/json")),
                ("files", ("b.json", b"[]", "application/json")),
            ],
        )

        assert response.status_code == 200
        results = response.json()["results"]
        assert [r["status"] for r in results] == ["error", "success"]
        assert results[0]["errors"] == ["Unexpected error: boom"]
        mock_db_session.rollback.assert_awaited()

    def test_upload_without_files(self, client):
        response = client.post("/api/upload")
        assert response.status_code == 422


class TestUploadWithIngestionService:
    """Tests for /api/upload against a real service and SQLite database."""

    @pytest.fixture
    def unwritable_config(self, test_config, tmp_path):
        """Retention enabled with the blob directory pointing at a regular file."""
        blocker = tmp_path / "not-a-directory"
        blocker.write_text("")
        return test_config.model_copy(
            update={"storage": StorageConfig(retain_raw=True, blob_dir=blocker)}
        )

    @pytest.fixture
    def service_app(self, monkeypatch, db_session, unwritable_config):
        monkeypatch.setenv("WAFLENS_DATABASE_URL", "sqlite+aiosqlite:///:memory:")
        reset_config()
        app = create_app()

        async def override_get_db_session():
            yield db_session

        app.dependency_overrides[get_db_session] = override_get_db_session
        app.dependency_overrides[get_app_config] = lambda: unwritable_config
        yield app
        reset_config()

    async def test_blob_failure_keeps_per_file_results(
        self, service_app, db_session, make_record, ndjson
    ):
        """Test a failing blob store yields one error result per file."""
        transport = httpx.ASGITransport(app=service_app)
        async with httpx.AsyncClient(transport=transport, base_url="http://test") as client:
            response = await client.post(
                "/api/upload",
                files=[
                    ("files", ("a.ndjson", ndjson([make_record("ray-1")]), "application/x-ndjson")),
                    ("files", ("b.ndjson", ndjson([make_record("ray-2")]), "application/x-ndjson")),
                ],
            )

        assert response.status_code == 200
        results = response.json()["results"]
        assert [r["filename"] for r in results] == ["a.ndjson", "b.ndjson"]
        assert [r["status"] for r in results] == ["error", "error"]
        assert results[0]["errors"][0].startswith("Raw file storage failed")
        uploads = (await db_session.execute(select(Upload))).scalars().all()
        assert uploads == []


class TestReindexEndpoint:
    """Tests for POST /api/reindex."""

    def test_reindex_success(self, client, mock_service):
        mock_service.reindex.return_value = success_result()

        response = client.post("/api/reindex", json={"checksum": "ab" * 32})

        assert response.status_code == 200
        assert response.json()["status"] == "success"
        mock_service.reindex.assert_awaited_once_with(checksum="ab" * 32, file_id=None)

    def test_reindex_by_file_id(self, client, mock_service):
        mock_service.reindex.return_value = success_result()

        response = client.post("/api/reindex", json={"file_id": 1})

        assert response.status_code == 200
        mock_service.reindex.assert_awaited_once_with(checksum=None, file_id=1)

    def test_reindex_requires_reference(self, client, mock_service):
        response = client.post("/api/reindex", json={})

        assert response.status_code == 400
        mock_service.reindex.assert_not_awaited()

    @pytest.mark.parametrize(
        "error,status_code",
        [
            (UploadNotFoundError("checksum abc"), 404),
            (RawContentMissingError(1, "uploads/abc"), 404),
            (RawContentNotRetainedError(1), 400),
            (RawRetentionError("ab", OSError("read failed")), 500),
        ],
    )
    def test_reindex_error_mapping(self, client, mock_service, error, status_code):
        mock_service.reindex.side_effect = error

        response = client.post("/api/reindex", json={"file_id": 1})

        assert response.status_code == status_code
        assert response.json()["detail"] == str(error)


class TestRollupEndpoints:
    """Tests for rollup views and rebuild."""

    def test_top_rules(self, client, mock_db_session):
        mock_result = MagicMock()
        mock_result.scalars.return_value.all.return_value = [
            TopRule(rule_id="r1", rule_name="SQLi", rule_type="managed", count=9, last_seen=5),
            TopRule(rule_id="r2", rule_name=None, rule_type="unknown", count=2, last_seen=3),
        ]
        mock_db_session.execute.return_value = mock_result

        response = client.get("/api/rollups/rules?limit=10")

        assert response.status_code == 200
        data = response.json()
        assert data["total"] == 2
        assert data["items"][0] == {
            "rule_id": "r1",
            "rule_name": "SQLi",
            "rule_type": "managed",
            "count": 9,
            "last_seen": 5,
        }

    def test_daily_actions(self, client, mock_db_session):
        mock_result = MagicMock()
        mock_result.scalars.return_value.all.return_value = [
            DailyAction(date="2024-03-01", action="block", count=4, last_updated=1),
        ]
        mock_db_session.execute.return_value = mock_result

        response = client.get("/api/rollups/daily-actions?since=2024-03-01")

        assert response.status_code == 200
        assert response.json()["items"] == [{"date": "2024-03-01", "action": "block", "count": 4}]

    def test_top_ips(self, client, mock_db_session):
        mock_result = MagicMock()
        mock_result.scalars.return_value.all.return_value = [
            TopIP(src_ip="192.0.2.1", count=3, countries=["de", "us"], asns=[64500], last_seen=7),
        ]
        mock_db_session.execute.return_value = mock_result

        response = client.get("/api/rollups/ips")

        assert response.status_code == 200
        (item,) = response.json()["items"]
        assert item["countries"] == ["de", "us"]
        assert item["asns"] == [64500]

    def test_attack_paths(self, client, mock_db_session):
        mock_result = MagicMock()
        mock_result.scalars.return_value.all.return_value = [
            AttackPath(path_hash="f" * 64, path="/login", method="POST", status=403, count=6, last_seen=2),
        ]
        mock_db_session.execute.return_value = mock_result

        response = client.get("/api/rollups/paths")

        assert response.status_code == 200
        assert response.json()["items"][0]["path"] == "/login"

    def test_invalid_limit(self, client):
        response = client.get("/api/rollups/rules?limit=0")
        assert response.status_code == 422

    def test_rebuild(self, client, mock_service):
        mock_service.rebuild_rollups.return_value = 12

        response = client.post("/api/rollups/rebuild")

        assert response.status_code == 200
        assert response.json() == {"status": "rebuilt", "events": 12}


class TestCORS:
    """Tests for CORS configuration."""

    def test_cors_headers_present(self, client):
        """Test CORS headers are present in response."""
        response = client.options(
            "/health",
            headers={
                "Origin": "http://localhost:3000",
                "Access-Control-Request-Method": "GET",
            },
        )
        assert response.status_code == 200
        assert response.headers["access-control-allow-origin"] == "http://localhost:3000"
