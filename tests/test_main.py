"""Tests for the command line entry point."""

from unittest.mock import AsyncMock, patch

import pytest
from rich.console import Console

from waflens.ingest.results import TimeRange, UploadResult, UploadStatus
from waflens.main import build_parser, main, render_results


def render_text(table) -> str:
    console = Console(width=200, record=True)
    console.print(table)
    return console.export_text()


class TestBuildParser:
    """Tests for argument parsing."""

    def test_ingest_files(self):
        args = build_parser().parse_args(["ingest", "a.json", "b.ndjson"])

        assert args.command == "ingest"
        assert [p.name for p in args.files] == ["a.json", "b.ndjson"]

    def test_reindex_requires_one_reference(self):
        parser = build_parser()

        assert parser.parse_args(["reindex", "--file-id", "3"]).file_id == 3
        with pytest.raises(SystemExit):
            parser.parse_args(["reindex"])
        with pytest.raises(SystemExit):
            parser.parse_args(["reindex", "--file-id", "3", "--checksum", "ab"])

    def test_serve_defaults(self):
        args = build_parser().parse_args(["serve"])

        assert (args.host, args.port) == ("127.0.0.1", 8000)

    def test_command_required(self):
        with pytest.raises(SystemExit):
            build_parser().parse_args([])


class TestRenderResults:
    """Tests for the results table."""

    def test_rows_per_file(self):
        results = [
            UploadResult(
                filename="a.ndjson",
                file_id=4,
                status=UploadStatus.SUCCESS,
                total=3,
                inserted=2,
                deduped=1,
                time_range=TimeRange(
                    earliest="2024-03-01T12:00:00.000Z", latest="2024-03-01T13:00:00.000Z"
                ),
            ),
            UploadResult.failed("b.json", "File is not valid UTF-8 text"),
        ]

        text = render_text(render_results(results))

        assert "a.ndjson" in text
        assert "success" in text
        assert "2024-03-01T12:00:00.000Z" in text
        assert "b.json" in text
        assert "error" in text


class TestMain:
    """Tests for command dispatch."""

    def test_ingest_exits_non_zero_on_error(self, tmp_path):
        path = tmp_path / "a.json"
        path.write_text("[]")
        failed = [UploadResult.failed("a.json", "Storage error: boom")]

        with patch("waflens.main.ingest_files", AsyncMock(return_value=failed)), patch(
            "waflens.main.close_db", AsyncMock()
        ), patch("waflens.main.configure_logging"):
            with pytest.raises(SystemExit) as exc_info:
                main(["ingest", str(path)])

        assert exc_info.value.code == 1

    def test_rebuild_rollups(self):
        rebuild = AsyncMock(return_value=5)

        with patch("waflens.main.rebuild_rollups", rebuild), patch(
            "waflens.main.close_db", AsyncMock()
        ), patch("waflens.main.configure_logging"):
            main(["rebuild-rollups"])

        rebuild.assert_awaited_once()
