"""Unit tests for the content parser."""

import codecs
import hashlib
import json

import pytest

from waflens.ingest.parser import (
    ParseResult,
    UnreadableContentError,
    compute_checksum,
    decode_content,
    parse_content,
)


class TestParseContent:
    """Tests for parse_content format detection and error collection."""

    def test_json_array(self, make_record):
        """Test a JSON array yields one event per valid element."""
        content = json.dumps([make_record("a"), make_record("b", offset_ms=1000)])

        result = parse_content(content)

        assert [e.correlation_id for e in result.events] == ["a", "b"]
        assert result.errors == []

    def test_ndjson(self, make_record, ndjson):
        """Test one record per line."""
        content = ndjson([make_record("a"), make_record("b")]).decode()

        result = parse_content(content)

        assert len(result.events) == 2
        assert result.errors == []

    def test_ndjson_blank_lines_skipped(self, make_record):
        """Test blank and whitespace-only lines are ignored."""
        content = "\n" + json.dumps(make_record("a")) + "\n   \n\n" + json.dumps(make_record("b"))

        result = parse_content(content)

        assert len(result.events) == 2
        assert result.errors == []

    def test_ndjson_bad_line_reports_line_number(self, make_record):
        """Test a malformed line costs only that line and names it."""
        content = "\n".join(
            [json.dumps(make_record("a")), "{not json", json.dumps(make_record("b"))]
        )

        result = parse_content(content)

        assert [e.correlation_id for e in result.events] == ["a", "b"]
        assert len(result.errors) == 1
        assert result.errors[0].startswith("Line 2:")

    def test_single_object_document_uses_line_mode(self, make_record):
        """Test a lone JSON object is handled as a one-line NDJSON file."""
        result = parse_content(json.dumps(make_record("solo")))

        assert [e.correlation_id for e in result.events] == ["solo"]

    def test_skipped_records_are_not_errors(self, make_record):
        """Test records the normalizer rejects are counted but not reported."""
        content = json.dumps([make_record("a"), {"foo": "bar"}, 17, make_record("b")])

        result = parse_content(content)

        assert len(result.events) == 2
        assert result.errors == []
        assert result.skipped == 2

    def test_empty_content(self):
        """Test empty input yields nothing."""
        result = parse_content("")

        assert result.events == []
        assert result.errors == []
        assert result.time_range is None

    def test_empty_array(self):
        result = parse_content("[]")

        assert result.events == []
        assert result.errors == []

    def test_time_range(self, make_record):
        """Test time_range spans the earliest and latest events."""
        content = json.dumps(
            [make_record("a", offset_ms=5000), make_record("b"), make_record("c", offset_ms=2000)]
        )

        result = parse_content(content)

        assert result.time_range == (1_709_294_400_000, 1_709_294_405_000)


class TestChecksum:
    """Tests for compute_checksum."""

    def test_sha256_hex_of_bytes(self):
        assert compute_checksum(b"abc") == hashlib.sha256(b"abc").hexdigest()

    def test_text_is_utf8_encoded(self):
        assert compute_checksum("café") == compute_checksum("café".encode("utf-8"))

    def test_different_bytes_differ(self):
        assert compute_checksum(b"[]") != compute_checksum(b"[] ")


class TestDecodeContent:
    """Tests for decode_content."""

    def test_utf8(self):
        assert decode_content("héllo".encode()) == "héllo"

    def test_bom_is_stripped(self):
        assert decode_content(codecs.BOM_UTF8 + b"[]") == "[]"

    def test_invalid_bytes_raise(self):
        with pytest.raises(UnreadableContentError):
            decode_content(b"\xff\xfe\x00garbage\x80")


class TestParseResult:
    """Tests for ParseResult defaults."""

    def test_defaults(self):
        result = ParseResult()

        assert result.events == []
        assert result.errors == []
        assert result.skipped == 0
