"""Tests for structured logging and metric path normalization."""

import json
import logging
import sys

from video_delivery.core.logging import (
    StructuredFormatter,
    clear_correlation_id,
    job_context,
    set_correlation_id,
)
from video_delivery.core.middleware import normalize_path


def _record(message: str = "hello", **extra) -> logging.LogRecord:
    record = logging.LogRecord("video_delivery.test", logging.INFO, __file__, 10, message, None, None)
    for key, value in extra.items():
        setattr(record, key, value)
    return record


class TestStructuredFormatter:
    def test_includes_correlation_id_and_extra_fields(self) -> None:
        set_correlation_id("req-123")
        try:
            data = json.loads(StructuredFormatter().format(_record(quality="480p")))
        finally:
            clear_correlation_id()

        assert data["message"] == "hello"
        assert data["level"] == "INFO"
        assert data["correlation_id"] == "req-123"
        assert data["extra"] == {"quality": "480p"}

    def test_job_context_is_attached_and_reset(self) -> None:
        formatter = StructuredFormatter()

        with job_context("job-1", "vid1.mp4"):
            inside = json.loads(formatter.format(_record()))
        outside = json.loads(formatter.format(_record()))

        assert inside["job"] == {"job_id": "job-1", "source_id": "vid1.mp4"}
        assert "job" not in outside

    def test_exception_details(self) -> None:
        try:
            raise RuntimeError("encoder exploded")
        except RuntimeError:
            record = _record()
            record.exc_info = sys.exc_info()

        data = json.loads(StructuredFormatter().format(record))

        assert data["exception"]["type"] == "RuntimeError"
        assert data["exception"]["message"] == "encoder exploded"
        assert data["exception"]["stack_trace"]

    def test_unserializable_extra_is_stringified(self) -> None:
        data = json.loads(StructuredFormatter().format(_record(payload=object())))

        assert isinstance(data["extra"]["payload"], str)


class TestNormalizePath:
    def test_file_ids_collapse(self) -> None:
        assert normalize_path("/api/v1/files/3f2c9a1e-0000-4000-8000-000000000001/binary") == (
            "/api/v1/files/{id}/binary"
        )
        assert normalize_path("/api/v1/files/abc/playlist.m3u8") == "/api/v1/files/{id}/playlist.m3u8"

    def test_websocket_path(self) -> None:
        assert normalize_path("/api/v1/ws/files/abc/compression") == "/api/v1/ws/files/{id}/compression"

    def test_static_paths_unchanged(self) -> None:
        assert normalize_path("/health") == "/health"
        assert normalize_path("/api/v1/files") == "/api/v1/files"
