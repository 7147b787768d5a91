"""Tests for request and pipeline-stage spans."""

import pytest
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import SimpleSpanProcessor
from opentelemetry.sdk.trace.export.in_memory_span_exporter import InMemorySpanExporter
from opentelemetry.trace import StatusCode

from video_delivery.core import tracing
from video_delivery.core.storage import StorageResult
from video_delivery.core.tracing import (
    PipelineStage,
    current_trace_ids,
    request_span,
    set_response_status,
    stage_span,
)


@pytest.fixture
def spans(monkeypatch) -> InMemorySpanExporter:
    """Route spans to an in-memory exporter without touching the global provider."""
    exporter = InMemorySpanExporter()
    provider = TracerProvider()
    provider.add_span_processor(SimpleSpanProcessor(exporter))
    monkeypatch.setattr(tracing, "_tracer", lambda: provider.get_tracer("test"))
    return exporter


def _by_name(exporter: InMemorySpanExporter, name: str) -> list:
    return [s for s in exporter.get_finished_spans() if s.name == name]


class TestStageSpan:
    def test_name_and_video_attributes(self, spans) -> None:
        with stage_span(PipelineStage.UPLOAD, "lessons/a.mp4", quality="480p", object_key="lessons/a_480p.mp4"):
            pass

        (span,) = spans.get_finished_spans()
        assert span.name == "transcode.upload"
        assert span.attributes["video.source_id"] == "lessons/a.mp4"
        assert span.attributes["video.quality"] == "480p"
        assert span.attributes["video.object_key"] == "lessons/a_480p.mp4"

    def test_optional_attributes_are_omitted(self, spans) -> None:
        with stage_span(PipelineStage.DOWNLOAD, "lessons/a.mp4"):
            pass

        (span,) = spans.get_finished_spans()
        assert "video.quality" not in span.attributes
        assert "video.object_key" not in span.attributes

    def test_failure_is_recorded_and_reraised(self, spans) -> None:
        with pytest.raises(RuntimeError):
            with stage_span(PipelineStage.ENCODE, "lessons/a.mp4", quality="720p"):
                raise RuntimeError("ffmpeg exited 1")

        (span,) = spans.get_finished_spans()
        assert span.status.status_code == StatusCode.ERROR
        assert [event.name for event in span.events] == ["exception"]

    def test_trace_ids_only_inside_a_span(self, spans) -> None:
        assert current_trace_ids() == (None, None)
        with stage_span(PipelineStage.RESOLVE, "lessons/a.mp4") as span:
            trace_id, span_id = current_trace_ids()
        assert trace_id == format(span.get_span_context().trace_id, "032x")
        assert span_id == format(span.get_span_context().span_id, "016x")


class TestRequestSpan:
    def test_server_error_marks_span(self, spans) -> None:
        with request_span("GET", "/api/v1/files/{id}/binary", "http://t/x", range_header="bytes=0-") as span:
            set_response_status(span, 503)

        (finished,) = spans.get_finished_spans()
        assert finished.name == "GET /api/v1/files/{id}/binary"
        assert finished.attributes["http.status_code"] == 503
        assert finished.attributes["http.range"] == "bytes=0-"
        assert finished.status.status_code == StatusCode.ERROR

    def test_client_error_leaves_status_unset(self, spans) -> None:
        with request_span("GET", "/health", "http://t/health") as span:
            set_response_status(span, 416)

        (finished,) = spans.get_finished_spans()
        assert finished.status.status_code == StatusCode.UNSET
        assert "http.range" not in finished.attributes


class TestPipelineSpans:
    @pytest.mark.asyncio
    async def test_job_opens_a_span_per_stage(self, spans, make_coordinator, put_object) -> None:
        put_object("lessons/a.mp4", b"source")

        await make_coordinator().run_job("lessons/a.mp4")

        assert len(_by_name(spans, "transcode.download")) == 1
        encodes = _by_name(spans, "transcode.encode")
        assert [s.attributes["video.quality"] for s in encodes] == ["720p", "480p", "360p"]
        uploads = _by_name(spans, "transcode.upload")
        assert {s.attributes["video.object_key"] for s in uploads} == {
            "lessons/a_720p.mp4",
            "lessons/a_480p.mp4",
            "lessons/a_360p.mp4",
        }

    @pytest.mark.asyncio
    async def test_failed_upload_marks_its_span(self, spans, make_coordinator, put_object, backend, monkeypatch) -> None:
        put_object("lessons/a.mp4", b"source")
        monkeypatch.setattr(
            backend,
            "upload",
            lambda *args, **kwargs: StorageResult(success=False, key="k", url="", error_message="disk full"),
        )

        await make_coordinator().run_job("lessons/a.mp4")

        (upload,) = _by_name(spans, "transcode.upload")
        assert upload.status.status_code == StatusCode.ERROR
        assert "disk full" in upload.status.description
