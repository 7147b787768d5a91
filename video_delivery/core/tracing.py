"""OpenTelemetry tracing for the delivery API and the transcoding pipeline.

Two kinds of span are opened: one server span per HTTP request, and one
span per pipeline stage (source download, each encode, each rendition
upload, delivery resolution). Stage spans carry the source key, quality and
object key as ``video.*`` attributes so a slow request can be followed down
to the storage call or encode that held it up.
"""

import logging
from contextlib import contextmanager
from enum import Enum
from typing import Iterator, Optional

from opentelemetry import trace
from opentelemetry.propagate import set_global_textmap
from opentelemetry.sdk.resources import SERVICE_NAME, SERVICE_VERSION, Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor, ConsoleSpanExporter
from opentelemetry.trace import Span, Status, StatusCode
from opentelemetry.trace.propagation.tracecontext import TraceContextTextMapPropagator

logger = logging.getLogger(__name__)

INSTRUMENTATION_NAME = "video_delivery"

_provider: Optional[TracerProvider] = None


class PipelineStage(str, Enum):
    """Span names for the stages of a transcode job and of a delivery."""
    DOWNLOAD = "transcode.download"
    ENCODE = "transcode.encode"
    UPLOAD = "transcode.upload"
    RESOLVE = "delivery.resolve"


def setup_tracing(
    service_name: str,
    service_version: str,
    environment: str = "development",
    enable_console_export: bool = False,
) -> None:
    """Install the tracer provider and W3C trace-context propagation.

    Args:
        service_name: Reported as ``service.name``
        service_version: Reported as ``service.version``
        environment: Reported as ``deployment.environment``
        enable_console_export: Print finished spans to stdout
    """
    global _provider

    _provider = TracerProvider(resource=Resource.create({
        SERVICE_NAME: service_name,
        SERVICE_VERSION: service_version,
        "deployment.environment": environment,
    }))
    if enable_console_export:
        _provider.add_span_processor(BatchSpanProcessor(ConsoleSpanExporter()))

    trace.set_tracer_provider(_provider)
    set_global_textmap(TraceContextTextMapPropagator())
    logger.info(
        "Tracing initialized",
        extra={"service": service_name, "version": service_version, "console_export": enable_console_export},
    )


def _tracer() -> trace.Tracer:
    # Resolved per call: spans opened before setup_tracing are no-ops
    return trace.get_tracer(INSTRUMENTATION_NAME)


def _mark_failed(span: Span, exc: BaseException) -> None:
    span.record_exception(exc)
    span.set_status(Status(StatusCode.ERROR, str(exc)))


@contextmanager
def stage_span(
    stage: PipelineStage,
    source_id: str,
    quality: Optional[str] = None,
    object_key: Optional[str] = None,
) -> Iterator[Span]:
    """Span for one pipeline stage. Exceptions are recorded and re-raised."""
    attributes = {"video.source_id": source_id}
    if quality is not None:
        attributes["video.quality"] = quality
    if object_key is not None:
        attributes["video.object_key"] = object_key

    with _tracer().start_as_current_span(
        stage.value, attributes=attributes, record_exception=False, set_status_on_exception=False
    ) as span:
        try:
            yield span
        except Exception as e:
            _mark_failed(span, e)
            raise


@contextmanager
def request_span(method: str, route: str, url: str, range_header: Optional[str] = None) -> Iterator[Span]:
    """Server span for one HTTP request, named ``<METHOD> <route>``."""
    attributes = {"http.method": method, "http.url": url, "http.route": route}
    if range_header:
        attributes["http.range"] = range_header

    with _tracer().start_as_current_span(
        f"{method} {route}",
        kind=trace.SpanKind.SERVER,
        attributes=attributes,
        record_exception=False,
        set_status_on_exception=False,
    ) as span:
        try:
            yield span
        except Exception as e:
            _mark_failed(span, e)
            raise


def set_response_status(span: Span, status_code: int) -> None:
    """Attach the response status; 5xx marks the server span as errored."""
    span.set_attribute("http.status_code", status_code)
    if status_code >= 500:
        span.set_status(Status(StatusCode.ERROR))


def current_trace_ids() -> tuple[Optional[str], Optional[str]]:
    """Hex ``(trace_id, span_id)`` of the current span, or ``(None, None)``."""
    context = trace.get_current_span().get_span_context()
    if not context.is_valid:
        return None, None
    return format(context.trace_id, "032x"), format(context.span_id, "016x")


def shutdown_tracing() -> None:
    """Flush pending spans and shut the provider down."""
    if _provider:
        _provider.shutdown()
        logger.info("Tracing shutdown complete")
