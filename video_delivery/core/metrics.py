"""Prometheus metrics for the transcoding and delivery pipeline."""

import os

from prometheus_client import (
    CONTENT_TYPE_LATEST,
    CollectorRegistry,
    Counter,
    Gauge,
    Histogram,
    Info,
    generate_latest,
    multiprocess,
)

# Custom registry so tests and multiple app instances don't collide with the default one
REGISTRY = CollectorRegistry()

# Running under gunicorn with several workers
if "PROMETHEUS_MULTIPROC_DIR" in os.environ:
    multiprocess.MultiProcessCollector(REGISTRY)


# ============================================
# Application Info
# ============================================
APP_INFO = Info(
    "video_delivery_app",
    "Application information",
    registry=REGISTRY,
)


# ============================================
# HTTP Request Metrics
# ============================================
HTTP_REQUESTS_TOTAL = Counter(
    "http_requests_total",
    "Total HTTP requests",
    ["method", "endpoint", "status_code"],
    registry=REGISTRY,
)

HTTP_REQUEST_DURATION_SECONDS = Histogram(
    "http_request_duration_seconds",
    "HTTP request duration in seconds",
    ["method", "endpoint"],
    buckets=[0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0],
    registry=REGISTRY,
)

HTTP_REQUESTS_IN_PROGRESS = Gauge(
    "http_requests_in_progress",
    "Number of HTTP requests currently in progress",
    ["method", "endpoint"],
    registry=REGISTRY,
)


# ============================================
# Transcoding Metrics
# ============================================
TRANSCODE_JOBS_TOTAL = Counter(
    "transcode_jobs_total",
    "Transcoding jobs by outcome (completed, failed, already_running)",
    ["status"],
    registry=REGISTRY,
)

TRANSCODE_ACTIVE_JOBS = Gauge(
    "transcode_active_jobs",
    "Transcoding jobs currently running in this process",
    registry=REGISTRY,
)

ENCODE_DURATION_SECONDS = Histogram(
    "encode_duration_seconds",
    "Wall time of one encoder run",
    ["quality", "outcome"],
    buckets=[1.0, 5.0, 15.0, 30.0, 60.0, 120.0, 300.0, 600.0, 1800.0],
    registry=REGISTRY,
)

RENDITION_UPLOADS_TOTAL = Counter(
    "rendition_uploads_total",
    "Rendition uploads by quality and outcome",
    ["quality", "outcome"],
    registry=REGISTRY,
)


# ============================================
# Delivery Metrics
# ============================================
DELIVERY_DECISIONS_TOTAL = Counter(
    "delivery_decisions_total",
    "Delivery decisions by kind (exact, fallback, original, defer)",
    ["decision"],
    registry=REGISTRY,
)

STREAMED_BYTES_TOTAL = Counter(
    "streamed_bytes_total",
    "Bytes written to clients by delivery mode",
    ["mode"],
    registry=REGISTRY,
)

RANGE_NOT_SATISFIABLE_TOTAL = Counter(
    "range_not_satisfiable_total",
    "Requests rejected with 416",
    registry=REGISTRY,
)

PROXY_DISCONNECTS_TOTAL = Counter(
    "proxy_client_disconnects_total",
    "Proxied streams abandoned by the client before completion",
    registry=REGISTRY,
)


def get_metrics() -> bytes:
    """Generate latest metrics in Prometheus format."""
    return generate_latest(REGISTRY)


def get_content_type() -> str:
    return CONTENT_TYPE_LATEST


def set_app_info(version: str, environment: str) -> None:
    """Set application info metrics.

    Args:
        version: Application version
        environment: Deployment environment
    """
    APP_INFO.info({
        "version": version,
        "environment": environment,
    })
