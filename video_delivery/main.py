"""FastAPI application entry point."""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, Response

from video_delivery.core.config import settings
from video_delivery.core.database import init_models
from video_delivery.core.exceptions import (
    ObjectNotFoundError,
    RangeNotSatisfiableError,
    TransportError,
    UpstreamProxyError,
    ValidationError,
    VideoDeliveryError,
)
from video_delivery.core.logging import log_error, setup_logging
from video_delivery.core.metrics import get_content_type, get_metrics, set_app_info
from video_delivery.core.middleware import (
    CorrelationIdMiddleware,
    MetricsMiddleware,
    RequestLoggingMiddleware,
    TracingMiddleware,
)
from video_delivery.core.tracing import setup_tracing, shutdown_tracing
from video_delivery.modules.files import files_router, files_ws_router
from video_delivery.modules.files.dependencies import get_coordinator, get_http_client
from video_delivery.modules.files.streaming import not_satisfiable_headers

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    await init_models()
    yield
    await get_coordinator().wait_all()
    await get_http_client().aclose()
    shutdown_tracing()


app = FastAPI(
    title=settings.PROJECT_NAME,
    version=settings.VERSION,
    description="Adaptive video transcoding and range-request delivery.",
    openapi_url=f"{settings.API_V1_PREFIX}/openapi.json",
    lifespan=lifespan,
    openapi_tags=[
        {"name": "health", "description": "Health check endpoints"},
        {"name": "files", "description": "Video delivery and compression management"},
    ],
)

setup_logging(
    level="DEBUG" if settings.DEBUG else settings.LOG_LEVEL,
    json_format=settings.LOG_JSON,
    include_stack_trace=True,
)

setup_tracing(
    service_name=settings.PROJECT_NAME,
    service_version=settings.VERSION,
    environment="development" if settings.DEBUG else "production",
    enable_console_export=settings.DEBUG,
)

set_app_info(
    version=settings.VERSION,
    environment="development" if settings.DEBUG else "production",
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["GET", "HEAD", "POST", "DELETE", "OPTIONS"],
    allow_headers=["*"],
    expose_headers=["Content-Range", "Accept-Ranges", "Content-Length", "Retry-After"],
)

app.add_middleware(RequestLoggingMiddleware)
app.add_middleware(TracingMiddleware)
app.add_middleware(CorrelationIdMiddleware)
app.add_middleware(MetricsMiddleware)


@app.exception_handler(VideoDeliveryError)
async def video_delivery_error_handler(request: Request, exc: VideoDeliveryError) -> Response:
    """Map pipeline errors to a small, stable set of statuses. Details stay in the logs."""
    if isinstance(exc, RangeNotSatisfiableError):
        return Response(
            status_code=status.HTTP_416_REQUESTED_RANGE_NOT_SATISFIABLE,
            headers=not_satisfiable_headers(exc.total_size),
        )
    if isinstance(exc, ValidationError):
        status_code = status.HTTP_400_BAD_REQUEST
    elif isinstance(exc, ObjectNotFoundError):
        status_code = status.HTTP_404_NOT_FOUND
    elif isinstance(exc, UpstreamProxyError):
        status_code = status.HTTP_502_BAD_GATEWAY
    elif isinstance(exc, TransportError):
        status_code = status.HTTP_503_SERVICE_UNAVAILABLE
    else:
        status_code = status.HTTP_500_INTERNAL_SERVER_ERROR

    if status_code >= 500:
        log_error(logger, "Request failed", exc, path=request.url.path, reason=exc.reason)
    return JSONResponse(status_code=status_code, content={"detail": exc.reason})


@app.get("/health", tags=["health"])
async def health_check() -> dict[str, str]:
    """Health check endpoint."""
    return {"status": "healthy"}


@app.get("/metrics", include_in_schema=False)
async def metrics() -> Response:
    """Prometheus exposition."""
    return Response(content=get_metrics(), media_type=get_content_type())


app.include_router(files_router, prefix=settings.API_V1_PREFIX)
app.include_router(files_ws_router, prefix=settings.API_V1_PREFIX)
