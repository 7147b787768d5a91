"""File delivery router.

Provides the video binary endpoint with range support and the compression
management endpoints used by the frontend and the upload collaborator.
"""

import asyncio
import logging
from typing import Any, Optional

import httpx
from fastapi import APIRouter, Depends, HTTPException, Query, Request, Response, WebSocket, WebSocketDisconnect, status
from fastapi.responses import JSONResponse, StreamingResponse
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession
from starlette.background import BackgroundTask

from video_delivery.core.config import settings
from video_delivery.core.database import get_db
from video_delivery.core.exceptions import RangeNotSatisfiableError
from video_delivery.core.metrics import RANGE_NOT_SATISFIABLE_TOTAL
from video_delivery.core.storage import ObjectStore
from video_delivery.modules.files.dependencies import (
    get_coordinator,
    get_http_client,
    get_notifier,
    get_resolver,
    get_store,
)
from video_delivery.modules.files.models import VideoFile
from video_delivery.modules.files.schemas import (
    CompressionStatusEvent,
    CompressionValidationResponse,
    FileMetaResponse,
    ProcessingResponse,
    RenditionDeletionResponse,
    TranscodeRequestResponse,
)
from video_delivery.modules.files.service import FileDeliveryService, FileNotFoundInCatalogError
from video_delivery.modules.files.streaming import (
    full_content_headers,
    not_satisfiable_headers,
    open_proxy_stream,
    parse_range,
    partial_content_headers,
    stream_object,
)
from video_delivery.modules.transcoding.delivery import DecisionKind, DeliveryDecision, DeliveryResolver
from video_delivery.modules.transcoding.notifier import StatusNotifier
from video_delivery.modules.transcoding.playlist import (
    PLAYLIST_CACHE_CONTROL,
    PLAYLIST_CONTENT_TYPE,
    build_master_playlist,
)
from video_delivery.modules.transcoding.service import RENDITION_CONTENT_TYPE, TranscodingCoordinator

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/files", tags=["files"])
ws_router = APIRouter(tags=["files"])


def get_file_service(
    session: AsyncSession = Depends(get_db),
    store: ObjectStore = Depends(get_store),
    coordinator: TranscodingCoordinator = Depends(get_coordinator),
    resolver: DeliveryResolver = Depends(get_resolver),
) -> FileDeliveryService:
    """Dependency for getting the file delivery service."""
    return FileDeliveryService(session, store, coordinator, resolver)


async def _load_file(service: FileDeliveryService, file_id: str) -> VideoFile:
    try:
        return await service.get_file(file_id)
    except FileNotFoundInCatalogError:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="file_not_found")


class RegisterFileRequest(BaseModel):
    object_key: str
    content_type: Optional[str] = None
    filename: Optional[str] = None
    transcode: bool = True


@router.post(
    "",
    response_model=FileMetaResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Register an uploaded object",
)
async def register_file(
    request: RegisterFileRequest,
    service: FileDeliveryService = Depends(get_file_service),
) -> FileMetaResponse:
    """Record an object already written to the store and, for videos, start transcoding."""
    video_file = await service.register_file(
        request.object_key, request.content_type, request.filename
    )
    # Commit before the background job looks the row up in its own session
    await service.session.commit()
    if request.transcode and video_file.is_video:
        await service.request_transcode(video_file)
    return FileMetaResponse.model_validate(video_file)


def _delivery_headers(decision: DeliveryDecision) -> dict[str, str]:
    headers = {"X-Delivery-Decision": decision.kind.value}
    if decision.quality:
        headers["X-Delivered-Quality"] = decision.quality
    return headers


@router.api_route(
    "/{file_id}/binary",
    methods=["GET", "HEAD"],
    summary="Stream a file",
    description="Serves the requested quality with HTTP range support, falling back "
    "to another rendition or the original when it does not exist.",
    responses={
        200: {"description": "Full content"},
        202: {"model": ProcessingResponse, "description": "Requested quality still encoding"},
        206: {"description": "Partial content"},
        404: {"description": "Unknown file"},
        416: {"description": "Range not satisfiable"},
    },
)
async def get_file_binary(
    file_id: str,
    request: Request,
    quality: Optional[str] = Query(None, description="Requested rendition, e.g. 480p"),
    token: Optional[str] = Query(None, description="Access token for media elements; not checked here"),
    service: FileDeliveryService = Depends(get_file_service),
    http_client: httpx.AsyncClient = Depends(get_http_client),
) -> Response:
    video_file = await _load_file(service, file_id)
    decision = await service.resolve(video_file, quality)

    if decision.kind == DecisionKind.DEFER:
        retry_after = settings.PROCESSING_RETRY_AFTER_SECONDS
        body = ProcessingResponse(
            file_id=file_id,
            requested_quality=quality or service.coordinator.catalog.default,
            retry_after=retry_after,
            available_qualities=await service.coordinator.find_existing_qualities(
                video_file.object_key
            ),
        )
        return JSONResponse(
            status_code=status.HTTP_202_ACCEPTED,
            content=body.model_dump(),
            headers={"Retry-After": str(retry_after), "Cache-Control": "no-store"},
        )

    object_key = decision.object_key
    extra_headers = _delivery_headers(decision)

    if settings.DELIVERY_MODE == "proxy" and request.method == "GET":
        url = await service.store.get_url(object_key, settings.SIGNED_URL_TTL_SECONDS)
        proxied = await open_proxy_stream(
            http_client,
            url,
            request.headers.get("range"),
            queue_size=settings.PROXY_QUEUE_SIZE,
            chunk_size=settings.STREAM_CHUNK_SIZE,
        )
        return StreamingResponse(
            proxied.body,
            status_code=proxied.status_code,
            headers={**proxied.headers, **extra_headers},
            background=BackgroundTask(proxied.aclose),
        )

    stat = await service.store.stat(object_key)
    content_type = (
        RENDITION_CONTENT_TYPE
        if decision.kind in (DecisionKind.SERVE_EXACT, DecisionKind.SERVE_FALLBACK)
        else video_file.content_type or stat.content_type
    )
    cache_ttl = settings.VIDEO_CACHE_TTL_SECONDS

    try:
        byte_range = parse_range(
            request.headers.get("range"), stat.size, settings.VIDEO_MAX_CHUNK_SIZE
        )
    except RangeNotSatisfiableError:
        RANGE_NOT_SATISFIABLE_TOTAL.inc()
        return Response(
            status_code=status.HTTP_416_REQUESTED_RANGE_NOT_SATISFIABLE,
            headers={**not_satisfiable_headers(stat.size), **extra_headers},
        )

    if byte_range is None:
        status_code = status.HTTP_200_OK
        headers = full_content_headers(stat.size, content_type, cache_ttl, stat.etag)
        start, end = 0, stat.size - 1
    else:
        status_code = status.HTTP_206_PARTIAL_CONTENT
        headers = partial_content_headers(object_key, byte_range, content_type, cache_ttl)
        start, end = byte_range.start, byte_range.end
    headers.update(extra_headers)

    if request.method == "HEAD" or end < start:
        return Response(status_code=status_code, headers=headers)

    return StreamingResponse(
        stream_object(service.store, object_key, start, end, settings.STREAM_CHUNK_SIZE),
        status_code=status_code,
        headers=headers,
    )


@router.get(
    "/{file_id}/validate-compression",
    response_model=CompressionValidationResponse,
    summary="Check recorded compression state against the store",
)
async def validate_compression(
    file_id: str,
    service: FileDeliveryService = Depends(get_file_service),
) -> CompressionValidationResponse:
    video_file = await _load_file(service, file_id)
    return await service.validate_compression(video_file)


@router.post(
    "/{file_id}/compress",
    response_model=TranscodeRequestResponse,
    status_code=status.HTTP_202_ACCEPTED,
    summary="Start transcoding a video",
)
async def compress_file(
    file_id: str,
    service: FileDeliveryService = Depends(get_file_service),
) -> TranscodeRequestResponse:
    """Start a transcoding job. Repeated calls while one runs report ``already_running``."""
    video_file = await _load_file(service, file_id)
    return await service.request_transcode(video_file)


@router.delete(
    "/{file_id}/renditions",
    response_model=RenditionDeletionResponse,
    summary="Delete every rendition of a video",
)
async def delete_renditions(
    file_id: str,
    service: FileDeliveryService = Depends(get_file_service),
) -> RenditionDeletionResponse:
    video_file = await _load_file(service, file_id)
    return await service.delete_renditions(video_file)


@router.get("/{file_id}/playlist.m3u8", summary="HLS master playlist of existing renditions")
async def get_playlist(
    file_id: str,
    request: Request,
    service: FileDeliveryService = Depends(get_file_service),
) -> Response:
    video_file = await _load_file(service, file_id)
    profiles = await service.existing_profiles(video_file) if video_file.is_video else []
    if not profiles:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="no_renditions")

    binary_url = request.url_for("get_file_binary", file_id=file_id)
    playlist = build_master_playlist(
        profiles, lambda profile: str(binary_url.include_query_params(quality=profile.name))
    )
    return Response(
        content=playlist,
        media_type=PLAYLIST_CONTENT_TYPE,
        headers={"Cache-Control": PLAYLIST_CACHE_CONTROL},
    )


@ws_router.websocket("/ws/files/{file_id}/compression")
async def ws_compression_status(
    websocket: WebSocket,
    file_id: str,
    service: FileDeliveryService = Depends(get_file_service),
    notifier: StatusNotifier = Depends(get_notifier),
) -> None:
    """Push compression status changes for one file.

    Sends the current state on connect, then one event per transition.
    """
    await websocket.accept()
    try:
        video_file = await service.get_file(file_id)
    except FileNotFoundInCatalogError:
        await websocket.send_json({"detail": "file_not_found"})
        await websocket.close(code=4404)
        return

    source_id = video_file.object_key
    q = await notifier.subscribe(source_id)
    relay: Optional[asyncio.Task] = None
    if notifier.redis is not None:
        relay = asyncio.create_task(notifier.relay_from_redis(source_id, q))
    try:
        current = await service.validate_compression(video_file)
        await websocket.send_json(current.model_dump(mode="json", by_alias=True))
        while True:
            payload: dict[str, Any] = await q.get()
            event = CompressionStatusEvent.model_validate(payload)
            await websocket.send_json(event.model_dump(mode="json"))
    except WebSocketDisconnect:
        return
    finally:
        if relay is not None:
            relay.cancel()
            await asyncio.gather(relay, return_exceptions=True)
        await notifier.unsubscribe(source_id, q)
