"""File delivery service.

Glue between stored file metadata and the transcoding pipeline: looks up a
file, asks the coordinator and resolver about it, and reports compression
state to the frontend.
"""

import logging
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncSession

from video_delivery.core.config import settings
from video_delivery.core.exceptions import ValidationError
from video_delivery.core.storage import ObjectStore
from video_delivery.modules.files.models import VideoFile
from video_delivery.modules.files.repository import VideoFileRepository
from video_delivery.modules.files.schemas import (
    CompressionValidationResponse,
    RenditionDeletionResponse,
    TranscodeRequestResponse,
)
from video_delivery.modules.transcoding.delivery import DeliveryDecision, DeliveryResolver
from video_delivery.modules.transcoding.models import CompressionStatus, QualityProfile
from video_delivery.modules.transcoding.service import TranscodingCoordinator

logger = logging.getLogger(__name__)


class FileNotFoundInCatalogError(Exception):
    """No file with the given ID is registered."""

    def __init__(self, file_id: str):
        self.file_id = file_id
        super().__init__(f"File {file_id} not found")


class NotAVideoError(ValidationError):
    reason = "not_a_video"


class FileDeliveryService:
    """Service for file lookup, delivery decisions and rendition management."""

    def __init__(
        self,
        session: AsyncSession,
        store: ObjectStore,
        coordinator: TranscodingCoordinator,
        resolver: DeliveryResolver,
    ):
        self.session = session
        self.repository = VideoFileRepository(session)
        self.store = store
        self.coordinator = coordinator
        self.resolver = resolver

    async def get_file(self, file_id: str) -> VideoFile:
        video_file = await self.repository.get_by_id(file_id)
        if video_file is None:
            raise FileNotFoundInCatalogError(file_id)
        return video_file

    async def register_file(
        self,
        object_key: str,
        content_type: Optional[str] = None,
        filename: Optional[str] = None,
    ) -> VideoFile:
        """Record an object the upload collaborator has already stored.

        Size (and content type when not given) come from the store.
        """
        existing = await self.repository.get_by_object_key(object_key)
        if existing is not None:
            return existing
        stat = await self.store.stat(object_key)
        video_file = await self.repository.create(
            object_key=object_key,
            content_type=content_type or stat.content_type,
            size=stat.size,
            filename=filename,
        )
        logger.info(
            "File registered",
            extra={"file_id": video_file.id, "object_key": object_key, "size": stat.size},
        )
        return video_file

    async def resolve(self, video_file: VideoFile, quality: Optional[str]) -> DeliveryDecision:
        """What to serve for a binary request.

        Non-video files have no renditions and always serve the original.
        """
        if not video_file.is_video:
            return DeliveryDecision.serve_original(video_file.object_key)
        job_status = await self.coordinator.job_status(video_file.object_key)
        return await self.resolver.resolve(video_file.object_key, quality, job_status)

    async def request_transcode(self, video_file: VideoFile) -> TranscodeRequestResponse:
        """Start (or report the already running) transcoding job for a video."""
        if not video_file.is_video:
            raise NotAVideoError(f"File {video_file.id} is not a video")

        if settings.TRANSCODE_DISPATCH == "celery":
            # Imported here so API processes without a broker never load Celery tasks
            from video_delivery.modules.transcoding.tasks import transcode_source_task

            if await self.coordinator.job_status(video_file.object_key) == CompressionStatus.COMPRESSING:
                return TranscodeRequestResponse(
                    file_id=video_file.id, source_id=video_file.object_key, already_running=True
                )
            result = transcode_source_task.delay(video_file.object_key)
            return TranscodeRequestResponse(
                file_id=video_file.id,
                source_id=video_file.object_key,
                job_id=result.id,
                already_running=False,
            )

        handle = await self.coordinator.request_transcode(video_file.object_key)
        return TranscodeRequestResponse(
            file_id=video_file.id,
            source_id=handle.source_id,
            job_id=handle.job_id,
            already_running=handle.already_running,
        )

    async def validate_compression(self, video_file: VideoFile) -> CompressionValidationResponse:
        """Compare what the last job recorded with what the store holds now."""
        existing = (
            await self.coordinator.find_existing_qualities(video_file.object_key)
            if video_file.is_video
            else []
        )
        recorded = list(video_file.compressed_qualities or [])
        return CompressionValidationResponse(
            file_id=video_file.id,
            object_key=video_file.object_key,
            compression_status=video_file.compression_status,
            actual_compression_status=(
                await self.coordinator.job_status(video_file.object_key)
                if video_file.is_video
                else None
            ),
            recorded_qualities=recorded,
            existing_qualities=existing,
            missing_qualities=[q for q in recorded if q not in existing],
            available_qualities=self.coordinator.catalog.names,
        )

    async def existing_profiles(self, video_file: VideoFile) -> list[QualityProfile]:
        names = await self.coordinator.find_existing_qualities(video_file.object_key)
        return [p for p in self.coordinator.catalog.profiles if p.name in names]

    async def delete_renditions(self, video_file: VideoFile) -> RenditionDeletionResponse:
        deleted = await self.coordinator.delete_all_renditions(video_file.object_key)
        if video_file.is_video:
            await self.repository.set_compression_status(video_file, CompressionStatus.PENDING, [])
        return RenditionDeletionResponse(file_id=video_file.id, deleted=deleted)
