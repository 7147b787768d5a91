"""Repository for file metadata."""

from typing import Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from video_delivery.core.database import async_session_maker
from video_delivery.modules.files.models import VideoFile
from video_delivery.modules.transcoding.models import CompressionStatus
from video_delivery.modules.transcoding.service import CompressionState, CompressionStateStore


class VideoFileRepository:
    """Repository for VideoFile operations."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def create(
        self,
        object_key: str,
        content_type: str,
        size: int = 0,
        filename: Optional[str] = None,
    ) -> VideoFile:
        """Register an uploaded file.

        Video uploads start out ``pending`` until their first job runs.
        """
        video_file = VideoFile(
            object_key=object_key,
            content_type=content_type,
            size=size,
            filename=filename,
            compression_status=(
                CompressionStatus.PENDING if content_type.startswith("video/") else None
            ),
            compressed_qualities=[],
        )
        self.session.add(video_file)
        await self.session.flush()
        return video_file

    async def get_by_id(self, file_id: str) -> Optional[VideoFile]:
        result = await self.session.execute(select(VideoFile).where(VideoFile.id == file_id))
        return result.scalar_one_or_none()

    async def get_by_object_key(self, object_key: str) -> Optional[VideoFile]:
        result = await self.session.execute(
            select(VideoFile).where(VideoFile.object_key == object_key)
        )
        return result.scalar_one_or_none()

    async def set_compression_status(
        self,
        video_file: VideoFile,
        status: CompressionStatus,
        qualities: list[str],
    ) -> None:
        video_file.compression_status = status
        video_file.compressed_qualities = list(qualities)

    async def delete(self, video_file: VideoFile) -> None:
        await self.session.delete(video_file)


class SQLFileMetadataStore(CompressionStateStore):
    """Compression state backed by the ``video_files`` table.

    Opens a short session per call so background jobs never hold a request's
    session open.
    """

    def __init__(self, session_maker: Optional[async_sessionmaker] = None):
        self.session_maker = session_maker or async_session_maker

    async def get_file_meta(self, file_id: str) -> Optional[VideoFile]:
        async with self.session_maker() as session:
            return await VideoFileRepository(session).get_by_id(file_id)

    async def get_file_meta_by_object_key(self, object_key: str) -> Optional[VideoFile]:
        async with self.session_maker() as session:
            return await VideoFileRepository(session).get_by_object_key(object_key)

    async def get_compression_state(self, source_id: str) -> Optional[CompressionState]:
        video_file = await self.get_file_meta_by_object_key(source_id)
        if video_file is None or video_file.compression_status is None:
            return None
        return CompressionState(
            status=video_file.compression_status,
            qualities=list(video_file.compressed_qualities or []),
        )

    async def set_compression_status(
        self, source_id: str, status: CompressionStatus, qualities: list[str]
    ) -> None:
        async with self.session_maker() as session:
            repo = VideoFileRepository(session)
            video_file = await repo.get_by_object_key(source_id)
            if video_file is None:
                return
            await repo.set_compression_status(video_file, status, qualities)
            await session.commit()
