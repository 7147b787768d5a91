"""Tests for file metadata persistence."""

import pytest

from video_delivery.modules.files.repository import SQLFileMetadataStore, VideoFileRepository
from video_delivery.modules.transcoding.models import CompressionStatus


class TestVideoFileRepository:
    @pytest.mark.asyncio
    async def test_videos_start_pending(self, session_maker) -> None:
        async with session_maker() as session:
            repo = VideoFileRepository(session)
            video = await repo.create("a.mp4", "video/mp4", size=10)
            doc = await repo.create("a.pdf", "application/pdf")
            await session.commit()

        assert video.compression_status == CompressionStatus.PENDING
        assert video.compressed_qualities == []
        assert video.is_video
        assert doc.compression_status is None
        assert not doc.is_video

    @pytest.mark.asyncio
    async def test_lookup_by_id_and_object_key(self, session_maker) -> None:
        async with session_maker() as session:
            created = await VideoFileRepository(session).create("a.mp4", "video/mp4")
            await session.commit()

        async with session_maker() as session:
            repo = VideoFileRepository(session)
            assert (await repo.get_by_id(created.id)).object_key == "a.mp4"
            assert (await repo.get_by_object_key("a.mp4")).id == created.id
            assert await repo.get_by_id("missing") is None


class TestSQLFileMetadataStore:
    @pytest.mark.asyncio
    async def test_records_status_by_object_key(self, session_maker) -> None:
        async with session_maker() as session:
            created = await VideoFileRepository(session).create("a.mp4", "video/mp4")
            await session.commit()
        store = SQLFileMetadataStore(session_maker)

        await store.set_compression_status("a.mp4", CompressionStatus.COMPLETED, ["720p", "360p"])

        state = await store.get_compression_state("a.mp4")
        assert state.status == CompressionStatus.COMPLETED
        assert state.qualities == ["720p", "360p"]
        meta = await store.get_file_meta(created.id)
        assert meta.compressed_qualities == ["720p", "360p"]

    @pytest.mark.asyncio
    async def test_unknown_source_is_ignored(self, session_maker) -> None:
        store = SQLFileMetadataStore(session_maker)

        await store.set_compression_status("ghost.mp4", CompressionStatus.FAILED, [])

        assert await store.get_compression_state("ghost.mp4") is None
        assert await store.get_file_meta_by_object_key("ghost.mp4") is None
