"""Tests for storage backends and the async object store gateway."""

from unittest.mock import MagicMock

import pytest
from botocore.exceptions import ClientError

from video_delivery.core.exceptions import ObjectNotFoundError, TransportError
from video_delivery.core.storage import (
    LocalStorage,
    ObjectStore,
    S3Storage,
    StorageConfig,
    create_backend,
)


def _client_error(code: str, operation: str = "HeadObject") -> ClientError:
    return ClientError({"Error": {"Code": code, "Message": code}}, operation)


class TestLocalStorage:
    def test_upload_then_read_ranges(self, backend: LocalStorage, tmp_path) -> None:
        source = tmp_path / "rendition.mp4"
        source.write_bytes(b"0123456789")

        result = backend.upload(str(source), "videos/a_480p.mp4", content_type="video/mp4")

        assert result.success
        assert result.file_size == 10
        assert backend.exists("videos/a_480p.mp4")
        assert backend.read_range("videos/a_480p.mp4", 2, 5) == b"2345"
        assert list(backend.iter_range("videos/a_480p.mp4", 0, 9, chunk_size=4)) == [b"0123", b"4567", b"89"]

    def test_stat_reports_size_and_guessed_type(self, backend, put_object) -> None:
        put_object("videos/a.mp4", b"x" * 42)

        stat = backend.stat("videos/a.mp4")

        assert stat.size == 42
        assert stat.content_type == "video/mp4"

    def test_missing_object(self, backend, tmp_path) -> None:
        assert not backend.exists("nope.mp4")
        assert not backend.download("nope.mp4", str(tmp_path / "out"))
        assert not backend.delete("nope.mp4")
        with pytest.raises(ObjectNotFoundError):
            backend.stat("nope.mp4")
        with pytest.raises(ObjectNotFoundError):
            list(backend.iter_range("nope.mp4", 0, 1))

    def test_keys_cannot_escape_root(self, backend) -> None:
        with pytest.raises(TransportError):
            backend.exists("../outside.mp4")

    def test_list_files_by_prefix(self, backend, put_object) -> None:
        put_object("videos/a.mp4", b"1")
        put_object("videos/a_480p.mp4", b"2")
        put_object("videos/b.mp4", b"3")

        assert backend.list_files("videos/a") == ["videos/a.mp4", "videos/a_480p.mp4"]

    def test_create_backend(self, tmp_path) -> None:
        assert isinstance(create_backend(StorageConfig(backend="local", local_path=str(tmp_path))), LocalStorage)
        assert isinstance(create_backend(StorageConfig(backend="minio")), S3Storage)
        with pytest.raises(ValueError):
            create_backend(StorageConfig(backend="ftp"))


class TestS3Storage:
    @pytest.fixture
    def s3(self) -> S3Storage:
        storage = S3Storage(StorageConfig(backend="s3", bucket="media"))
        storage._client = MagicMock()
        return storage

    def test_upload_sets_content_type_and_cache_control(self, s3, tmp_path) -> None:
        source = tmp_path / "r.mp4"
        source.write_bytes(b"abc")
        s3._client.put_object.return_value = {"ETag": '"tag"'}

        result = s3.upload(str(source), "v_480p.mp4", "video/mp4", "public, max-age=86400")

        kwargs = s3._client.put_object.call_args.kwargs
        assert kwargs["Bucket"] == "media"
        assert kwargs["ContentType"] == "video/mp4"
        assert kwargs["CacheControl"] == "public, max-age=86400"
        assert result.success and result.etag == "tag"

    def test_upload_failure_is_reported_not_raised(self, s3, tmp_path) -> None:
        source = tmp_path / "r.mp4"
        source.write_bytes(b"abc")
        s3._client.put_object.side_effect = _client_error("AccessDenied", "PutObject")

        result = s3.upload(str(source), "v_480p.mp4")

        assert not result.success
        assert "AccessDenied" in result.error_message

    def test_not_found_maps_to_false_or_object_not_found(self, s3) -> None:
        s3._client.head_object.side_effect = _client_error("404")

        assert s3.exists("v.mp4") is False
        with pytest.raises(ObjectNotFoundError):
            s3.stat("v.mp4")

    def test_other_errors_are_transport_errors(self, s3) -> None:
        s3._client.head_object.side_effect = _client_error("SlowDown")

        with pytest.raises(TransportError):
            s3.exists("v.mp4")

    def test_iter_range_requests_the_span(self, s3) -> None:
        body = MagicMock()
        body.iter_chunks.return_value = iter([b"ab", b"c"])
        s3._client.get_object.return_value = {"Body": body}

        assert list(s3.iter_range("v.mp4", 10, 12, chunk_size=2)) == [b"ab", b"c"]
        assert s3._client.get_object.call_args.kwargs["Range"] == "bytes=10-12"
        body.close.assert_called_once()

    def test_list_files_follows_pages(self, s3) -> None:
        paginator = MagicMock()
        paginator.paginate.return_value = [
            {"Contents": [{"Key": "v_480p.mp4"}]},
            {"Contents": [{"Key": "v_720p.mp4"}]},
            {},
        ]
        s3._client.get_paginator.return_value = paginator

        assert s3.list_files("v") == ["v_480p.mp4", "v_720p.mp4"]


class TestObjectStore:
    @pytest.mark.asyncio
    async def test_async_range_iteration(self, store: ObjectStore, put_object) -> None:
        put_object("a.mp4", b"0123456789")

        chunks = [chunk async for chunk in store.iter_range("a.mp4", 3, 8, chunk_size=2)]

        assert chunks == [b"34", b"56", b"78"]

    @pytest.mark.asyncio
    async def test_async_operations_delegate(self, store: ObjectStore, put_object) -> None:
        put_object("a.mp4", b"0123456789")

        assert await store.exists("a.mp4")
        assert (await store.stat("a.mp4")).size == 10
        assert await store.read_range("a.mp4", 0, 1) == b"01"
        assert await store.list_files("a") == ["a.mp4"]
        assert await store.delete("a.mp4")
        assert not await store.exists("a.mp4")
