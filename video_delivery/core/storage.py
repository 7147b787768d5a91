"""Object store gateway supporting multiple backends.

Supports: local filesystem, S3, MinIO, and other S3-compatible storage.
Backends are synchronous; ``ObjectStore`` is the async facade the rest of the
service talks to and runs every backend call in a worker thread.
"""

import asyncio
import logging
import mimetypes
import os
import shutil
from abc import ABC, abstractmethod
from dataclasses import dataclass
from pathlib import Path
from typing import AsyncIterator, Iterator, Optional

from video_delivery.core.config import settings
from video_delivery.core.exceptions import ObjectNotFoundError, TransportError

logger = logging.getLogger(__name__)

DEFAULT_CHUNK_SIZE = 64 * 1024


@dataclass
class StorageResult:
    """Result of a storage operation."""
    success: bool
    key: str
    url: str
    file_size: int = 0
    etag: Optional[str] = None
    error_message: Optional[str] = None


@dataclass
class ObjectStat:
    """Metadata of a stored object."""
    key: str
    size: int
    content_type: str
    etag: Optional[str] = None


@dataclass
class StorageConfig:
    """Storage configuration."""
    backend: str  # local, s3, minio
    bucket: str = ""
    region: str = ""
    access_key: str = ""
    secret_key: str = ""
    endpoint_url: Optional[str] = None
    use_ssl: bool = True
    local_path: str = "./storage"


class StorageBackend(ABC):
    """Abstract base class for storage backends."""

    @abstractmethod
    def upload(
        self,
        file_path: str,
        key: str,
        content_type: str = "application/octet-stream",
        cache_control: Optional[str] = None,
    ) -> StorageResult:
        """Upload a local file to storage."""

    @abstractmethod
    def download(self, key: str, destination: str) -> bool:
        """Download an object to a local path. False when the object is missing."""

    @abstractmethod
    def delete(self, key: str) -> bool:
        """Delete an object. False when there was nothing to delete."""

    @abstractmethod
    def exists(self, key: str) -> bool:
        """Check if an object exists."""

    @abstractmethod
    def stat(self, key: str) -> ObjectStat:
        """Return size and content type. Raises ObjectNotFoundError."""

    @abstractmethod
    def iter_range(
        self, key: str, start: int, end: int, chunk_size: int = DEFAULT_CHUNK_SIZE
    ) -> Iterator[bytes]:
        """Yield bytes ``start..end`` (inclusive) of an object in chunks."""

    @abstractmethod
    def get_url(self, key: str, expires_in: int = 3600) -> str:
        """Get a time-limited read URL for an object."""

    @abstractmethod
    def list_files(self, prefix: str = "") -> list[str]:
        """List keys starting with ``prefix``."""

    def read_range(self, key: str, start: int, end: int) -> bytes:
        """Read bytes ``start..end`` (inclusive) of an object into memory."""
        return b"".join(self.iter_range(key, start, end))


class LocalStorage(StorageBackend):
    """Local filesystem storage backend."""

    def __init__(self, config: StorageConfig):
        self.base_path = Path(config.local_path)
        self.base_path.mkdir(parents=True, exist_ok=True)

    def _get_full_path(self, key: str) -> Path:
        path = (self.base_path / key).resolve()
        if self.base_path.resolve() not in path.parents:
            raise TransportError(f"Key escapes storage root: {key}", key=key)
        return path

    def upload(
        self,
        file_path: str,
        key: str,
        content_type: str = "application/octet-stream",
        cache_control: Optional[str] = None,
    ) -> StorageResult:
        """Upload a file to local storage."""
        try:
            dest_path = self._get_full_path(key)
            dest_path.parent.mkdir(parents=True, exist_ok=True)
            # Copy then rename so readers never observe a half-written rendition
            tmp_path = dest_path.with_name(f".{dest_path.name}.part")
            shutil.copyfile(file_path, tmp_path)
            os.replace(tmp_path, dest_path)
            return StorageResult(
                success=True,
                key=key,
                url=self.get_url(key),
                file_size=dest_path.stat().st_size,
            )
        except (OSError, TransportError) as e:
            return StorageResult(success=False, key=key, url="", error_message=str(e))

    def download(self, key: str, destination: str) -> bool:
        """Download a file from local storage."""
        src_path = self._get_full_path(key)
        if not src_path.is_file():
            return False
        try:
            shutil.copyfile(src_path, destination)
        except OSError as e:
            raise TransportError(f"Failed to copy {key}: {e}", key=key) from e
        return True

    def delete(self, key: str) -> bool:
        """Delete a file from local storage."""
        file_path = self._get_full_path(key)
        if not file_path.is_file():
            return False
        try:
            file_path.unlink()
        except OSError as e:
            raise TransportError(f"Failed to delete {key}: {e}", key=key) from e
        return True

    def exists(self, key: str) -> bool:
        """Check if a file exists in local storage."""
        return self._get_full_path(key).is_file()

    def stat(self, key: str) -> ObjectStat:
        path = self._get_full_path(key)
        if not path.is_file():
            raise ObjectNotFoundError(f"Object not found: {key}", key=key)
        content_type, _ = mimetypes.guess_type(path.name)
        return ObjectStat(
            key=key,
            size=path.stat().st_size,
            content_type=content_type or "application/octet-stream",
        )

    def iter_range(
        self, key: str, start: int, end: int, chunk_size: int = DEFAULT_CHUNK_SIZE
    ) -> Iterator[bytes]:
        path = self._get_full_path(key)
        if not path.is_file():
            raise ObjectNotFoundError(f"Object not found: {key}", key=key)
        remaining = end - start + 1
        with open(path, "rb") as f:
            f.seek(start)
            while remaining > 0:
                chunk = f.read(min(chunk_size, remaining))
                if not chunk:
                    break
                remaining -= len(chunk)
                yield chunk

    def get_url(self, key: str, expires_in: int = 3600) -> str:
        """Local files have no signed form; return a file:// URL."""
        return self._get_full_path(key).as_uri()

    def list_files(self, prefix: str = "") -> list[str]:
        """List files whose key starts with ``prefix``."""
        if not self.base_path.exists():
            return []
        files = []
        for path in self.base_path.rglob("*"):
            if not path.is_file() or path.name.endswith(".part"):
                continue
            rel_key = path.relative_to(self.base_path).as_posix()
            if rel_key.startswith(prefix):
                files.append(rel_key)
        return sorted(files)


class S3Storage(StorageBackend):
    """S3/MinIO compatible storage backend."""

    def __init__(self, config: StorageConfig):
        self.config = config
        self._client = None

    def _get_client(self):
        """Get or create the boto3 S3 client."""
        if self._client is None:
            import boto3
            from botocore.config import Config as BotoConfig

            client_kwargs = {
                "service_name": "s3",
                "region_name": self.config.region or "us-east-1",
                "aws_access_key_id": self.config.access_key or None,
                "aws_secret_access_key": self.config.secret_key or None,
            }

            # For MinIO or other S3-compatible storage
            if self.config.endpoint_url:
                client_kwargs["endpoint_url"] = self.config.endpoint_url
                client_kwargs["config"] = BotoConfig(
                    signature_version="s3v4",
                    s3={"addressing_style": "path"},
                )
                if not self.config.use_ssl:
                    client_kwargs["use_ssl"] = False

            self._client = boto3.client(**client_kwargs)

        return self._client

    @staticmethod
    def _is_not_found(error) -> bool:
        code = error.response.get("Error", {}).get("Code", "")
        return code in ("404", "NoSuchKey", "NotFound")

    def upload(
        self,
        file_path: str,
        key: str,
        content_type: str = "application/octet-stream",
        cache_control: Optional[str] = None,
    ) -> StorageResult:
        """Upload a file to S3/MinIO."""
        from botocore.exceptions import BotoCoreError, ClientError

        try:
            client = self._get_client()
            file_size = os.path.getsize(file_path)
            extra = {"ContentType": content_type}
            if cache_control:
                extra["CacheControl"] = cache_control

            with open(file_path, "rb") as f:
                response = client.put_object(
                    Bucket=self.config.bucket,
                    Key=key,
                    Body=f,
                    **extra,
                )

            return StorageResult(
                success=True,
                key=key,
                url=f"s3://{self.config.bucket}/{key}",
                file_size=file_size,
                etag=response.get("ETag", "").strip('"'),
            )
        except (BotoCoreError, ClientError, OSError) as e:
            return StorageResult(success=False, key=key, url="", error_message=str(e))

    def download(self, key: str, destination: str) -> bool:
        """Download a file from S3/MinIO."""
        from botocore.exceptions import BotoCoreError, ClientError

        try:
            self._get_client().download_file(self.config.bucket, key, destination)
        except ClientError as e:
            if self._is_not_found(e):
                return False
            raise TransportError(f"Failed to download {key}: {e}", key=key) from e
        except BotoCoreError as e:
            raise TransportError(f"Failed to download {key}: {e}", key=key) from e
        return True

    def delete(self, key: str) -> bool:
        """Delete an object from S3/MinIO."""
        from botocore.exceptions import BotoCoreError, ClientError

        try:
            self._get_client().delete_object(Bucket=self.config.bucket, Key=key)
        except (BotoCoreError, ClientError) as e:
            raise TransportError(f"Failed to delete {key}: {e}", key=key) from e
        return True

    def exists(self, key: str) -> bool:
        """Check if an object exists in S3/MinIO."""
        from botocore.exceptions import BotoCoreError, ClientError

        try:
            self._get_client().head_object(Bucket=self.config.bucket, Key=key)
            return True
        except ClientError as e:
            if self._is_not_found(e):
                return False
            raise TransportError(f"Failed to check {key}: {e}", key=key) from e
        except BotoCoreError as e:
            raise TransportError(f"Failed to check {key}: {e}", key=key) from e

    def stat(self, key: str) -> ObjectStat:
        from botocore.exceptions import BotoCoreError, ClientError

        try:
            head = self._get_client().head_object(Bucket=self.config.bucket, Key=key)
        except ClientError as e:
            if self._is_not_found(e):
                raise ObjectNotFoundError(f"Object not found: {key}", key=key) from e
            raise TransportError(f"Failed to stat {key}: {e}", key=key) from e
        except BotoCoreError as e:
            raise TransportError(f"Failed to stat {key}: {e}", key=key) from e
        return ObjectStat(
            key=key,
            size=int(head["ContentLength"]),
            content_type=head.get("ContentType") or "application/octet-stream",
            etag=head.get("ETag", "").strip('"') or None,
        )

    def iter_range(
        self, key: str, start: int, end: int, chunk_size: int = DEFAULT_CHUNK_SIZE
    ) -> Iterator[bytes]:
        from botocore.exceptions import BotoCoreError, ClientError

        try:
            response = self._get_client().get_object(
                Bucket=self.config.bucket,
                Key=key,
                Range=f"bytes={start}-{end}",
            )
        except ClientError as e:
            if self._is_not_found(e):
                raise ObjectNotFoundError(f"Object not found: {key}", key=key) from e
            raise TransportError(f"Failed to read {key}: {e}", key=key) from e
        except BotoCoreError as e:
            raise TransportError(f"Failed to read {key}: {e}", key=key) from e

        body = response["Body"]
        try:
            yield from body.iter_chunks(chunk_size)
        finally:
            body.close()

    def get_url(self, key: str, expires_in: int = 3600) -> str:
        """Get a presigned GET URL."""
        from botocore.exceptions import BotoCoreError, ClientError

        try:
            return self._get_client().generate_presigned_url(
                "get_object",
                Params={"Bucket": self.config.bucket, "Key": key},
                ExpiresIn=expires_in,
            )
        except (BotoCoreError, ClientError) as e:
            raise TransportError(f"Failed to sign URL for {key}: {e}", key=key) from e

    def list_files(self, prefix: str = "") -> list[str]:
        """List keys with given prefix, following pagination."""
        from botocore.exceptions import BotoCoreError, ClientError

        try:
            paginator = self._get_client().get_paginator("list_objects_v2")
            files = []
            for page in paginator.paginate(Bucket=self.config.bucket, Prefix=prefix):
                files.extend(obj["Key"] for obj in page.get("Contents", []))
            return files
        except (BotoCoreError, ClientError) as e:
            raise TransportError(f"Failed to list {prefix!r}: {e}", key=prefix) from e


def create_backend(config: StorageConfig) -> StorageBackend:
    """Create the storage backend named by ``config.backend``."""
    backend_type = config.backend.lower()
    if backend_type == "local":
        return LocalStorage(config)
    elif backend_type in ("s3", "minio", "aws"):
        return S3Storage(config)
    raise ValueError(f"Unsupported storage backend: {backend_type}")


def storage_config_from_settings() -> StorageConfig:
    return StorageConfig(
        backend=settings.STORAGE_BACKEND,
        bucket=settings.STORAGE_BUCKET,
        region=settings.STORAGE_REGION,
        access_key=settings.STORAGE_ACCESS_KEY,
        secret_key=settings.STORAGE_SECRET_KEY,
        endpoint_url=settings.STORAGE_ENDPOINT_URL,
        use_ssl=settings.STORAGE_USE_SSL,
        local_path=settings.LOCAL_STORAGE_PATH,
    )


class ObjectStore:
    """Async object store gateway.

    Wraps a synchronous backend so that blocking I/O never runs on the event
    loop. Existence checks are never cached: callers always see the store's
    current state.
    """

    _instance: Optional["ObjectStore"] = None

    def __init__(self, backend: Optional[StorageBackend] = None):
        self.backend = backend or create_backend(storage_config_from_settings())

    @classmethod
    def get_instance(cls) -> "ObjectStore":
        """Get the process-wide store built from settings."""
        if cls._instance is None:
            cls._instance = cls()
        return cls._instance

    async def upload(
        self,
        file_path: str,
        key: str,
        content_type: str = "application/octet-stream",
        cache_control: Optional[str] = None,
    ) -> StorageResult:
        return await asyncio.to_thread(
            self.backend.upload, file_path, key, content_type, cache_control
        )

    async def download(self, key: str, destination: str) -> bool:
        return await asyncio.to_thread(self.backend.download, key, destination)

    async def delete(self, key: str) -> bool:
        return await asyncio.to_thread(self.backend.delete, key)

    async def exists(self, key: str) -> bool:
        return await asyncio.to_thread(self.backend.exists, key)

    async def stat(self, key: str) -> ObjectStat:
        return await asyncio.to_thread(self.backend.stat, key)

    async def read_range(self, key: str, start: int, end: int) -> bytes:
        return await asyncio.to_thread(self.backend.read_range, key, start, end)

    async def iter_range(
        self, key: str, start: int, end: int, chunk_size: int = DEFAULT_CHUNK_SIZE
    ) -> AsyncIterator[bytes]:
        """Stream bytes ``start..end`` (inclusive), pulling each chunk in a worker thread."""
        iterator = await asyncio.to_thread(
            lambda: iter(self.backend.iter_range(key, start, end, chunk_size))
        )
        sentinel = object()
        try:
            while True:
                chunk = await asyncio.to_thread(next, iterator, sentinel)
                if chunk is sentinel:
                    break
                yield chunk
        finally:
            close = getattr(iterator, "close", None)
            if close is not None:
                await asyncio.to_thread(close)

    async def get_url(self, key: str, expires_in: int = 3600) -> str:
        return await asyncio.to_thread(self.backend.get_url, key, expires_in)

    async def list_files(self, prefix: str = "") -> list[str]:
        return await asyncio.to_thread(self.backend.list_files, prefix)


def get_object_store() -> ObjectStore:
    """Get the default object store instance."""
    return ObjectStore.get_instance()
