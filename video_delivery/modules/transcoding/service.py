"""Transcoding coordinator.

Runs one end-to-end job per source video: claim, download once, encode each
quality, upload each rendition, clean up, release, record and announce.
"""

import asyncio
import logging
import posixpath
import shutil
import tempfile
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

from video_delivery.core.config import settings
from video_delivery.core.exceptions import EncodeError, ObjectNotFoundError, TransportError
from video_delivery.core.logging import job_context, log_error, log_info, log_warning
from video_delivery.core.metrics import (
    RENDITION_UPLOADS_TOTAL,
    TRANSCODE_ACTIVE_JOBS,
    TRANSCODE_JOBS_TOTAL,
)
from video_delivery.core.storage import ObjectStore
from video_delivery.core.tracing import PipelineStage, stage_span
from video_delivery.modules.transcoding.ffmpeg import FFmpegEncoder
from video_delivery.modules.transcoding.models import CompressionStatus, QualityCatalog
from video_delivery.modules.transcoding.naming import (
    ArtifactKey,
    base_source_id,
    derive_artifact_name,
    rendition_listing_prefix,
)
from video_delivery.modules.transcoding.notifier import StatusNotifier
from video_delivery.modules.transcoding.registry import ActiveJobRegistry

logger = logging.getLogger(__name__)

RENDITION_CONTENT_TYPE = "video/mp4"
RENDITION_CACHE_CONTROL = "public, max-age=86400"


@dataclass
class CompressionState:
    """Recorded outcome of the last job for a source."""
    status: CompressionStatus
    qualities: list[str] = field(default_factory=list)


class CompressionStateStore(ABC):
    """Where job outcomes are recorded, keyed by source object key."""

    @abstractmethod
    async def get_compression_state(self, source_id: str) -> Optional[CompressionState]:
        """Recorded state, or None when the source is unknown."""

    @abstractmethod
    async def set_compression_status(
        self, source_id: str, status: CompressionStatus, qualities: list[str]
    ) -> None:
        """Record a status and the qualities produced so far."""


@dataclass
class JobOutcome:
    """Terminal result of a job."""
    job_id: str
    source_id: str
    status: CompressionStatus
    produced: list[str] = field(default_factory=list)
    failed: dict[str, str] = field(default_factory=dict)
    error: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            "job_id": self.job_id,
            "source_id": self.source_id,
            "status": self.status.value,
            "produced": list(self.produced),
            "failed": dict(self.failed),
            "error": self.error,
        }


@dataclass
class JobHandle:
    """What a caller gets back from ``request_transcode``."""
    source_id: str
    already_running: bool
    job_id: Optional[str] = None
    task: Optional["asyncio.Task[JobOutcome]"] = field(default=None, repr=False, compare=False)

    async def wait(self) -> Optional[JobOutcome]:
        """Wait for the job this handle started. None for an already-running handle."""
        if self.task is None:
            return None
        return await self.task


class TranscodingCoordinator:
    """Single-job-per-source transcoding.

    Jobs run as background tasks on the caller's event loop; each encoder
    process runs in a worker thread, and a coordinator-wide semaphore bounds
    how many run at once across all jobs.
    """

    def __init__(
        self,
        store: ObjectStore,
        registry: ActiveJobRegistry,
        encoder: Optional[FFmpegEncoder] = None,
        notifier: Optional[StatusNotifier] = None,
        state_store: Optional[CompressionStateStore] = None,
        catalog: Optional[QualityCatalog] = None,
        scratch_dir: Optional[str] = None,
        max_concurrent_encodes: Optional[int] = None,
    ):
        self.store = store
        self.registry = registry
        self.encoder = encoder or FFmpegEncoder()
        self.notifier = notifier
        self.state_store = state_store
        self.catalog = catalog or QualityCatalog(
            settings.VIDEO_QUALITIES, settings.DEFAULT_FALLBACK_QUALITY
        )
        self.scratch_dir = scratch_dir if scratch_dir is not None else (settings.SCRATCH_DIR or None)
        self._encode_slots = asyncio.Semaphore(
            max_concurrent_encodes or settings.MAX_CONCURRENT_ENCODES
        )
        self._tasks: set[asyncio.Task] = set()

    # ------------------------------------------------------------------
    # Job entry points
    # ------------------------------------------------------------------

    async def request_transcode(self, source_id: str) -> JobHandle:
        """Start a background job for ``source_id`` unless one is already running.

        A concurrent request for the same source is not an error: it gets a
        handle with ``already_running=True``.
        """
        source_id = base_source_id(source_id)
        token = await self.registry.claim(source_id)
        if token is None:
            TRANSCODE_JOBS_TOTAL.labels(status="already_running").inc()
            log_info(logger, "Transcode already running", source_id=source_id)
            return JobHandle(source_id=source_id, already_running=True)

        job_id = uuid.uuid4().hex
        task = asyncio.create_task(
            self._run_claimed(job_id, source_id, token),
            name=f"transcode-{job_id}",
        )
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return JobHandle(source_id=source_id, already_running=False, job_id=job_id, task=task)

    async def run_job(self, source_id: str) -> Optional[JobOutcome]:
        """Claim and run a job to completion in the current task.

        Returns None when another job already holds the source.
        """
        source_id = base_source_id(source_id)
        token = await self.registry.claim(source_id)
        if token is None:
            TRANSCODE_JOBS_TOTAL.labels(status="already_running").inc()
            return None
        return await self._run_claimed(uuid.uuid4().hex, source_id, token)

    async def wait_all(self) -> None:
        """Wait for every background job started by this coordinator."""
        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def _run_claimed(self, job_id: str, source_id: str, token: str) -> JobOutcome:
        with job_context(job_id, source_id):
            TRANSCODE_ACTIVE_JOBS.inc()
            outcome = JobOutcome(job_id=job_id, source_id=source_id, status=CompressionStatus.FAILED)
            try:
                await self._record(source_id, CompressionStatus.COMPRESSING, [])
                await self._announce(source_id, CompressionStatus.PENDING, CompressionStatus.COMPRESSING, [])
                log_info(logger, "Transcode started", qualities=self.catalog.names)

                await self._transcode(outcome)
                outcome.status = (
                    CompressionStatus.COMPLETED if outcome.produced else CompressionStatus.FAILED
                )
            except TransportError as e:
                outcome.status = CompressionStatus.FAILED
                outcome.error = str(e)
                log_error(logger, "Transcode aborted by storage failure", e)
            except Exception as e:
                outcome.status = CompressionStatus.FAILED
                outcome.error = str(e)
                log_error(logger, "Transcode crashed", e)
            finally:
                await self.registry.release(source_id, token)
                TRANSCODE_ACTIVE_JOBS.dec()

            TRANSCODE_JOBS_TOTAL.labels(status=outcome.status.value).inc()
            await self._record(source_id, outcome.status, outcome.produced)
            await self._announce(
                source_id, CompressionStatus.COMPRESSING, outcome.status, outcome.produced
            )
            log_info(
                logger,
                "Transcode finished",
                status=outcome.status.value,
                produced=outcome.produced,
                failed=outcome.failed,
            )
            return outcome

    async def _transcode(self, outcome: JobOutcome) -> None:
        """Download, encode and upload. Fills ``outcome`` as it goes.

        Raises:
            TransportError: the job must be aborted; already-uploaded
                renditions have been removed
        """
        source_id = outcome.source_id
        if not await self.store.exists(source_id):
            raise ObjectNotFoundError(f"Source video not found: {source_id}", key=source_id)

        if self.scratch_dir:
            Path(self.scratch_dir).mkdir(parents=True, exist_ok=True)
        scratch = Path(tempfile.mkdtemp(prefix=f"transcode-{outcome.job_id}-", dir=self.scratch_dir))
        uploaded: list[str] = []
        try:
            _, ext = posixpath.splitext(source_id)
            local_source = scratch / f"source{ext or '.bin'}"
            with stage_span(PipelineStage.DOWNLOAD, source_id):
                if not await self.store.download(source_id, str(local_source)):
                    raise ObjectNotFoundError(f"Source video vanished: {source_id}", key=source_id)

            for profile in self.catalog.profiles:
                local_output = scratch / f"{profile.name}.mp4"
                try:
                    async with self._encode_slots:
                        with stage_span(PipelineStage.ENCODE, source_id, quality=profile.name):
                            await asyncio.to_thread(
                                self.encoder.encode, str(local_source), profile, str(local_output)
                            )
                except EncodeError as e:
                    outcome.failed[profile.name] = str(e)
                    log_warning(
                        logger,
                        "Encode failed, skipping quality",
                        quality=profile.name,
                        error=str(e),
                        stderr=e.stderr,
                    )
                    continue

                key = derive_artifact_name(source_id, profile.name)
                with stage_span(PipelineStage.UPLOAD, source_id, quality=profile.name, object_key=key):
                    result = await self.store.upload(
                        str(local_output),
                        key,
                        content_type=RENDITION_CONTENT_TYPE,
                        cache_control=RENDITION_CACHE_CONTROL,
                    )
                    if not result.success:
                        RENDITION_UPLOADS_TOTAL.labels(quality=profile.name, outcome="error").inc()
                        raise TransportError(
                            f"Upload of {key} failed: {result.error_message}", key=key
                        )
                RENDITION_UPLOADS_TOTAL.labels(quality=profile.name, outcome="success").inc()
                uploaded.append(key)
                outcome.produced.append(profile.name)
                # Free scratch space before the next, possibly larger, encode
                local_output.unlink(missing_ok=True)
        except TransportError:
            await self._remove_partial_uploads(uploaded)
            outcome.produced.clear()
            raise
        finally:
            shutil.rmtree(scratch, ignore_errors=True)

    async def _remove_partial_uploads(self, keys: list[str]) -> None:
        for key in keys:
            try:
                await self.store.delete(key)
            except TransportError as e:
                log_warning(logger, "Could not remove partial rendition", key=key, error=str(e))

    async def _record(self, source_id: str, status: CompressionStatus, qualities: list[str]) -> None:
        if self.state_store is None:
            return
        try:
            await self.state_store.set_compression_status(source_id, status, qualities)
        except Exception as e:
            log_error(logger, "Failed to record compression status", e, status=status.value)

    async def _announce(
        self,
        source_id: str,
        from_status: Optional[CompressionStatus],
        to_status: CompressionStatus,
        qualities: list[str],
    ) -> None:
        if self.notifier is not None:
            await self.notifier.notify(source_id, from_status, to_status, qualities)

    # ------------------------------------------------------------------
    # Queries and cleanup
    # ------------------------------------------------------------------

    async def job_status(self, source_id: str) -> Optional[CompressionStatus]:
        """Live status: compressing while a claim is held, otherwise the recorded status.

        A recorded ``compressing`` with no live claim is a job that died
        without reporting; it is treated as unknown.
        """
        source_id = base_source_id(source_id)
        if await self.registry.is_active(source_id):
            return CompressionStatus.COMPRESSING
        if self.state_store is None:
            return None
        state = await self.state_store.get_compression_state(source_id)
        if state is None or state.status == CompressionStatus.COMPRESSING:
            return None
        return state.status

    async def find_existing_qualities(self, source_id: str) -> list[str]:
        """Catalog qualities whose rendition exists right now, in catalog order."""
        source_id = base_source_id(source_id)
        names = self.catalog.names
        found = await asyncio.gather(
            *(self.store.exists(derive_artifact_name(source_id, name)) for name in names)
        )
        return [name for name, exists in zip(names, found) if exists]

    async def find_all_renditions(self, source_id: str) -> list[str]:
        """Every stored rendition key of ``source_id``, including legacy names
        and qualities no longer in the catalog."""
        source_id = base_source_id(source_id)
        keys = await self.store.list_files(rendition_listing_prefix(source_id))
        renditions = []
        for key in keys:
            parsed = ArtifactKey.decode(key)
            if parsed.is_rendition and parsed.base_id == source_id:
                renditions.append(key)
        return renditions

    async def delete_all_renditions(self, source_id: str) -> list[str]:
        """Delete every rendition of ``source_id``. Returns the deleted keys."""
        source_id = base_source_id(source_id)
        if await self.registry.is_active(source_id):
            log_warning(
                logger,
                "Deleting renditions while a job is running; it may upload more",
                source_id=source_id,
            )
        deleted = []
        for key in await self.find_all_renditions(source_id):
            if await self.store.delete(key):
                deleted.append(key)
        log_info(logger, "Deleted renditions", source_id=source_id, keys=deleted)
        return deleted
