"""Celery tasks for transcoding.

Lets a dedicated worker pool run jobs instead of the API process. The Redis
registry keeps the one-job-per-source guarantee across workers.
"""

import asyncio
import logging
import math
from typing import Any, Optional

from celery import Task

from video_delivery.core.celery_app import celery_app
from video_delivery.core.config import settings
from video_delivery.core.exceptions import TransportError
from video_delivery.core.storage import get_object_store
from video_delivery.modules.transcoding.models import CompressionStatus, QualityCatalog
from video_delivery.modules.transcoding.notifier import StatusNotifier
from video_delivery.modules.transcoding.registry import (
    ActiveJobRegistry,
    InMemoryJobRegistry,
    RedisJobRegistry,
)
from video_delivery.modules.transcoding.service import CompressionStateStore, TranscodingCoordinator

logger = logging.getLogger(__name__)


class RetryConfig:
    """Configuration for retry behavior with exponential backoff."""

    def __init__(
        self,
        max_attempts: int = 3,
        initial_delay: float = 1.0,
        max_delay: float = 300.0,
        backoff_multiplier: float = 2.0,
    ):
        self.max_attempts = max_attempts
        self.initial_delay = initial_delay
        self.max_delay = max_delay
        self.backoff_multiplier = backoff_multiplier

    def calculate_delay(self, attempt: int) -> float:
        """Delay before retry ``attempt`` (1-indexed), capped at max_delay."""
        if attempt < 1:
            return self.initial_delay
        delay = self.initial_delay * math.pow(self.backoff_multiplier, attempt - 1)
        return min(delay, self.max_delay)


# Only storage failures are retried; encoder failures are per quality and final
TRANSCODE_RETRY_CONFIG = RetryConfig(
    max_attempts=3,
    initial_delay=10.0,
    max_delay=120.0,
    backoff_multiplier=2.0,
)


def registry_ttl_seconds(catalog: QualityCatalog) -> int:
    """Claim TTL long enough for every encode of one job plus a margin."""
    return int(settings.ENCODE_TIMEOUT_SECONDS * len(catalog.names)) + 600


def build_registry(catalog: QualityCatalog, redis_client=None) -> ActiveJobRegistry:
    """Registry named by JOB_REGISTRY_BACKEND.

    Celery dispatch runs jobs in other processes, so it needs the Redis
    registry: a process-local claim is invisible to the API and to other
    workers.
    """
    if settings.TRANSCODE_DISPATCH == "celery" and settings.JOB_REGISTRY_BACKEND != "redis":
        raise RuntimeError("TRANSCODE_DISPATCH=celery requires JOB_REGISTRY_BACKEND=redis")
    if settings.JOB_REGISTRY_BACKEND == "redis":
        if redis_client is None:
            raise RuntimeError("JOB_REGISTRY_BACKEND=redis requires REDIS_URL")
        return RedisJobRegistry(redis_client, ttl_seconds=registry_ttl_seconds(catalog))
    return InMemoryJobRegistry()


class TranscodeTask(Task):
    """Base task with exponential backoff for storage failures."""

    abstract = True
    retry_config: RetryConfig = TRANSCODE_RETRY_CONFIG

    def retry_with_backoff(self, exc: Exception) -> None:
        attempt = self.request.retries + 1
        if attempt >= self.retry_config.max_attempts:
            raise exc
        raise self.retry(exc=exc, countdown=self.retry_config.calculate_delay(attempt))


async def _run_transcode(
    source_id: str,
    state_store: Optional[CompressionStateStore] = None,
) -> dict[str, Any]:
    import redis.asyncio as redis

    from video_delivery.core.database import engine
    from video_delivery.modules.files.repository import SQLFileMetadataStore

    catalog = QualityCatalog(settings.VIDEO_QUALITIES, settings.DEFAULT_FALLBACK_QUALITY)
    # A fresh client per task: each task runs on its own event loop
    redis_client = redis.from_url(settings.REDIS_URL, decode_responses=True) if settings.REDIS_URL else None
    try:
        coordinator = TranscodingCoordinator(
            store=get_object_store(),
            registry=build_registry(catalog, redis_client),
            notifier=StatusNotifier(redis_client),
            state_store=state_store or SQLFileMetadataStore(),
            catalog=catalog,
        )
        outcome = await coordinator.run_job(source_id)
    finally:
        if redis_client is not None:
            await redis_client.aclose()
        # Pooled connections are bound to this task's event loop
        await engine.dispose()

    if outcome is None:
        return {"source_id": source_id, "already_running": True}
    if outcome.status == CompressionStatus.FAILED and outcome.error and not outcome.failed:
        # Aborted before any encode ran: treat as a storage problem worth retrying
        raise TransportError(outcome.error, key=source_id)
    return outcome.to_dict()


@celery_app.task(bind=True, base=TranscodeTask, name="transcoding.transcode_source")
def transcode_source_task(self: TranscodeTask, source_id: str) -> dict:
    """Transcode every catalog quality of one source video.

    Args:
        source_id: Object key of the source video

    Returns:
        dict: Job outcome
    """
    try:
        return asyncio.run(_run_transcode(source_id))
    except TransportError as exc:
        logger.warning(
            "Transcode task hit a storage failure",
            extra={"source_id": source_id, "attempt": self.request.retries + 1, "error": str(exc)},
        )
        self.retry_with_backoff(exc)
        raise
