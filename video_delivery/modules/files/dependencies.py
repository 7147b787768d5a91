"""Process-wide pipeline components, built once from settings.

Routers depend on these factories; tests replace them through
``app.dependency_overrides``.
"""

from functools import lru_cache

import httpx

from video_delivery.core.config import settings
from video_delivery.core.redis import redis_client
from video_delivery.core.storage import ObjectStore, get_object_store
from video_delivery.modules.files.repository import SQLFileMetadataStore
from video_delivery.modules.transcoding.delivery import DeliveryResolver
from video_delivery.modules.transcoding.ffmpeg import FFmpegEncoder
from video_delivery.modules.transcoding.models import QualityCatalog
from video_delivery.modules.transcoding.notifier import StatusNotifier
from video_delivery.modules.transcoding.service import TranscodingCoordinator
from video_delivery.modules.transcoding.tasks import build_registry


@lru_cache
def get_catalog() -> QualityCatalog:
    return QualityCatalog(settings.VIDEO_QUALITIES, settings.DEFAULT_FALLBACK_QUALITY)


def get_store() -> ObjectStore:
    return get_object_store()


@lru_cache
def get_notifier() -> StatusNotifier:
    return StatusNotifier(redis_client)


@lru_cache
def get_coordinator() -> TranscodingCoordinator:
    catalog = get_catalog()
    return TranscodingCoordinator(
        store=get_store(),
        registry=build_registry(catalog, redis_client),
        encoder=FFmpegEncoder(),
        notifier=get_notifier(),
        state_store=SQLFileMetadataStore(),
        catalog=catalog,
    )


@lru_cache
def get_resolver() -> DeliveryResolver:
    return DeliveryResolver(get_store(), get_catalog())


@lru_cache
def get_http_client() -> httpx.AsyncClient:
    """Shared client for proxy mode; closed on application shutdown."""
    return httpx.AsyncClient(
        timeout=httpx.Timeout(settings.PROXY_TIMEOUT_SECONDS),
        follow_redirects=True,
    )
