"""Celery application configuration."""

from celery import Celery

from video_delivery.core.config import settings

celery_app = Celery(
    "video_delivery",
    broker=settings.CELERY_BROKER_URL or settings.REDIS_URL or "memory://",
    backend=settings.CELERY_RESULT_BACKEND or settings.REDIS_URL or "cache+memory://",
)

celery_app.conf.update(
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone="UTC",
    enable_utc=True,
    task_track_started=True,
    # One job encodes every quality sequentially
    task_time_limit=int(settings.ENCODE_TIMEOUT_SECONDS * len(settings.VIDEO_QUALITIES)) + 600,
    worker_prefetch_multiplier=1,
    task_acks_late=True,
    task_reject_on_worker_lost=True,
)

celery_app.autodiscover_tasks(["video_delivery.modules.transcoding"])
