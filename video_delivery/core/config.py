"""Application configuration settings.

All configuration values are loaded from environment variables (.env file).
Every value has a working default so a single-process deployment with local
storage runs without any environment at all.
"""

from typing import Optional
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Application
    PROJECT_NAME: str = "Video Delivery API"
    VERSION: str = "0.1.0"
    API_V1_PREFIX: str = "/api/v1"
    DEBUG: bool = False
    LOG_LEVEL: str = "INFO"
    LOG_JSON: bool = True

    # Database (file metadata)
    DATABASE_URL: str = "sqlite+aiosqlite:///./video_delivery.db"

    # Redis - empty disables the distributed registry and status publishing
    REDIS_URL: str = ""

    # CORS
    CORS_ORIGINS: list[str] = []

    # Storage Configuration
    # STORAGE_BACKEND: local, s3, minio
    STORAGE_BACKEND: str = "local"

    # Local Storage (when STORAGE_BACKEND=local)
    LOCAL_STORAGE_PATH: str = "./storage"

    # S3/MinIO/Compatible Storage (when STORAGE_BACKEND=s3 or minio)
    STORAGE_BUCKET: str = ""
    STORAGE_REGION: str = ""
    STORAGE_ACCESS_KEY: str = ""
    STORAGE_SECRET_KEY: str = ""
    STORAGE_ENDPOINT_URL: Optional[str] = None  # Required for MinIO
    STORAGE_USE_SSL: bool = True
    SIGNED_URL_TTL_SECONDS: int = 3600

    # Transcoding
    FFMPEG_PATH: str = "ffmpeg"
    FFMPEG_PRESET: str = "ultrafast"
    FFMPEG_THREADS: int = 2
    AUDIO_BITRATE: str = "128k"
    ENCODE_TIMEOUT_SECONDS: float = 1800.0
    MAX_CONCURRENT_ENCODES: int = 2
    SCRATCH_DIR: str = ""  # empty means the system temp dir
    VIDEO_QUALITIES: list[str] = ["720p", "480p", "360p"]
    DEFAULT_FALLBACK_QUALITY: str = "480p"
    # JOB_REGISTRY_BACKEND: memory (single process) or redis (cluster-wide)
    JOB_REGISTRY_BACKEND: str = "memory"
    # TRANSCODE_DISPATCH: inline (asyncio task in the API process) or celery
    TRANSCODE_DISPATCH: str = "inline"

    # Delivery
    # DELIVERY_MODE: direct (ranged reads through the gateway) or proxy (signed URL)
    DELIVERY_MODE: str = "direct"
    VIDEO_CACHE_TTL_SECONDS: int = 3600
    VIDEO_MAX_CHUNK_SIZE: int = 0  # 0 disables range clamping
    STREAM_CHUNK_SIZE: int = 64 * 1024
    PROXY_QUEUE_SIZE: int = 8
    PROXY_TIMEOUT_SECONDS: float = 30.0
    PROCESSING_RETRY_AFTER_SECONDS: int = 5

    # Celery
    CELERY_BROKER_URL: str = ""
    CELERY_RESULT_BACKEND: str = ""

    class Config:
        env_file = ".env"
        case_sensitive = True
        extra = "ignore"


settings = Settings()
