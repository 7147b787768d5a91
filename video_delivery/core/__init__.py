"""Core module for configuration and shared infrastructure."""

from video_delivery.core.config import settings
from video_delivery.core.database import Base, get_db
from video_delivery.core.redis import redis_client
from video_delivery.core.storage import ObjectStore, get_object_store

__all__ = [
    "settings",
    "Base",
    "get_db",
    "redis_client",
    "ObjectStore",
    "get_object_store",
]
