"""Redis connection configuration."""

from typing import Optional

import redis.asyncio as redis

from video_delivery.core.config import settings

redis_client: Optional[redis.Redis] = (
    redis.from_url(settings.REDIS_URL, decode_responses=True) if settings.REDIS_URL else None
)
