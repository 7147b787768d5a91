"""Compression status notifications.

Status changes fan out to WebSocket subscribers through small latest-wins
queues. With Redis configured, events travel over a pub/sub channel instead
so a job running on a Celery worker still reaches browsers connected to any
API process. Delivery is best-effort: the delivery resolver re-checks the
object store on every request, so a lost event only delays a UI refresh.
"""

import asyncio
import json
import logging
from collections import defaultdict
from datetime import datetime, timezone
from typing import Any, Optional

import redis.asyncio as redis

from video_delivery.modules.transcoding.models import CompressionStatus

logger = logging.getLogger(__name__)

SUBSCRIBER_QUEUE_SIZE = 8
CHANNEL_PREFIX = "compression-status:"


def _offer(q: asyncio.Queue, payload: dict[str, Any]) -> None:
    if q.full():
        try:
            q.get_nowait()
        except asyncio.QueueEmpty:
            pass
    try:
        q.put_nowait(payload)
    except asyncio.QueueFull:
        pass


def build_status_event(
    source_id: str,
    from_status: Optional[CompressionStatus],
    to_status: CompressionStatus,
    available_qualities: list[str],
) -> dict[str, Any]:
    return {
        "source_id": source_id,
        "from_status": from_status.value if from_status else None,
        "status": to_status.value,
        "available_qualities": list(available_qualities),
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }


class StatusNotifier:
    """Pub/sub hub for compression status events, keyed by source object key."""

    def __init__(self, redis_client: Optional[redis.Redis] = None) -> None:
        self.redis = redis_client
        self._lock = asyncio.Lock()
        self._subscribers: dict[str, set[asyncio.Queue[dict[str, Any]]]] = defaultdict(set)

    @staticmethod
    def channel(source_id: str) -> str:
        return f"{CHANNEL_PREFIX}{source_id}"

    async def subscribe(self, source_id: str) -> asyncio.Queue[dict[str, Any]]:
        q: asyncio.Queue[dict[str, Any]] = asyncio.Queue(maxsize=SUBSCRIBER_QUEUE_SIZE)
        async with self._lock:
            self._subscribers[source_id].add(q)
        return q

    async def unsubscribe(self, source_id: str, q: asyncio.Queue[dict[str, Any]]) -> None:
        async with self._lock:
            subs = self._subscribers.get(source_id)
            if not subs:
                return
            subs.discard(q)
            if not subs:
                self._subscribers.pop(source_id, None)

    async def subscriber_count(self, source_id: str) -> int:
        async with self._lock:
            return len(self._subscribers.get(source_id, ()))

    async def publish_local(self, source_id: str, payload: dict[str, Any]) -> None:
        """Deliver to this process's subscribers, dropping the oldest event when a queue is full."""
        async with self._lock:
            subs = list(self._subscribers.get(source_id, ()))
        for q in subs:
            _offer(q, payload)

    async def notify(
        self,
        source_id: str,
        from_status: Optional[CompressionStatus],
        to_status: CompressionStatus,
        available_qualities: list[str],
    ) -> None:
        """Announce a status transition. Never raises."""
        payload = build_status_event(source_id, from_status, to_status, available_qualities)
        if self.redis is None:
            await self.publish_local(source_id, payload)
            return
        try:
            await self.redis.publish(self.channel(source_id), json.dumps(payload))
        except redis.RedisError as e:
            logger.warning(
                "Status publish to Redis failed, delivering locally",
                extra={"source_id": source_id, "status": to_status.value, "error": str(e)},
            )
            await self.publish_local(source_id, payload)

    async def relay_from_redis(self, source_id: str, q: asyncio.Queue[dict[str, Any]]) -> None:
        """Forward a source's Redis channel into one subscriber queue until cancelled."""
        if self.redis is None:
            return
        pubsub = self.redis.pubsub()
        await pubsub.subscribe(self.channel(source_id))
        try:
            async for message in pubsub.listen():
                if message.get("type") != "message":
                    continue
                try:
                    payload = json.loads(message["data"])
                except (TypeError, ValueError):
                    logger.warning("Dropping malformed status event", extra={"source_id": source_id})
                    continue
                _offer(q, payload)
        finally:
            await pubsub.unsubscribe(self.channel(source_id))
            await pubsub.aclose()
