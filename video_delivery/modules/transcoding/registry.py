"""Active-job registry.

Holds the claim that makes a source's transcoding job exclusive. The
in-memory registry covers a single process; the Redis registry extends the
guarantee across API processes and Celery workers.
"""

import logging
import threading
import uuid
from abc import ABC, abstractmethod
from typing import Optional

import redis.asyncio as redis

logger = logging.getLogger(__name__)


class ActiveJobRegistry(ABC):
    """Claims keyed by source object key."""

    @abstractmethod
    async def claim(self, source_id: str) -> Optional[str]:
        """Atomically claim ``source_id``.

        Returns:
            An owner token, or None if another job already holds the claim
        """

    @abstractmethod
    async def release(self, source_id: str, token: str) -> bool:
        """Release a claim. Only the token's owner can release it."""

    @abstractmethod
    async def is_active(self, source_id: str) -> bool:
        """Whether a job currently holds ``source_id``."""


class InMemoryJobRegistry(ActiveJobRegistry):
    """Process-local registry guarded by a lock.

    Uses a thread lock rather than an asyncio lock so claims stay exclusive
    when jobs run from worker threads or several event loops.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._claims: dict[str, str] = {}

    async def claim(self, source_id: str) -> Optional[str]:
        with self._lock:
            if source_id in self._claims:
                return None
            token = uuid.uuid4().hex
            self._claims[source_id] = token
            return token

    async def release(self, source_id: str, token: str) -> bool:
        with self._lock:
            if self._claims.get(source_id) != token:
                return False
            del self._claims[source_id]
            return True

    async def is_active(self, source_id: str) -> bool:
        with self._lock:
            return source_id in self._claims


# Delete the key only if it still holds our token
_RELEASE_SCRIPT = """
if redis.call("get", KEYS[1]) == ARGV[1] then
    return redis.call("del", KEYS[1])
end
return 0
"""


class RedisJobRegistry(ActiveJobRegistry):
    """Cluster-wide registry using ``SET NX EX`` claims.

    The TTL bounds how long a crashed worker can block a source.
    """

    KEY_PREFIX = "transcode:active:"

    def __init__(self, client: redis.Redis, ttl_seconds: int):
        self.client = client
        self.ttl_seconds = ttl_seconds

    def _key(self, source_id: str) -> str:
        return f"{self.KEY_PREFIX}{source_id}"

    async def claim(self, source_id: str) -> Optional[str]:
        token = uuid.uuid4().hex
        acquired = await self.client.set(self._key(source_id), token, nx=True, ex=self.ttl_seconds)
        return token if acquired else None

    async def release(self, source_id: str, token: str) -> bool:
        deleted = await self.client.eval(_RELEASE_SCRIPT, 1, self._key(source_id), token)
        if not deleted:
            logger.warning(
                "Registry claim was already gone on release",
                extra={"source_id": source_id},
            )
        return bool(deleted)

    async def is_active(self, source_id: str) -> bool:
        return bool(await self.client.exists(self._key(source_id)))
