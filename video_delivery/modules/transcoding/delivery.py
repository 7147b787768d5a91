"""Delivery resolution: which object answers a request for a given quality.

Exact rendition first. While the source's job is running, a missing
rendition defers instead of falling back, so a player does not settle on a
lower quality that is about to be replaced. Otherwise the default quality,
then the other catalog qualities, then the original upload.
"""

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Optional

from video_delivery.core.metrics import DELIVERY_DECISIONS_TOTAL
from video_delivery.core.storage import ObjectStore
from video_delivery.core.tracing import PipelineStage, stage_span
from video_delivery.modules.transcoding.models import CompressionStatus, QualityCatalog
from video_delivery.modules.transcoding.naming import base_source_id, derive_artifact_name

logger = logging.getLogger(__name__)

PROCESSING_REASON = "processing"


class DecisionKind(str, Enum):
    SERVE_EXACT = "exact"
    SERVE_FALLBACK = "fallback"
    SERVE_ORIGINAL = "original"
    DEFER = "defer"


@dataclass(frozen=True)
class DeliveryDecision:
    """Outcome of resolving one request."""
    kind: DecisionKind
    object_key: Optional[str] = None
    quality: Optional[str] = None
    reason: Optional[str] = None

    @property
    def is_deferred(self) -> bool:
        return self.kind == DecisionKind.DEFER

    @classmethod
    def serve_exact(cls, object_key: str, quality: str) -> "DeliveryDecision":
        return cls(DecisionKind.SERVE_EXACT, object_key=object_key, quality=quality)

    @classmethod
    def serve_fallback(cls, object_key: str, quality: str) -> "DeliveryDecision":
        return cls(DecisionKind.SERVE_FALLBACK, object_key=object_key, quality=quality)

    @classmethod
    def serve_original(cls, object_key: str) -> "DeliveryDecision":
        return cls(DecisionKind.SERVE_ORIGINAL, object_key=object_key)

    @classmethod
    def defer(cls, reason: str = PROCESSING_REASON) -> "DeliveryDecision":
        return cls(DecisionKind.DEFER, reason=reason)


class DeliveryResolver:
    """Chooses what to serve for ``(source, requested quality, job status)``.

    Every existence check goes to the object store at decision time.
    """

    def __init__(self, store: ObjectStore, catalog: QualityCatalog):
        self.store = store
        self.catalog = catalog

    async def _rendition_exists(self, source_id: str, quality: str) -> Optional[str]:
        key = derive_artifact_name(source_id, quality)
        return key if await self.store.exists(key) else None

    async def resolve(
        self,
        source_id: str,
        requested_quality: Optional[str],
        job_status: Optional[CompressionStatus],
    ) -> DeliveryDecision:
        """Resolve a request.

        Args:
            source_id: Source object key (a rendition key is normalized to its source)
            requested_quality: Quality asked for; None means the default quality
            job_status: Live job status, None when unknown

        Returns:
            The decision
        """
        source_id = base_source_id(source_id)
        quality = requested_quality or self.catalog.default

        with stage_span(PipelineStage.RESOLVE, source_id, quality=quality):
            decision = await self._resolve(source_id, quality, job_status)

        DELIVERY_DECISIONS_TOTAL.labels(decision=decision.kind.value).inc()
        logger.debug(
            "Delivery resolved",
            extra={
                "source_id": source_id,
                "requested_quality": quality,
                "job_status": job_status.value if job_status else None,
                "decision": decision.kind.value,
                "object_key": decision.object_key,
            },
        )
        return decision

    async def _resolve(
        self, source_id: str, quality: str, job_status: Optional[CompressionStatus]
    ) -> DeliveryDecision:
        # Qualities outside the catalog have no rendition by definition
        if quality in self.catalog:
            key = await self._rendition_exists(source_id, quality)
            if key:
                return DeliveryDecision.serve_exact(key, quality)

        if job_status == CompressionStatus.COMPRESSING:
            return DeliveryDecision.defer(PROCESSING_REASON)

        for candidate in self.catalog.fallback_order():
            if candidate == quality:
                continue
            key = await self._rendition_exists(source_id, candidate)
            if key:
                return DeliveryDecision.serve_fallback(key, candidate)

        return DeliveryDecision.serve_original(source_id)
