"""Database models for uploaded files."""

import uuid
from datetime import datetime, timezone

from sqlalchemy import JSON, BigInteger, Column, DateTime, Enum as SQLEnum, String

from video_delivery.core.database import Base
from video_delivery.modules.transcoding.models import CompressionStatus


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class VideoFile(Base):
    """An uploaded file and the recorded state of its renditions.

    The object store is the source of truth for which renditions exist;
    ``compressed_qualities`` is what the last job reported.
    """
    __tablename__ = "video_files"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    object_key = Column(String(1024), nullable=False, unique=True, index=True)
    filename = Column(String(512), nullable=True)
    content_type = Column(String(255), nullable=False, default="application/octet-stream")
    size = Column(BigInteger, nullable=False, default=0)

    compression_status = Column(
        SQLEnum(CompressionStatus, values_callable=lambda e: [m.value for m in e]),
        nullable=True,
    )
    compressed_qualities = Column(JSON, nullable=False, default=list)

    created_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow, onupdate=_utcnow)

    @property
    def is_video(self) -> bool:
        return (self.content_type or "").startswith("video/")
