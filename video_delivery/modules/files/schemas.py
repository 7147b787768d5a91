"""Pydantic schemas for the file delivery API."""

from datetime import datetime
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from video_delivery.modules.transcoding.models import CompressionStatus


class FileMetaResponse(BaseModel):
    """Stored metadata of an uploaded file."""
    model_config = ConfigDict(from_attributes=True)

    id: str
    object_key: str
    filename: Optional[str] = None
    content_type: str
    size: int
    compression_status: Optional[CompressionStatus] = None
    compressed_qualities: list[str] = Field(default_factory=list)
    created_at: datetime


class CompressionValidationResponse(BaseModel):
    """Recorded compression state checked against the object store."""
    # Wire keys are camelCase (existingQualities, ...), matching the player client
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    file_id: str
    object_key: str
    compression_status: Optional[CompressionStatus] = Field(
        None, description="Status recorded by the last job"
    )
    actual_compression_status: Optional[CompressionStatus] = Field(
        None, description="Live status: compressing while a job holds the source"
    )
    recorded_qualities: list[str] = Field(default_factory=list)
    existing_qualities: list[str] = Field(
        default_factory=list, description="Qualities whose rendition exists right now"
    )
    missing_qualities: list[str] = Field(
        default_factory=list, description="Recorded as produced but absent from the store"
    )
    available_qualities: list[str] = Field(
        default_factory=list, description="Every quality in the catalog"
    )


class TranscodeRequestResponse(BaseModel):
    """Result of asking for a transcode."""
    file_id: str
    source_id: str
    job_id: Optional[str] = None
    already_running: bool


class RenditionDeletionResponse(BaseModel):
    file_id: str
    deleted: list[str] = Field(default_factory=list)


class ProcessingResponse(BaseModel):
    """Body of a 202 while the requested quality is still being produced."""
    status: str = CompressionStatus.COMPRESSING.value
    file_id: str
    requested_quality: str
    retry_after: int
    available_qualities: list[str] = Field(default_factory=list)


class CompressionStatusEvent(BaseModel):
    """Payload pushed over the compression status WebSocket."""
    source_id: str
    from_status: Optional[CompressionStatus] = None
    status: CompressionStatus
    available_qualities: list[str] = Field(default_factory=list)
    timestamp: datetime
