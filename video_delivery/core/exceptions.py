"""Error hierarchy shared by the transcoding and delivery modules.

The HTTP layer maps each family to a stable status code; the coordinator
decides from the family whether a failure costs one quality or the whole job.
"""

from typing import Optional


class VideoDeliveryError(Exception):
    """Base class for pipeline errors."""

    # Short machine-readable reason surfaced to HTTP clients
    reason: str = "internal_error"


class ValidationError(VideoDeliveryError):
    """A request that can never succeed as sent. Not retried."""

    reason = "invalid_request"


class RangeNotSatisfiableError(ValidationError):
    """Range header that doesn't fit inside the object."""

    reason = "range_not_satisfiable"

    def __init__(self, total_size: int, header: Optional[str] = None):
        self.total_size = total_size
        self.header = header
        super().__init__(f"Range {header!r} not satisfiable for {total_size} bytes")


class EncodeError(VideoDeliveryError):
    """The encoder failed for one (source, quality) pair."""

    reason = "encode_failed"

    def __init__(self, message: str, quality: str = "", stderr: str = "", returncode: Optional[int] = None):
        self.quality = quality
        self.stderr = stderr
        self.returncode = returncode
        super().__init__(message)


class TransportError(VideoDeliveryError):
    """Object store or network failure moving bytes in or out of the store."""

    reason = "storage_unavailable"

    def __init__(self, message: str, key: str = ""):
        self.key = key
        super().__init__(message)


class ObjectNotFoundError(TransportError):
    reason = "not_found"


class UpstreamProxyError(VideoDeliveryError):
    """The signed-URL upstream failed while proxying bytes."""

    reason = "upstream_failed"

    def __init__(self, message: str, status_code: Optional[int] = None):
        self.status_code = status_code
        super().__init__(message)
