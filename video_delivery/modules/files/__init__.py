"""Files module.

Stored file metadata, the video binary endpoint and compression management.
"""

from video_delivery.modules.files.router import router as files_router, ws_router as files_ws_router

__all__ = ["files_router", "files_ws_router"]
