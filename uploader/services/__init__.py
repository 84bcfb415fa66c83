"""Service layer for business logic."""

from uploader.services.ingestion_service import ChunkUploadResult, IngestionService
from uploader.services.video_service import VideoService

__all__ = [
    "ChunkUploadResult",
    "IngestionService",
    "VideoService",
]
