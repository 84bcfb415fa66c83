"""Pydantic schemas for API requests and responses."""

from uploader.schemas.common import ErrorResponse, SecurityErrorResponse, UserInfoResponse
from uploader.schemas.videos import (
    CaptionResponse,
    ChunkProgressResponse,
    DeleteVideoResponse,
    DownloadUrlResponse,
    ListVideosResponse,
    PermanentDeleteResponse,
    VideoResponse,
)

__all__ = [
    "ErrorResponse",
    "SecurityErrorResponse",
    "UserInfoResponse",
    "CaptionResponse",
    "ChunkProgressResponse",
    "DeleteVideoResponse",
    "DownloadUrlResponse",
    "ListVideosResponse",
    "PermanentDeleteResponse",
    "VideoResponse",
]
