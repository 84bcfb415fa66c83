"""Pydantic schemas for video endpoints."""

from typing import List, Optional

from pydantic import BaseModel

from uploader.repositories.caption_repository import Caption
from uploader.repositories.video_repository import Video


class VideoResponse(BaseModel):
    """Response model for a video record."""
    video_id: str
    owner_id: str
    title: str
    description: Optional[str] = None
    tags: List[str]
    video_url: str
    thumbnail_url: Optional[str] = None
    storage_key: str
    folder_path: str
    file_size: int
    content_type: Optional[str] = None
    is_public: bool
    is_downloaded: bool
    view_count: int
    embedded_link: Optional[str] = None
    transcoding_status: str
    created_at: str
    updated_at: str

    @classmethod
    def from_video(cls, video: Video) -> "VideoResponse":
        return cls(
            video_id=video.video_id,
            owner_id=video.owner_id,
            title=video.title,
            description=video.description,
            tags=video.tags,
            video_url=video.video_url,
            thumbnail_url=video.thumbnail_url,
            storage_key=video.storage_key,
            folder_path=video.folder_path,
            file_size=video.file_size,
            content_type=video.content_type,
            is_public=video.is_public,
            is_downloaded=video.is_downloaded,
            view_count=video.view_count,
            embedded_link=video.embedded_link,
            transcoding_status=video.transcoding_status,
            created_at=video.created_at.isoformat(),
            updated_at=video.updated_at.isoformat(),
        )


class ListVideosResponse(BaseModel):
    """Response model for video listing."""
    videos: List[VideoResponse]


class ChunkProgressResponse(BaseModel):
    """Response model for a stored, non-final chunk."""
    upload_id: str
    chunk_index: int
    received_count: int
    total_chunks: int


class CaptionResponse(BaseModel):
    """Response model for caption upload."""
    caption_id: str
    video_id: str
    language: str
    language_code: str
    caption_url: str
    storage_key: str
    file_size: Optional[int] = None
    created_at: str

    @classmethod
    def from_caption(cls, caption: Caption) -> "CaptionResponse":
        return cls(
            caption_id=caption.caption_id,
            video_id=caption.video_id,
            language=caption.language,
            language_code=caption.language_code,
            caption_url=caption.caption_url,
            storage_key=caption.storage_key,
            file_size=caption.file_size,
            created_at=caption.created_at.isoformat(),
        )


class DownloadUrlResponse(BaseModel):
    """Response model for a signed download URL."""
    video_id: str
    download_url: str


class DeleteVideoResponse(BaseModel):
    """Response model for video deletion."""
    video_id: str
    message: str


class PermanentDeleteResponse(BaseModel):
    """Response model for permanent video deletion."""
    video_id: str
    objects_deleted: int
