"""Repository layer for data access."""

from uploader.repositories.caption_repository import Caption, CaptionRepository
from uploader.repositories.video_repository import Video, VideoRepository

__all__ = [
    "Video",
    "VideoRepository",
    "Caption",
    "CaptionRepository",
]
