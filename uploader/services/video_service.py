"""Video service for metadata reads, toggles and deletions."""

import asyncio
import logging
from dataclasses import replace
from typing import Callable, List, TypeVar

from uploader.exceptions import (
    InsufficientRoleError,
    MetadataCommitError,
    StorageFailureError,
    UnauthorizedAccessError,
    VideoNotFoundError,
)
from uploader.repositories.video_repository import Video, VideoRepository
from uploader.storage.gateway import StorageGateway
from uploader.types import Identity

logger = logging.getLogger(__name__)

T = TypeVar("T")

ROLE_SUPERADMIN = "superadmin"


class VideoService:
    def __init__(self, gateway: StorageGateway, metadata_timeout: float = 30.0, video_repo=VideoRepository):
        self.gateway = gateway
        self.metadata_timeout = metadata_timeout
        self.video_repo = video_repo

    async def _db(self, description: str, func: Callable[..., T], *args) -> T:
        try:
            return await asyncio.wait_for(asyncio.to_thread(func, *args), timeout=self.metadata_timeout)
        except asyncio.TimeoutError as e:
            logger.error(f"Metadata {description} timed out after {self.metadata_timeout}s")
            raise MetadataCommitError(f"Metadata {description} timed out") from e
        except Exception as e:
            logger.error(f"Metadata {description} failed: {e}", exc_info=True)
            raise MetadataCommitError(f"Metadata {description} failed") from e

    async def _with_signed_url(self, video: Video) -> Video:
        """
        Replace the stored URL with a signed one; keep the stored URL if signing fails.
        """
        try:
            signed = await self.gateway.signed_url(video.storage_key)
        except StorageFailureError as e:
            logger.warning(f"Could not generate signed URL for video {video.video_id}: {e}")
            return video
        return replace(video, video_url=signed)

    async def _get_existing(self, video_id: str) -> Video:
        video = await self._db("video lookup", self.video_repo.get_by_id, video_id)
        if video is None:
            raise VideoNotFoundError(f"Video {video_id} not found")
        return video

    async def _get_owned(self, video_id: str, user_id: str) -> Video:
        video = await self._get_existing(video_id)
        if video.owner_id != user_id:
            raise UnauthorizedAccessError(f"User {user_id} does not own video {video_id}")
        return video

    async def list_public(self, limit: int = 20, offset: int = 0) -> List[Video]:
        videos = await self._db("public listing", self.video_repo.list_public, limit, offset)
        return list(await asyncio.gather(*(self._with_signed_url(v) for v in videos)))

    async def list_for_owner(self, owner_id: str, limit: int = 20, offset: int = 0) -> List[Video]:
        videos = await self._db("owner listing", self.video_repo.list_by_owner, owner_id, limit, offset)
        return list(await asyncio.gather(*(self._with_signed_url(v) for v in videos)))

    async def get_video(self, video_id: str, user_id: str) -> Video:
        """
        Fetch one video for viewing and count the view.

        Private videos are only visible to their owner; others get
        VideoNotFoundError so existence is not revealed.
        """
        video = await self._get_existing(video_id)
        if not video.is_public and video.owner_id != user_id:
            raise VideoNotFoundError(f"Video {video_id} not found")

        view_count = await self._db("view count update", self.video_repo.increment_view_count, video_id)
        video = replace(video, view_count=view_count)
        return await self._with_signed_url(video)

    async def toggle_privacy(self, video_id: str, user_id: str) -> Video:
        video = await self._get_owned(video_id, user_id)
        is_public = not video.is_public
        await self._db("privacy update", self.video_repo.set_public, video_id, is_public)
        logger.info(f"Video {video_id} is now {'public' if is_public else 'private'}")
        return replace(video, is_public=is_public)

    async def mark_downloaded(self, video_id: str, user_id: str) -> Video:
        video = await self._get_owned(video_id, user_id)
        await self._db("download flag update", self.video_repo.set_downloaded, video_id, True)
        return replace(video, is_downloaded=True)

    async def get_download_url(self, video_id: str, user_id: str) -> str:
        """
        Signed download URL for the owner or for any public video.

        Raises:
            UnauthorizedAccessError: Private video of another user
            StorageFailureError: Signing failed
        """
        video = await self._get_existing(video_id)
        if video.owner_id != user_id and not video.is_public:
            raise UnauthorizedAccessError(f"User {user_id} may not download video {video_id}")
        return await self.gateway.signed_url(video.storage_key)

    async def soft_delete(self, video_id: str, user_id: str) -> None:
        await self._get_owned(video_id, user_id)
        await self._db("soft delete", self.video_repo.soft_delete, video_id)

    async def permanent_delete(self, video_id: str, identity: Identity) -> int:
        """
        Remove a video's stored objects and its records. Superadmin only.

        Returns:
            Number of stored objects deleted
        """
        if identity.role != ROLE_SUPERADMIN:
            raise InsufficientRoleError("Only superadmin can permanently delete videos")

        video = await self._db("video lookup", self.video_repo.get_by_id, video_id, True)
        if video is None:
            raise VideoNotFoundError(f"Video {video_id} not found")

        deleted = await self.gateway.delete_asset_folder(video.owner_id, video.video_id)
        await self._db("permanent delete", self.video_repo.delete_permanently, video_id)
        logger.info(f"Video {video_id} permanently deleted by {identity.user_id} ({deleted} objects)")
        return deleted
