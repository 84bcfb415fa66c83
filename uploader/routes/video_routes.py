"""Video upload and management API routes."""

from typing import List, Optional, Union

from fastapi import APIRouter, Depends, File, Form, Query, Response, UploadFile, status

from uploader.auth import get_current_user, require_role
from uploader.exceptions import ClientInputError
from uploader.schemas.videos import (
    CaptionResponse,
    ChunkProgressResponse,
    DeleteVideoResponse,
    DownloadUrlResponse,
    ListVideosResponse,
    PermanentDeleteResponse,
    VideoResponse,
)
from uploader.service_locator import get_ingestion_service, get_video_service
from uploader.services.ingestion_service import IngestionService
from uploader.services.video_service import VideoService
from uploader.types import DeclaredMetadata, Identity, IncomingFile
from uploader.utils import parse_flag, parse_tags

router = APIRouter(prefix="/api/videos", tags=["Videos"])


def _incoming(upload: Optional[UploadFile]) -> Optional[IncomingFile]:
    if upload is None:
        return None
    return IncomingFile(filename=upload.filename, content_type=upload.content_type, stream=upload.file)


def _declared_metadata(
    title: Optional[str],
    description: Optional[str],
    tags: Optional[List[str]],
    is_public: Optional[str],
) -> DeclaredMetadata:
    title = (title or "").strip()
    return DeclaredMetadata(
        title=title or DeclaredMetadata.title,
        description=(description or "").strip() or None,
        tags=parse_tags(tags),
        is_public=parse_flag(is_public),
    )


def _parse_int(value: Optional[str], field_name: str) -> int:
    if value is None or value == "":
        raise ClientInputError(f"{field_name} is required")
    try:
        return int(value)
    except ValueError:
        raise ClientInputError(f"{field_name} must be an integer")


@router.post("/upload", response_model=VideoResponse, status_code=status.HTTP_201_CREATED)
async def upload_video(
    video: Optional[UploadFile] = File(None),
    thumbnail: Optional[UploadFile] = File(None),
    title: Optional[str] = Form(None),
    description: Optional[str] = Form(None),
    tags: Optional[List[str]] = Form(None),
    is_public: Optional[str] = Form(None, alias="isPublic"),
    current_user: Identity = Depends(get_current_user),
    ingestion_service: IngestionService = Depends(get_ingestion_service),
):
    """
    Upload a whole video file with an optional thumbnail.

    Parameters:
        - video: Video file (multipart/form-data, required)
        - thumbnail: Thumbnail image (optional)
        - title, description: Declared metadata
        - tags: Comma-separated and/or repeated tags
        - isPublic: "true" to publish (default private)
        - Authorization header: Bearer <token> (required)

    Returns:
        - The committed video record

    Raises:
        - 400: Missing file or security validation failed
        - 401: Invalid or missing token
        - 500: Storage or metadata failure
    """
    record = await ingestion_service.ingest_upload(
        owner_id=current_user.user_id,
        video=_incoming(video),
        thumbnail=_incoming(thumbnail),
        metadata=_declared_metadata(title, description, tags, is_public),
    )
    return VideoResponse.from_video(record)


@router.post("/upload-chunk", response_model=Union[VideoResponse, ChunkProgressResponse])
async def upload_chunk(
    response: Response,
    chunk: Optional[UploadFile] = File(None),
    upload_id: Optional[str] = Form(None, alias="uploadId"),
    chunk_index: Optional[str] = Form(None, alias="chunkIndex"),
    total_chunks: Optional[str] = Form(None, alias="totalChunks"),
    file_name: Optional[str] = Form(None, alias="fileName"),
    mime_type: Optional[str] = Form(None, alias="mimeType"),
    title: Optional[str] = Form(None),
    description: Optional[str] = Form(None),
    tags: Optional[List[str]] = Form(None),
    is_public: Optional[str] = Form(None, alias="isPublic"),
    current_user: Identity = Depends(get_current_user),
    ingestion_service: IngestionService = Depends(get_ingestion_service),
):
    """
    Upload one chunk of a video.

    Parameters:
        - chunk: Chunk bytes (multipart/form-data, required)
        - uploadId: Client-chosen session token
        - chunkIndex: 0-based chunk index
        - totalChunks: Number of chunks in the upload
        - fileName, mimeType: Assembled file name and type (default <title>.mp4, video/mp4)
        - title, description, tags, isPublic: Declared metadata

    Returns:
        - 200 with progress for intermediate chunks
        - 201 with the committed video record for the completing chunk

    Raises:
        - 400: Invalid fields or security validation failed
        - 403: Upload session belongs to another user
        - 409: Upload session no longer accepts chunks
        - 500: Assembly, storage or metadata failure
    """
    if not upload_id:
        raise ClientInputError("uploadId is required")

    result = await ingestion_service.receive_chunk(
        owner_id=current_user.user_id,
        upload_id=upload_id,
        chunk_index=_parse_int(chunk_index, "chunkIndex"),
        total_chunks=_parse_int(total_chunks, "totalChunks"),
        chunk=_incoming(chunk),
        metadata=_declared_metadata(title, description, tags, is_public),
        filename=file_name or None,
        content_type=mime_type or None,
    )

    if result.video is not None:
        response.status_code = status.HTTP_201_CREATED
        return VideoResponse.from_video(result.video)

    receipt = result.receipt
    return ChunkProgressResponse(
        upload_id=receipt.upload_id,
        chunk_index=receipt.chunk_index,
        received_count=receipt.received_count,
        total_chunks=receipt.total_chunks,
    )


@router.get("/public/list", response_model=ListVideosResponse)
async def list_public_videos(
    limit: int = Query(20, ge=1, le=100),
    offset: int = Query(0, ge=0),
    video_service: VideoService = Depends(get_video_service),
):
    """
    List public videos, newest first. No authentication required.
    """
    videos = await video_service.list_public(limit, offset)
    return ListVideosResponse(videos=[VideoResponse.from_video(v) for v in videos])


@router.get("/my-videos", response_model=ListVideosResponse)
async def list_my_videos(
    limit: int = Query(20, ge=1, le=100),
    offset: int = Query(0, ge=0),
    current_user: Identity = Depends(get_current_user),
    video_service: VideoService = Depends(get_video_service),
):
    """
    List the caller's videos, newest first.
    """
    videos = await video_service.list_for_owner(current_user.user_id, limit, offset)
    return ListVideosResponse(videos=[VideoResponse.from_video(v) for v in videos])


@router.post("/{video_id}/caption", response_model=CaptionResponse, status_code=status.HTTP_201_CREATED)
async def upload_caption(
    video_id: str,
    caption: Optional[UploadFile] = File(None),
    language: Optional[str] = Form(None),
    language_code: Optional[str] = Form(None, alias="languageCode"),
    current_user: Identity = Depends(get_current_user),
    ingestion_service: IngestionService = Depends(get_ingestion_service),
):
    """
    Attach a caption file to a video owned by the caller.

    Raises:
        - 400: Missing file or fields, or security validation failed
        - 403: Caller does not own the video
        - 404: Video not found
    """
    record = await ingestion_service.add_caption(
        owner_id=current_user.user_id,
        video_id=video_id,
        caption=_incoming(caption),
        language=language,
        language_code=language_code,
    )
    return CaptionResponse.from_caption(record)


@router.get("/{video_id}", response_model=VideoResponse)
async def get_video(
    video_id: str,
    current_user: Identity = Depends(get_current_user),
    video_service: VideoService = Depends(get_video_service),
):
    """
    Fetch one video with a signed URL and count the view.
    """
    video = await video_service.get_video(video_id, current_user.user_id)
    return VideoResponse.from_video(video)


@router.patch("/{video_id}/privacy", response_model=VideoResponse)
async def toggle_privacy(
    video_id: str,
    current_user: Identity = Depends(get_current_user),
    video_service: VideoService = Depends(get_video_service),
):
    video = await video_service.toggle_privacy(video_id, current_user.user_id)
    return VideoResponse.from_video(video)


@router.patch("/{video_id}/downloaded", response_model=VideoResponse)
async def mark_downloaded(
    video_id: str,
    current_user: Identity = Depends(get_current_user),
    video_service: VideoService = Depends(get_video_service),
):
    video = await video_service.mark_downloaded(video_id, current_user.user_id)
    return VideoResponse.from_video(video)


@router.get("/{video_id}/download", response_model=DownloadUrlResponse)
async def get_download_url(
    video_id: str,
    current_user: Identity = Depends(get_current_user),
    video_service: VideoService = Depends(get_video_service),
):
    """
    Signed download URL for the owner, or for anyone if the video is public.
    """
    url = await video_service.get_download_url(video_id, current_user.user_id)
    return DownloadUrlResponse(video_id=video_id, download_url=url)


@router.delete("/{video_id}", response_model=DeleteVideoResponse)
async def delete_video(
    video_id: str,
    current_user: Identity = Depends(get_current_user),
    video_service: VideoService = Depends(get_video_service),
):
    await video_service.soft_delete(video_id, current_user.user_id)
    return DeleteVideoResponse(video_id=video_id, message="Video deleted successfully")


@router.delete("/{video_id}/permanent", response_model=PermanentDeleteResponse)
async def permanently_delete_video(
    video_id: str,
    current_user: Identity = Depends(require_role("superadmin")),
    video_service: VideoService = Depends(get_video_service),
):
    """
    Remove a video's stored objects and records. Superadmin only.
    """
    deleted = await video_service.permanent_delete(video_id, current_user)
    return PermanentDeleteResponse(video_id=video_id, objects_deleted=deleted)
