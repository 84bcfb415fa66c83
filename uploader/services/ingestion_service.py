"""Ingestion service: stage, inspect, store and commit uploaded media."""

import asyncio
import logging
import shutil
from dataclasses import dataclass, replace
from pathlib import Path
from typing import Callable, Iterable, List, Optional, Set, TypeVar

from common.constants import STREAM_PIECE_SIZE_BYTES
from uploader.chunking.assembler import ChunkAssembler
from uploader.chunking.session import ChunkReceipt, SessionState
from uploader.exceptions import (
    ClientInputError,
    MetadataCommitError,
    MissingFileError,
    SecurityRejectedError,
    StagingError,
    StorageFailureError,
    UnauthorizedAccessError,
    VideoNotFoundError,
)
from uploader.repositories.caption_repository import Caption, CaptionRepository
from uploader.repositories.video_repository import STATUS_PENDING, Video, VideoRepository
from uploader.security.inspector import ContentInspector
from uploader.storage.gateway import StorageGateway
from uploader.storage.keys import ROLE_CAPTION, ROLE_THUMBNAIL, ROLE_VIDEO, asset_folder
from uploader.storage.orphans import OrphanedObjectLog
from uploader.types import DeclaredMetadata, IncomingFile, StagedFile
from uploader.utils import generate_uuid, safe_filename, utcnow

logger = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_CHUNKED_MIME_TYPE = "video/mp4"

REQUESTS_DIR_NAME = "requests"


@dataclass(frozen=True)
class ChunkUploadResult:
    """
    Outcome of one chunk request: progress, plus the committed video when
    this chunk completed the session.
    """
    receipt: ChunkReceipt
    video: Optional[Video] = None


class IngestionService:
    """
    Owns the path from raw request bytes to a committed video record.

    A video record is written only after its bytes passed inspection and
    were durably stored. Local staging for a request is removed on every
    path, and objects stored for a request that then fails are deleted.
    """

    def __init__(
        self,
        inspector: ContentInspector,
        assembler: ChunkAssembler,
        gateway: StorageGateway,
        orphan_log: OrphanedObjectLog,
        staging_dir: Path,
        allowed_video_types: Iterable[str],
        allowed_thumbnail_types: Iterable[str],
        allowed_caption_types: Iterable[str],
        embed_base_url: str,
        metadata_timeout: float = 30.0,
        video_repo=VideoRepository,
        caption_repo=CaptionRepository,
    ):
        self.inspector = inspector
        self.assembler = assembler
        self.gateway = gateway
        self.orphan_log = orphan_log
        self.staging_dir = Path(staging_dir)
        self.allowed_video_types = list(allowed_video_types)
        self.allowed_thumbnail_types = list(allowed_thumbnail_types)
        self.allowed_caption_types = list(allowed_caption_types)
        self.embed_base_url = embed_base_url.rstrip("/")
        self.metadata_timeout = metadata_timeout
        self.video_repo = video_repo
        self.caption_repo = caption_repo
        self._late_commit_tasks: Set[asyncio.Task] = set()

    @property
    def requests_dir(self) -> Path:
        return self.staging_dir / REQUESTS_DIR_NAME

    async def ingest_upload(
        self,
        owner_id: str,
        video: Optional[IncomingFile],
        thumbnail: Optional[IncomingFile] = None,
        metadata: Optional[DeclaredMetadata] = None,
    ) -> Video:
        """
        Ingest a whole-file upload.

        Args:
            owner_id: Authenticated uploader
            video: Video file part (required)
            thumbnail: Optional thumbnail file part
            metadata: Declared title, description, tags and visibility

        Returns:
            The committed Video

        Raises:
            MissingFileError: No video file was provided
            SecurityRejectedError: Video or thumbnail failed inspection
            StorageFailureError: Object upload failed or timed out
            MetadataCommitError: Record commit failed or timed out
        """
        if video is None or not video.filename:
            raise MissingFileError("No video file provided")

        metadata = metadata or DeclaredMetadata()
        request_dir = await self._create_request_dir()

        try:
            video_staged = await self._stage(video, request_dir, ROLE_VIDEO)
            thumbnail_staged = None
            if thumbnail is not None and thumbnail.filename:
                thumbnail_staged = await self._stage(thumbnail, request_dir, ROLE_THUMBNAIL)

            return await self._ingest_staged(owner_id, video_staged, thumbnail_staged, metadata)
        finally:
            await self._remove_request_dir(request_dir)

    async def receive_chunk(
        self,
        owner_id: str,
        upload_id: str,
        chunk_index: int,
        total_chunks: int,
        chunk: Optional[IncomingFile],
        metadata: Optional[DeclaredMetadata] = None,
        filename: Optional[str] = None,
        content_type: Optional[str] = None,
    ) -> ChunkUploadResult:
        """
        Store one chunk; when it completes the session, assemble and ingest the video.

        Raises:
            MissingFileError: No chunk was provided
            ClientInputError: Invalid session parameters
            UnauthorizedAccessError: Session belongs to another user
            UploadSessionClosedError: Session already left OPEN
            SecurityRejectedError, StorageFailureError, MetadataCommitError:
                From the completing chunk's ingestion
        """
        if chunk is None:
            raise MissingFileError("No chunk provided")

        try:
            receipt = await self.assembler.receive_chunk(
                upload_id=upload_id,
                chunk_index=chunk_index,
                total_chunks=total_chunks,
                owner_id=owner_id,
                source=chunk.stream,
                metadata=metadata,
                filename=filename,
                content_type=content_type,
            )
        except OSError as e:
            logger.error(f"Failed to stage chunk {chunk_index} of upload {upload_id}: {e}", exc_info=True)
            raise StagingError(f"Could not stage chunk {chunk_index} of upload {upload_id}") from e

        if not receipt.ready:
            return ChunkUploadResult(receipt=receipt)

        session = receipt.session
        logger.info(f"Upload {upload_id} complete, assembling {session.total_chunks} chunks")

        try:
            request_dir = await self._create_request_dir()
        except StagingError:
            await self.assembler.close_session(session, SessionState.FAILED)
            raise

        try:
            default_name = f"{session.declared_metadata.title}.mp4"
            destination = request_dir / f"{ROLE_VIDEO}-{safe_filename(session.filename, default=default_name)}"
            staged = await self.assembler.assemble(session, destination)
            staged = replace(
                staged,
                filename=session.filename or default_name,
                content_type=staged.content_type or DEFAULT_CHUNKED_MIME_TYPE,
            )

            video = await self._ingest_staged(session.owner_id, staged, None, session.declared_metadata)
            return ChunkUploadResult(receipt=receipt, video=video)
        finally:
            await self._remove_request_dir(request_dir)

    async def add_caption(
        self,
        owner_id: str,
        video_id: str,
        caption: Optional[IncomingFile],
        language: Optional[str],
        language_code: Optional[str],
    ) -> Caption:
        """
        Attach a caption file to a video the caller owns.

        Raises:
            MissingFileError: No caption file was provided
            ClientInputError: Language fields missing or malformed
            VideoNotFoundError: Video does not exist
            UnauthorizedAccessError: Caller does not own the video
            SecurityRejectedError, StorageFailureError, MetadataCommitError
        """
        if caption is None or not caption.filename:
            raise MissingFileError("No caption file provided")

        if not language or not language_code:
            raise ClientInputError("Language and language code are required")

        language = language.strip().lower()
        if not language.replace("-", "").replace("_", "").isalnum() or len(language) > 32:
            raise ClientInputError(f"Invalid caption language: {language}")

        video = await self._metadata_call("video lookup", self.video_repo.get_by_id, video_id)
        if video is None:
            raise VideoNotFoundError(f"Video {video_id} not found")
        if video.owner_id != owner_id:
            raise UnauthorizedAccessError(f"User {owner_id} does not own video {video_id}")

        request_dir = await self._create_request_dir()
        try:
            staged = await self._stage(caption, request_dir, ROLE_CAPTION)
            await self._inspect(staged, self.allowed_caption_types, "Caption")

            key = self.gateway.asset_key(staged, video.owner_id, video.video_id, ROLE_CAPTION, language=language)
            try:
                stored = await self.gateway.upload_asset_file(
                    staged, video.owner_id, video.video_id, ROLE_CAPTION, language=language
                )
            except StorageFailureError:
                await self._compensate([key], f"caption storage failed for video {video_id}")
                raise

            now = utcnow()
            record = Caption(
                caption_id=generate_uuid(),
                video_id=video.video_id,
                language=language,
                language_code=language_code.strip(),
                caption_url=stored.url,
                storage_key=stored.key,
                file_size=stored.size,
                created_at=now,
                updated_at=now,
            )

            await self._commit(
                self.caption_repo.create_caption,
                record,
                stored_keys=[stored.key],
                reason=f"caption commit failed for video {video_id}",
            )

            logger.info(f"Caption {record.caption_id} ({language}) added to video {video_id}")
            return record
        finally:
            await self._remove_request_dir(request_dir)

    async def _ingest_staged(
        self,
        owner_id: str,
        video_staged: StagedFile,
        thumbnail_staged: Optional[StagedFile],
        metadata: DeclaredMetadata,
    ) -> Video:
        await self._inspect(video_staged, self.allowed_video_types, "Video")
        if thumbnail_staged is not None:
            await self._inspect(thumbnail_staged, self.allowed_thumbnail_types, "Thumbnail")

        video_id = generate_uuid()
        # Keys are recorded before each upload so a failed or timed-out one is cleaned up too.
        stored_keys: List[str] = []

        try:
            stored_keys.append(self.gateway.asset_key(video_staged, owner_id, video_id, ROLE_VIDEO))
            video_object = await self.gateway.upload_asset_file(video_staged, owner_id, video_id, ROLE_VIDEO)

            thumbnail_object = None
            if thumbnail_staged is not None:
                stored_keys.append(self.gateway.asset_key(thumbnail_staged, owner_id, video_id, ROLE_THUMBNAIL))
                thumbnail_object = await self.gateway.upload_asset_file(
                    thumbnail_staged, owner_id, video_id, ROLE_THUMBNAIL
                )
        except StorageFailureError:
            logger.error(f"Storage failed for video {video_id}, removing {len(stored_keys)} attempted objects")
            await self._compensate(stored_keys, f"storage failed for video {video_id}")
            raise

        now = utcnow()
        record = Video(
            video_id=video_id,
            owner_id=owner_id,
            title=metadata.title,
            description=metadata.description,
            tags=list(metadata.tags),
            video_url=video_object.url,
            thumbnail_url=thumbnail_object.url if thumbnail_object else None,
            storage_key=video_object.key,
            thumbnail_key=thumbnail_object.key if thumbnail_object else None,
            folder_path=asset_folder(self.gateway.collection, owner_id, video_id),
            file_size=video_staged.size,
            content_type=video_staged.content_type,
            is_public=metadata.is_public,
            embedded_link=f"{self.embed_base_url}/{video_id}",
            transcoding_status=STATUS_PENDING,
            created_at=now,
            updated_at=now,
        )

        await self._commit(
            self.video_repo.create_video,
            record,
            stored_keys=stored_keys,
            reason=f"metadata commit failed for video {video_id}",
            revert=lambda: self.video_repo.delete_permanently(video_id),
        )

        logger.info(f"Video {video_id} ingested for user {owner_id} ({video_staged.size} bytes)")
        return record

    async def _inspect(self, staged: StagedFile, allowed_types: List[str], label: str) -> None:
        try:
            report = await self.inspector.inspect(
                staged.path, staged.filename, staged.content_type, allowed_mime_types=allowed_types
            )
        except OSError as e:
            logger.error(f"Could not read staged {label.lower()} {staged.path}: {e}", exc_info=True)
            raise StagingError(f"Could not read staged {label.lower()} file") from e

        for warning in report.warnings:
            logger.warning(f"{label} {staged.filename}: {warning}")

        if not report.valid:
            logger.warning(f"{label} {staged.filename} rejected: {report.errors}")
            raise SecurityRejectedError(
                f"{label} file failed security validation",
                errors=report.errors,
                warnings=report.warnings,
            )

    async def _commit(
        self,
        func: Callable[[T], T],
        record: T,
        stored_keys: List[str],
        reason: str,
        revert: Optional[Callable[[], None]] = None,
    ) -> None:
        commit = asyncio.ensure_future(asyncio.to_thread(func, record))
        try:
            await asyncio.wait_for(asyncio.shield(commit), timeout=self.metadata_timeout)
        except asyncio.TimeoutError as e:
            logger.error(f"Metadata commit timed out after {self.metadata_timeout}s: {reason}")
            if revert is not None:
                self._revert_when_done(commit, revert)
            await self._compensate(stored_keys, reason)
            raise MetadataCommitError("Metadata commit timed out") from e
        except Exception as e:
            logger.error(f"Metadata commit failed: {reason}: {e}", exc_info=True)
            await self._compensate(stored_keys, reason)
            raise MetadataCommitError("Metadata commit failed") from e

    def _revert_when_done(self, commit: asyncio.Future, revert: Callable[[], None]) -> None:
        """
        A timed-out commit keeps running in its thread; undo it if it lands.
        """
        async def _wait_and_revert():
            try:
                await commit
            except Exception:
                return
            logger.warning("Late metadata commit landed after timeout, reverting it")
            try:
                await asyncio.to_thread(revert)
            except Exception as e:
                logger.error(f"Failed to revert late metadata commit: {e}", exc_info=True)

        task = asyncio.create_task(_wait_and_revert())
        self._late_commit_tasks.add(task)
        task.add_done_callback(self._late_commit_tasks.discard)

    async def _compensate(self, keys: List[str], reason: str) -> None:
        if not keys:
            return

        failed = await self.gateway.delete_objects(keys)
        if failed:
            logger.error(f"Could not delete {len(failed)} stored objects after failure ({reason}): {failed}")
            await asyncio.to_thread(self.orphan_log.record, failed, reason)

    async def _metadata_call(self, description: str, func: Callable[..., T], *args) -> T:
        try:
            return await asyncio.wait_for(asyncio.to_thread(func, *args), timeout=self.metadata_timeout)
        except asyncio.TimeoutError as e:
            logger.error(f"Metadata {description} timed out after {self.metadata_timeout}s")
            raise MetadataCommitError(f"Metadata {description} timed out") from e
        except Exception as e:
            logger.error(f"Metadata {description} failed: {e}", exc_info=True)
            raise MetadataCommitError(f"Metadata {description} failed") from e

    async def _create_request_dir(self) -> Path:
        request_dir = self.requests_dir / generate_uuid()
        try:
            await asyncio.to_thread(request_dir.mkdir, parents=True, exist_ok=False)
        except OSError as e:
            logger.error(f"Could not create staging directory {request_dir}: {e}", exc_info=True)
            raise StagingError("Could not create staging directory") from e
        return request_dir

    async def _remove_request_dir(self, request_dir: Path) -> None:
        if not request_dir.exists():
            return
        try:
            await asyncio.to_thread(shutil.rmtree, request_dir)
        except OSError as e:
            logger.error(f"Failed to remove staging directory {request_dir}: {e}")

    async def _stage(self, incoming: IncomingFile, request_dir: Path, role: str) -> StagedFile:
        filename = incoming.filename or role
        path = request_dir / f"{role}-{safe_filename(filename)}"
        try:
            size = await asyncio.to_thread(_copy_stream, incoming.stream, path)
        except OSError as e:
            logger.error(f"Failed to stage {role} {filename}: {e}", exc_info=True)
            raise StagingError(f"Could not stage {role} file") from e

        logger.info(f"Staged {role} {filename} ({size} bytes)")
        return StagedFile(path=path, filename=filename, content_type=incoming.content_type, size=size)


def _copy_stream(source, destination: Path, piece_size: int = STREAM_PIECE_SIZE_BYTES) -> int:
    written = 0
    with open(destination, 'wb') as out:
        while True:
            piece = source.read(piece_size)
            if not piece:
                break
            out.write(piece)
            written += len(piece)
    return written
