"""Tests for IngestionService: whole-file, chunked and caption ingestion."""

import asyncio
import io
import shutil
import sqlite3
import time

import pytest

from conftest import CAPTION_TYPES, JPEG_BYTES, MP4_BYTES, THUMBNAIL_TYPES, VIDEO_TYPES, VTT_BYTES
from uploader.exceptions import (
    ClientInputError,
    MetadataCommitError,
    MissingFileError,
    SecurityRejectedError,
    StorageFailureError,
    UnauthorizedAccessError,
    UploadSessionClosedError,
    VideoNotFoundError,
)
from uploader.repositories.caption_repository import CaptionRepository
from uploader.repositories.video_repository import VideoRepository
from uploader.services.ingestion_service import IngestionService
from uploader.storage.gateway import StorageGateway
from uploader.types import DeclaredMetadata, IncomingFile


def incoming(filename, content_type, data):
    return IncomingFile(filename=filename, content_type=content_type, stream=io.BytesIO(data))


def stored_files(local_store):
    if not local_store.root.exists():
        return []
    return sorted(str(p.relative_to(local_store.root)) for p in local_store.root.rglob("*") if p.is_file())


def request_dirs(service):
    if not service.requests_dir.exists():
        return []
    return list(service.requests_dir.iterdir())


def build_service(inspector, assembler, gateway, orphan_log, staging_dir, **kwargs):
    return IngestionService(
        inspector=inspector,
        assembler=assembler,
        gateway=gateway,
        orphan_log=orphan_log,
        staging_dir=staging_dir,
        allowed_video_types=VIDEO_TYPES,
        allowed_thumbnail_types=THUMBNAIL_TYPES,
        allowed_caption_types=CAPTION_TYPES,
        embed_base_url="http://testserver/embed",
        **kwargs,
    )


class FailingVideoRepository(VideoRepository):
    @staticmethod
    def create_video(video, conn=None):
        raise sqlite3.OperationalError("database is locked")


class BrokenLookupVideoRepository(VideoRepository):
    @staticmethod
    def get_by_id(video_id, include_deleted=False):
        raise sqlite3.DatabaseError("database disk image is malformed")


class SlowVideoRepository(VideoRepository):
    reverted = []

    @staticmethod
    def create_video(video, conn=None):
        time.sleep(0.3)
        return VideoRepository.create_video(video)

    @staticmethod
    def delete_permanently(video_id):
        SlowVideoRepository.reverted.append(video_id)
        VideoRepository.delete_permanently(video_id)


@pytest.mark.asyncio
async def test_ingest_upload_success(ingestion_service, local_store):
    """Test a clean upload is stored and committed with its thumbnail."""
    metadata = DeclaredMetadata(title="My Clip", description="desc", tags=["a", "b"], is_public=True)

    video = await ingestion_service.ingest_upload(
        "user1",
        incoming("clip.mp4", "video/mp4", MP4_BYTES),
        thumbnail=incoming("thumb.jpg", "image/jpeg", JPEG_BYTES),
        metadata=metadata,
    )

    assert video.owner_id == "user1"
    assert video.title == "My Clip"
    assert video.tags == ["a", "b"]
    assert video.is_public is True
    assert video.file_size == len(MP4_BYTES)
    assert video.transcoding_status == "pending"
    assert video.storage_key == f"videos/user1/{video.video_id}/video/clip.mp4"
    assert video.thumbnail_key == f"videos/user1/{video.video_id}/thumbnail/thumb.jpg"
    assert video.folder_path == f"videos/user1/{video.video_id}/"
    assert video.embedded_link == f"http://testserver/embed/{video.video_id}"

    saved = VideoRepository.get_by_id(video.video_id)
    assert saved is not None
    assert saved.tags == ["a", "b"]

    assert local_store.resolve_path(video.storage_key).read_bytes() == MP4_BYTES
    assert local_store.resolve_path(video.thumbnail_key).read_bytes() == JPEG_BYTES
    assert request_dirs(ingestion_service) == []


@pytest.mark.asyncio
async def test_ingest_upload_defaults_private_untitled(ingestion_service):
    """Test undeclared metadata defaults to a private, untitled video."""
    video = await ingestion_service.ingest_upload("user1", incoming("clip.mp4", "video/mp4", MP4_BYTES))

    assert video.title == "Untitled"
    assert video.is_public is False
    assert video.thumbnail_url is None


@pytest.mark.asyncio
async def test_missing_video_rejected(ingestion_service):
    """Test an absent video part raises before anything is staged."""
    with pytest.raises(MissingFileError):
        await ingestion_service.ingest_upload("user1", None)

    with pytest.raises(MissingFileError):
        await ingestion_service.ingest_upload("user1", incoming("", "video/mp4", MP4_BYTES))

    assert request_dirs(ingestion_service) == []


@pytest.mark.asyncio
async def test_rejected_video_leaves_nothing(ingestion_service, local_store):
    """Test a video failing inspection is neither stored nor recorded."""
    with pytest.raises(SecurityRejectedError) as exc_info:
        await ingestion_service.ingest_upload("user1", incoming("evil.mp4", "video/mp4", b"MZ" + b"\x00" * 100))

    assert exc_info.value.errors
    assert "Video file failed security validation" in str(exc_info.value)
    assert stored_files(local_store) == []
    assert VideoRepository.list_by_owner("user1") == []
    assert request_dirs(ingestion_service) == []


@pytest.mark.asyncio
async def test_rejected_thumbnail_discards_video(ingestion_service, local_store):
    """Test a bad thumbnail rejects the whole upload, including the staged video."""
    with pytest.raises(SecurityRejectedError) as exc_info:
        await ingestion_service.ingest_upload(
            "user1",
            incoming("clip.mp4", "video/mp4", MP4_BYTES),
            thumbnail=incoming("thumb.gif", "image/gif", b"GIF89a" + b"\x00" * 50),
        )

    assert "Thumbnail file failed security validation" in str(exc_info.value)
    assert stored_files(local_store) == []
    assert VideoRepository.list_by_owner("user1") == []
    assert request_dirs(ingestion_service) == []


@pytest.mark.asyncio
async def test_storage_failure_removes_uploaded_objects(ingestion_service, local_store, monkeypatch):
    """Test a failed thumbnail upload deletes the already-stored video and commits nothing."""
    original_upload = local_store.upload_file

    def flaky_upload(local_path, key, content_type):
        if "/thumbnail/" in key:
            raise OSError("disk full")
        return original_upload(local_path, key, content_type)

    monkeypatch.setattr(local_store, "upload_file", flaky_upload)

    with pytest.raises(StorageFailureError):
        await ingestion_service.ingest_upload(
            "user1",
            incoming("clip.mp4", "video/mp4", MP4_BYTES),
            thumbnail=incoming("thumb.jpg", "image/jpeg", JPEG_BYTES),
        )

    assert stored_files(local_store) == []
    assert VideoRepository.list_by_owner("user1") == []
    assert request_dirs(ingestion_service) == []


@pytest.mark.asyncio
async def test_storage_timeout_removes_late_upload(
    inspector, assembler, local_store, orphan_log, staging_dir, test_db, monkeypatch, tmp_path
):
    """Test an upload that finishes after its timeout does not leave an object behind."""
    gateway = StorageGateway(local_store, collection="videos", timeout=0.1, retry_delay=0, orphan_log=orphan_log)
    service = build_service(inspector, assembler, gateway, orphan_log, staging_dir)
    original_upload = local_store.upload_file

    def slow_upload(local_path, key, content_type):
        held = tmp_path / f"held-{len(list(tmp_path.iterdir()))}"
        shutil.copyfile(local_path, held)
        time.sleep(0.4)
        return original_upload(held, key, content_type)

    monkeypatch.setattr(local_store, "upload_file", slow_upload)

    with pytest.raises(StorageFailureError, match="timed out"):
        await service.ingest_upload("user1", incoming("clip.mp4", "video/mp4", MP4_BYTES))

    await gateway.drain()

    assert stored_files(local_store) == []
    assert orphan_log.load() == []
    assert VideoRepository.list_by_owner("user1") == []


@pytest.mark.asyncio
async def test_undeletable_late_upload_is_recorded(
    inspector, assembler, local_store, orphan_log, staging_dir, test_db, monkeypatch, tmp_path
):
    """Test a timed-out upload that cannot be removed ends up in the orphan log."""
    gateway = StorageGateway(local_store, collection="videos", timeout=0.1, retry_delay=0, orphan_log=orphan_log)
    service = build_service(inspector, assembler, gateway, orphan_log, staging_dir)
    original_upload = local_store.upload_file

    def slow_upload(local_path, key, content_type):
        held = tmp_path / f"held-{len(list(tmp_path.iterdir()))}"
        shutil.copyfile(local_path, held)
        time.sleep(0.4)
        return original_upload(held, key, content_type)

    def broken_delete(key):
        raise OSError("store unavailable")

    monkeypatch.setattr(local_store, "upload_file", slow_upload)
    monkeypatch.setattr(local_store, "delete_object", broken_delete)

    with pytest.raises(StorageFailureError):
        await service.ingest_upload("user1", incoming("clip.mp4", "video/mp4", MP4_BYTES))

    await gateway.drain()

    keys = [entry["key"] for entry in orphan_log.load()]
    assert len(keys) == 1
    assert keys[0].startswith("videos/user1/")
    assert keys[0].endswith("/video/clip.mp4")
    assert stored_files(local_store) == [keys[0]]


@pytest.mark.asyncio
async def test_metadata_failure_compensates(inspector, assembler, gateway, orphan_log, staging_dir, local_store, test_db):
    """Test a failed commit deletes the stored objects."""
    service = build_service(inspector, assembler, gateway, orphan_log, staging_dir, video_repo=FailingVideoRepository)

    with pytest.raises(MetadataCommitError, match="Metadata commit failed"):
        await service.ingest_upload("user1", incoming("clip.mp4", "video/mp4", MP4_BYTES))

    assert stored_files(local_store) == []
    assert orphan_log.load() == []
    assert request_dirs(service) == []


@pytest.mark.asyncio
async def test_failed_compensation_records_orphans(
    inspector, assembler, gateway, orphan_log, staging_dir, local_store, test_db, monkeypatch
):
    """Test objects that cannot be deleted after a failure are logged for cleanup."""
    service = build_service(inspector, assembler, gateway, orphan_log, staging_dir, video_repo=FailingVideoRepository)

    def broken_delete(key):
        raise OSError("store unavailable")

    monkeypatch.setattr(local_store, "delete_object", broken_delete)

    with pytest.raises(MetadataCommitError):
        await service.ingest_upload("user1", incoming("clip.mp4", "video/mp4", MP4_BYTES))

    entries = orphan_log.load()
    assert len(entries) == 1
    assert entries[0]["key"].endswith("/video/clip.mp4")
    assert "metadata commit failed" in entries[0]["reason"]


@pytest.mark.asyncio
async def test_metadata_timeout_reverts_late_commit(inspector, assembler, gateway, orphan_log, staging_dir, local_store, test_db):
    """Test a commit landing after the timeout is undone."""
    SlowVideoRepository.reverted = []
    service = build_service(
        inspector, assembler, gateway, orphan_log, staging_dir,
        metadata_timeout=0.05,
        video_repo=SlowVideoRepository,
    )

    with pytest.raises(MetadataCommitError, match="timed out"):
        await service.ingest_upload("user1", incoming("clip.mp4", "video/mp4", MP4_BYTES))

    assert stored_files(local_store) == []

    await asyncio.sleep(0.6)

    assert len(SlowVideoRepository.reverted) == 1
    assert VideoRepository.list_by_owner("user1") == []


@pytest.mark.asyncio
async def test_chunked_upload_end_to_end(ingestion_service, local_store):
    """Test chunks arriving out of order produce one committed video."""
    pieces = [MP4_BYTES[:300], MP4_BYTES[300:700], MP4_BYTES[700:]]
    metadata = DeclaredMetadata(title="Chunked", tags=["c"])

    results = []
    for index in (1, 2, 0):
        results.append(await ingestion_service.receive_chunk(
            "user1", "upload-1", index, 3, incoming("blob", "application/octet-stream", pieces[index]), metadata,
        ))

    assert [r.video is None for r in results] == [True, True, False]
    assert results[1].receipt.received_count == 2

    video = results[2].video
    assert video.title == "Chunked"
    assert video.content_type == "video/mp4"
    assert video.storage_key.endswith("/video/Chunked.mp4")
    assert local_store.resolve_path(video.storage_key).read_bytes() == MP4_BYTES
    assert VideoRepository.get_by_id(video.video_id) is not None
    assert request_dirs(ingestion_service) == []
    assert not ingestion_service.assembler.storage.get_session_dir("upload-1").exists()

    with pytest.raises(UploadSessionClosedError):
        await ingestion_service.receive_chunk(
            "user1", "upload-1", 0, 3, incoming("blob", None, pieces[0]), metadata,
        )


@pytest.mark.asyncio
async def test_concurrent_completing_chunks_commit_once(ingestion_service, local_store):
    """Test racing final chunks produce a single video record and stored object."""
    pieces = [MP4_BYTES[:300], MP4_BYTES[300:700], MP4_BYTES[700:]]
    await ingestion_service.receive_chunk("user1", "race", 0, 3, incoming("blob", None, pieces[0]))

    results = await asyncio.gather(
        ingestion_service.receive_chunk("user1", "race", 1, 3, incoming("blob", None, pieces[1])),
        ingestion_service.receive_chunk("user1", "race", 2, 3, incoming("blob", None, pieces[2])),
        ingestion_service.receive_chunk("user1", "race", 2, 3, incoming("blob", None, pieces[2])),
        return_exceptions=True,
    )

    completed = [r for r in results if not isinstance(r, Exception) and r.video is not None]
    others = [r for r in results if isinstance(r, Exception) or r.video is None]
    assert len(completed) == 1
    for outcome in others:
        assert isinstance(outcome, UploadSessionClosedError) or outcome.receipt.ready is False

    videos = VideoRepository.list_by_owner("user1")
    assert [v.video_id for v in videos] == [completed[0].video.video_id]
    assert stored_files(local_store) == [completed[0].video.storage_key]
    assert local_store.resolve_path(completed[0].video.storage_key).read_bytes() == MP4_BYTES


@pytest.mark.asyncio
async def test_chunked_upload_declared_name_and_type(ingestion_service):
    """Test the declared filename and MIME type are used for the assembled file."""
    result = await ingestion_service.receive_chunk(
        "user1", "upload-2", 0, 1, incoming("blob", None, MP4_BYTES),
        filename="holiday.webm", content_type="video/webm",
    )

    assert result.video.content_type == "video/webm"
    assert result.video.storage_key.endswith("/video/holiday.webm")


@pytest.mark.asyncio
async def test_chunked_upload_rejected_after_assembly(ingestion_service, local_store):
    """Test an assembled file failing inspection is discarded."""
    with pytest.raises(SecurityRejectedError):
        await ingestion_service.receive_chunk(
            "user1", "upload-3", 0, 1, incoming("blob", None, b"\x7fELF" + b"\x00" * 64),
        )

    assert stored_files(local_store) == []
    assert request_dirs(ingestion_service) == []
    assert not ingestion_service.assembler.storage.get_session_dir("upload-3").exists()


@pytest.mark.asyncio
async def test_missing_chunk_rejected(ingestion_service):
    """Test a chunk request without a body is rejected."""
    with pytest.raises(MissingFileError):
        await ingestion_service.receive_chunk("user1", "upload-4", 0, 1, None)


@pytest.mark.asyncio
async def test_add_caption(ingestion_service, local_store):
    """Test the owner can attach a caption file."""
    video = await ingestion_service.ingest_upload("user1", incoming("clip.mp4", "video/mp4", MP4_BYTES))

    caption = await ingestion_service.add_caption(
        "user1", video.video_id, incoming("en.vtt", "text/vtt", VTT_BYTES), "EN", "en-US",
    )

    assert caption.language == "en"
    assert caption.language_code == "en-US"
    assert caption.storage_key == f"videos/user1/{video.video_id}/caption/en/en.vtt"
    assert local_store.resolve_path(caption.storage_key).read_bytes() == VTT_BYTES
    assert [c.caption_id for c in CaptionRepository.list_by_video(video.video_id)] == [caption.caption_id]


@pytest.mark.asyncio
async def test_add_caption_requires_owner(ingestion_service, local_store):
    """Test only the owner may attach captions."""
    video = await ingestion_service.ingest_upload("user1", incoming("clip.mp4", "video/mp4", MP4_BYTES))
    before = stored_files(local_store)

    with pytest.raises(UnauthorizedAccessError):
        await ingestion_service.add_caption(
            "user2", video.video_id, incoming("en.vtt", "text/vtt", VTT_BYTES), "en", "en-US",
        )

    assert stored_files(local_store) == before


@pytest.mark.asyncio
async def test_add_caption_validation(ingestion_service):
    """Test caption requests with missing parts or unknown videos are rejected."""
    with pytest.raises(MissingFileError):
        await ingestion_service.add_caption("user1", "video-1", None, "en", "en-US")

    with pytest.raises(ClientInputError, match="required"):
        await ingestion_service.add_caption("user1", "video-1", incoming("en.vtt", "text/vtt", VTT_BYTES), "", "en")

    with pytest.raises(ClientInputError, match="Invalid caption language"):
        await ingestion_service.add_caption(
            "user1", "video-1", incoming("en.vtt", "text/vtt", VTT_BYTES), "../en", "en",
        )

    with pytest.raises(VideoNotFoundError):
        await ingestion_service.add_caption(
            "user1", "missing", incoming("en.vtt", "text/vtt", VTT_BYTES), "en", "en-US",
        )


@pytest.mark.asyncio
async def test_add_caption_lookup_failure(inspector, assembler, gateway, orphan_log, staging_dir, test_db):
    """Test a database error during the video lookup surfaces as MetadataCommitError."""
    service = build_service(
        inspector, assembler, gateway, orphan_log, staging_dir, video_repo=BrokenLookupVideoRepository
    )

    with pytest.raises(MetadataCommitError, match="video lookup failed"):
        await service.add_caption("user1", "v1", incoming("en.vtt", "text/vtt", VTT_BYTES), "en", "en-US")


@pytest.mark.asyncio
async def test_add_caption_rejects_wrong_type(ingestion_service, local_store):
    """Test caption files are inspected against the caption allow-list."""
    video = await ingestion_service.ingest_upload("user1", incoming("clip.mp4", "video/mp4", MP4_BYTES))
    before = stored_files(local_store)

    with pytest.raises(SecurityRejectedError, match="Caption file"):
        await ingestion_service.add_caption(
            "user1", video.video_id, incoming("en.mp4", "video/mp4", MP4_BYTES), "en", "en-US",
        )

    assert stored_files(local_store) == before
