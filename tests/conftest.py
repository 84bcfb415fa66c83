"""Shared pytest fixtures for all tests."""

from pathlib import Path

import pytest

from uploader.chunking.assembler import ChunkAssembler
from uploader.chunking.chunk_storage import ChunkStorage
from uploader.database import init_database
from uploader.repositories.video_repository import Video, VideoRepository
from uploader.security.inspector import ContentInspector
from uploader.security.scanners import Scanner
from uploader.services.ingestion_service import IngestionService
from uploader.services.video_service import VideoService
from uploader.storage.gateway import StorageGateway
from uploader.storage.keys import ROLE_VIDEO, asset_folder
from uploader.storage.local_store import LocalObjectStore
from uploader.storage.orphans import OrphanedObjectLog
from uploader.types import ScanResult, StagedFile
from uploader.utils import generate_uuid, utcnow

VIDEO_TYPES = ["video/mp4", "video/webm"]
THUMBNAIL_TYPES = ["image/jpeg", "image/png"]
CAPTION_TYPES = ["text/vtt", "text/plain"]

SIGNING_SECRET = "test-signing-secret-that-is-long-enough-for-hs256"

# ISO base media header followed by padding
MP4_BYTES = b"\x00\x00\x00\x18ftypmp42\x00\x00\x00\x00mp42isom" + b"\x00" * 1000
JPEG_BYTES = b"\xff\xd8\xff\xe0\x00\x10JFIF\x00" + b"\x01" * 200
VTT_BYTES = b"WEBVTT\n\n00:00:00.000 --> 00:00:02.000\nHello there\n"


class CleanScanner(Scanner):
    """Scanner that always completes with a clean verdict."""

    name = "clean"

    def __init__(self):
        self.scanned = []

    async def scan(self, path):
        self.scanned.append(Path(path).name)
        return ScanResult(scanner=self.name, infected=False, details="clean")


@pytest.fixture
def test_db(tmp_path, monkeypatch):
    """
    Create a temporary test database for each test.
    """
    db_path = tmp_path / "test.db"
    monkeypatch.setattr("uploader.database.DATABASE_PATH", str(db_path))
    monkeypatch.setattr("uploader.config.DATABASE_PATH", str(db_path))
    init_database()
    return db_path


@pytest.fixture
def staging_dir(tmp_path):
    path = tmp_path / "staging"
    path.mkdir()
    return path


@pytest.fixture
def chunk_storage(staging_dir):
    storage = ChunkStorage(staging_dir)
    storage.ensure_directories()
    return storage


@pytest.fixture
def assembler(chunk_storage):
    return ChunkAssembler(chunk_storage, max_chunk_bytes=1024 * 1024)


@pytest.fixture
def clean_scanner():
    return CleanScanner()


@pytest.fixture
def inspector(clean_scanner):
    return ContentInspector(
        allowed_mime_types=VIDEO_TYPES,
        scanners=[clean_scanner],
        max_size_bytes=10 * 1024 * 1024,
        scan_timeout=2.0,
    )


@pytest.fixture
def local_store(tmp_path):
    return LocalObjectStore(tmp_path / "objects", "http://testserver", SIGNING_SECRET)


@pytest.fixture
def gateway(local_store, orphan_log):
    return StorageGateway(local_store, collection="videos", timeout=5.0, retry_delay=0, orphan_log=orphan_log)


@pytest.fixture
def orphan_log(tmp_path):
    return OrphanedObjectLog(tmp_path / "orphaned_objects.json")


@pytest.fixture
def ingestion_service(test_db, inspector, assembler, gateway, orphan_log, staging_dir):
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
        metadata_timeout=5.0,
    )


@pytest.fixture
def video_service(test_db, gateway):
    return VideoService(gateway, metadata_timeout=5.0)


@pytest.fixture
def sample_video(tmp_path):
    """
    Create a small file that passes every content check.
    """
    path = tmp_path / "sample.mp4"
    path.write_bytes(MP4_BYTES)
    return path


@pytest.fixture
def stored_video(test_db, gateway, sample_video):
    """
    Factory that stores the sample file and commits a video record for it.
    """
    async def _create(owner_id="user1", is_public=False, title="Stored"):
        video_id = generate_uuid()
        staged = StagedFile(path=sample_video, filename="clip.mp4", content_type="video/mp4", size=len(MP4_BYTES))
        stored = await gateway.upload_asset_file(staged, owner_id, video_id, ROLE_VIDEO)
        now = utcnow()
        video = Video(
            video_id=video_id,
            owner_id=owner_id,
            title=title,
            video_url=stored.url,
            storage_key=stored.key,
            folder_path=asset_folder(gateway.collection, owner_id, video_id),
            file_size=stored.size,
            content_type="video/mp4",
            is_public=is_public,
            created_at=now,
            updated_at=now,
        )
        return VideoRepository.create_video(video)

    return _create
