"""Manages staged chunk files on disk: per-session directories, chunk writes, manifests."""

import json
import logging
import os
import shutil
import uuid
from pathlib import Path
from typing import BinaryIO, Iterator, List, Optional, Set, Tuple

from common.constants import STREAM_PIECE_SIZE_BYTES
from uploader.exceptions import ClientInputError

logger = logging.getLogger(__name__)

MANIFEST_NAME = "session.json"
CHUNK_PREFIX = "chunk-"
CHUNK_SUFFIX = ".part"


class ChunkStorage:
    """
    Filesystem substrate for upload sessions.

    Layout: <root>/sessions/<upload_id>/chunk-<index>.part plus a
    session.json manifest. Completeness is tracked by the assembler, not by
    listing this directory.
    """

    def __init__(self, root: Path):
        self.root = Path(root)
        self.sessions_dir = self.root / "sessions"

    def ensure_directories(self) -> None:
        """Ensure the sessions directory exists."""
        self.sessions_dir.mkdir(parents=True, exist_ok=True)

    def get_session_dir(self, upload_id: str) -> Path:
        return self.sessions_dir / upload_id

    def get_chunk_path(self, upload_id: str, chunk_index: int) -> Path:
        """
        Get file path for a chunk.

        Args:
            upload_id: Upload session identifier
            chunk_index: 0-based chunk index

        Returns:
            Path object for chunk file
        """
        return self.get_session_dir(upload_id) / f"{CHUNK_PREFIX}{chunk_index}{CHUNK_SUFFIX}"

    def write_temp_chunk(
        self,
        upload_id: str,
        source: BinaryIO,
        max_bytes: int,
        piece_size: int = STREAM_PIECE_SIZE_BYTES,
    ) -> Tuple[Path, int]:
        """
        Stream chunk bytes into a temporary file inside the session directory.

        Args:
            upload_id: Upload session identifier
            source: Readable binary stream with the chunk body
            max_bytes: Largest accepted chunk size
            piece_size: Copy buffer size

        Returns:
            Tuple of (temporary path, bytes written)

        Raises:
            ClientInputError: If the chunk exceeds max_bytes
            OSError: If the write fails
        """
        session_dir = self.get_session_dir(upload_id)
        session_dir.mkdir(parents=True, exist_ok=True)
        temp_path = session_dir / f".incoming-{uuid.uuid4().hex}"

        written = 0
        try:
            with open(temp_path, 'wb') as f:
                while True:
                    piece = source.read(piece_size)
                    if not piece:
                        break
                    written += len(piece)
                    if written > max_bytes:
                        raise ClientInputError(f"Chunk exceeds maximum chunk size of {max_bytes} bytes")
                    f.write(piece)
        except BaseException:
            temp_path.unlink(missing_ok=True)
            raise

        return temp_path, written

    def commit_chunk(self, temp_path: Path, upload_id: str, chunk_index: int) -> Path:
        """
        Atomically move a temporary chunk into its indexed slot, replacing any earlier copy.
        """
        final_path = self.get_chunk_path(upload_id, chunk_index)
        os.replace(temp_path, final_path)
        return final_path

    def read_chunk_streaming(
        self,
        upload_id: str,
        chunk_index: int,
        piece_size: int = STREAM_PIECE_SIZE_BYTES,
    ) -> Iterator[bytes]:
        """
        Stream chunk data in pieces.

        Raises:
            FileNotFoundError: If chunk does not exist
        """
        with open(self.get_chunk_path(upload_id, chunk_index), 'rb') as f:
            while True:
                piece = f.read(piece_size)
                if not piece:
                    break
                yield piece

    def chunk_exists(self, upload_id: str, chunk_index: int) -> bool:
        return self.get_chunk_path(upload_id, chunk_index).exists()

    def list_chunk_indices(self, upload_id: str) -> Set[int]:
        """
        List stored chunk indices for a session (used once when rehydrating).
        """
        session_dir = self.get_session_dir(upload_id)
        if not session_dir.exists():
            return set()

        indices = set()
        for path in session_dir.glob(f"{CHUNK_PREFIX}*{CHUNK_SUFFIX}"):
            raw = path.name[len(CHUNK_PREFIX):-len(CHUNK_SUFFIX)]
            if raw.isdigit():
                indices.add(int(raw))
        return indices

    def save_manifest(self, upload_id: str, manifest: dict) -> None:
        session_dir = self.get_session_dir(upload_id)
        session_dir.mkdir(parents=True, exist_ok=True)
        temp_path = session_dir / f".{MANIFEST_NAME}.tmp"
        with open(temp_path, 'w') as f:
            json.dump(manifest, f)
        os.replace(temp_path, session_dir / MANIFEST_NAME)

    def load_manifest(self, upload_id: str) -> Optional[dict]:
        manifest_path = self.get_session_dir(upload_id) / MANIFEST_NAME
        if not manifest_path.exists():
            return None
        try:
            with open(manifest_path, 'r') as f:
                return json.load(f)
        except (OSError, ValueError) as e:
            logger.warning(f"Unreadable manifest for upload {upload_id}: {e}")
            return None

    def last_activity(self, upload_id: str) -> Optional[float]:
        """
        Modification time of the newest entry in a session directory, or None.
        """
        session_dir = self.get_session_dir(upload_id)
        if not session_dir.exists():
            return None
        mtimes = [session_dir.stat().st_mtime]
        mtimes.extend(p.stat().st_mtime for p in session_dir.iterdir())
        return max(mtimes)

    def list_sessions(self) -> List[str]:
        if not self.sessions_dir.exists():
            return []
        return [p.name for p in self.sessions_dir.iterdir() if p.is_dir()]

    def purge_session(self, upload_id: str) -> bool:
        """
        Delete a session directory and everything in it.

        Returns:
            True if the directory existed
        """
        session_dir = self.get_session_dir(upload_id)
        if not session_dir.exists():
            return False
        shutil.rmtree(session_dir)
        logger.info(f"Purged staging for upload {upload_id}")
        return True
