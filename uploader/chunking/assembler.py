"""Reassembles out-of-order chunk uploads into one staged file, once per session."""

import asyncio
import logging
import re
import time
from pathlib import Path
from typing import BinaryIO, Dict, List, Optional

from common.constants import MAX_CHUNK_SIZE_BYTES, STREAM_PIECE_SIZE_BYTES
from uploader.chunking.chunk_storage import ChunkStorage
from uploader.chunking.session import ChunkReceipt, SessionState, UploadSession
from uploader.exceptions import (
    AssemblyError,
    ClientInputError,
    UnauthorizedAccessError,
    UploadSessionClosedError,
)
from uploader.types import DeclaredMetadata, StagedFile

logger = logging.getLogger(__name__)

UPLOAD_ID_PATTERN = re.compile(r"^[A-Za-z0-9_-]{1,128}$")


class ChunkAssembler:
    """
    Tracks upload sessions and concatenates their chunks.

    Chunk bodies are written and concatenated outside any lock. Each session's
    own lock covers moving a finished chunk into place, the manifest write,
    the received set and the OPEN -> ASSEMBLING transition, so at most one
    caller per session ever gets a ready receipt. The session registry is a
    plain dict; it is only read and written between awaits.
    """

    def __init__(self, storage: ChunkStorage, max_chunk_bytes: int = MAX_CHUNK_SIZE_BYTES):
        self.storage = storage
        self.max_chunk_bytes = max_chunk_bytes
        self._sessions: Dict[str, UploadSession] = {}
        self._closed: Dict[str, float] = {}

    def get_session(self, upload_id: str) -> Optional[UploadSession]:
        return self._sessions.get(upload_id)

    async def receive_chunk(
        self,
        upload_id: str,
        chunk_index: int,
        total_chunks: int,
        owner_id: str,
        source: BinaryIO,
        metadata: Optional[DeclaredMetadata] = None,
        filename: Optional[str] = None,
        content_type: Optional[str] = None,
    ) -> ChunkReceipt:
        """
        Store one chunk and report session progress.

        Args:
            upload_id: Client-chosen session token
            chunk_index: 0-based index of this chunk
            total_chunks: Declared chunk count (must match the session)
            owner_id: Caller identity
            source: Binary stream with the chunk body
            metadata: Declared video metadata sent with this chunk
            filename: Declared filename for the assembled file
            content_type: Declared MIME type for the assembled file

        Returns:
            ChunkReceipt; receipt.ready is True only for the completing chunk

        Raises:
            ClientInputError: Invalid identifiers, indices or chunk size
            UnauthorizedAccessError: Session belongs to another user
            UploadSessionClosedError: Session is no longer accepting chunks
        """
        self._validate(upload_id, chunk_index, total_chunks)

        session = await self._get_or_create_session(
            upload_id, owner_id, total_chunks, metadata, filename, content_type
        )

        if session.owner_id != owner_id:
            raise UnauthorizedAccessError(f"User {owner_id} does not own upload {upload_id}")

        if session.total_chunks != total_chunks:
            raise ClientInputError(
                f"totalChunks {total_chunks} does not match upload session ({session.total_chunks})"
            )

        if session.state != SessionState.OPEN:
            raise UploadSessionClosedError(f"Upload {upload_id} is no longer accepting chunks")

        temp_path, size = await asyncio.to_thread(
            self.storage.write_temp_chunk, upload_id, source, self.max_chunk_bytes
        )

        async with session.lock:
            if session.state != SessionState.OPEN or self._sessions.get(upload_id) is not session:
                await asyncio.to_thread(temp_path.unlink, missing_ok=True)
                raise UploadSessionClosedError(f"Upload {upload_id} is no longer accepting chunks")

            await asyncio.to_thread(self.storage.commit_chunk, temp_path, upload_id, chunk_index)
            session.record_chunk(chunk_index)
            session.merge_declared(metadata, filename, content_type)

            ready = False
            if session.is_complete and session.state == SessionState.OPEN:
                session.state = SessionState.ASSEMBLING
                ready = True

            await asyncio.to_thread(self.storage.save_manifest, upload_id, session.to_manifest())

            receipt = ChunkReceipt(
                upload_id=upload_id,
                chunk_index=chunk_index,
                received_count=session.received_count,
                total_chunks=session.total_chunks,
                ready=ready,
                session=session,
            )

        logger.info(
            f"Stored chunk {chunk_index} ({size} bytes) for upload {upload_id}: "
            f"{receipt.received_count}/{receipt.total_chunks} received"
        )
        return receipt

    async def assemble(self, session: UploadSession, destination: Path) -> StagedFile:
        """
        Concatenate every chunk of a session, in index order, into destination.

        On success the session staging is purged and the session is DONE. On
        failure the partial output and the session staging are purged, the
        session is FAILED and AssemblyError is raised.
        """
        if session.state != SessionState.ASSEMBLING:
            raise AssemblyError(f"Upload {session.upload_id} is not ready for assembly (state={session.state.value})")

        destination = Path(destination)
        logger.info(f"Assembling {session.total_chunks} chunks for upload {session.upload_id}")

        try:
            size = await asyncio.to_thread(self._concatenate, session, destination)
        except Exception as e:
            logger.error(f"Assembly failed for upload {session.upload_id}: {e}", exc_info=True)
            destination.unlink(missing_ok=True)
            await self.close_session(session, SessionState.FAILED)
            if isinstance(e, AssemblyError):
                raise
            raise AssemblyError(f"Could not assemble upload {session.upload_id}: {e}") from e

        await self.close_session(session, SessionState.DONE)
        logger.info(f"Assembled upload {session.upload_id} into {destination.name} ({size} bytes)")

        return StagedFile(
            path=destination,
            filename=session.filename or f"{session.declared_metadata.title}.mp4",
            content_type=session.content_type,
            size=size,
        )

    def _concatenate(self, session: UploadSession, destination: Path) -> int:
        destination.parent.mkdir(parents=True, exist_ok=True)
        written = 0

        with open(destination, 'wb') as out:
            for index in range(session.total_chunks):
                if index not in session.received_chunks or not self.storage.chunk_exists(session.upload_id, index):
                    raise AssemblyError(f"Chunk {index} of upload {session.upload_id} is missing")

                for piece in self.storage.read_chunk_streaming(
                    session.upload_id, index, piece_size=STREAM_PIECE_SIZE_BYTES
                ):
                    out.write(piece)
                    written += len(piece)

        return written

    async def close_session(self, session: UploadSession, state: SessionState) -> None:
        """
        Move a session to a terminal state and purge its staging.

        Safe to call more than once; late chunks for the id are refused until
        the closed marker is pruned.
        """
        if state not in (SessionState.DONE, SessionState.FAILED):
            raise ValueError(f"{state} is not a terminal state")

        session.state = state
        if self._sessions.get(session.upload_id) is session:
            del self._sessions[session.upload_id]
        self._closed[session.upload_id] = time.time()

        try:
            await asyncio.to_thread(self.storage.purge_session, session.upload_id)
        except OSError as e:
            logger.error(f"Failed to purge staging for upload {session.upload_id}: {e}", exc_info=True)

    async def purge_stale_sessions(self, retention_seconds: float, now: Optional[float] = None) -> List[str]:
        """
        Fail and purge OPEN sessions idle for longer than retention_seconds.

        Covers sessions known in memory and directories left on disk by an
        earlier process.

        Returns:
            Purged upload ids
        """
        now = time.time() if now is None else now
        cutoff = now - retention_seconds
        purged = []

        for upload_id, session in list(self._sessions.items()):
            if session.updated_at.timestamp() >= cutoff:
                continue
            async with session.lock:
                if session.state != SessionState.OPEN:
                    continue
                session.state = SessionState.FAILED
            await self.close_session(session, SessionState.FAILED)
            purged.append(upload_id)

        for upload_id in await asyncio.to_thread(self.storage.list_sessions):
            if upload_id in self._sessions:
                continue
            last_activity = await asyncio.to_thread(self.storage.last_activity, upload_id)
            if last_activity is not None and last_activity < cutoff:
                await asyncio.to_thread(self.storage.purge_session, upload_id)
                purged.append(upload_id)

        for upload_id, closed_at in list(self._closed.items()):
            if closed_at < cutoff:
                del self._closed[upload_id]

        if purged:
            logger.info(f"Purged {len(purged)} abandoned upload sessions")
        return purged

    async def _get_or_create_session(
        self,
        upload_id: str,
        owner_id: str,
        total_chunks: int,
        metadata: Optional[DeclaredMetadata],
        filename: Optional[str],
        content_type: Optional[str],
    ) -> UploadSession:
        session = self._sessions.get(upload_id)
        if session is not None:
            return session
        if upload_id in self._closed:
            raise UploadSessionClosedError(f"Upload {upload_id} has already finished")

        manifest = await asyncio.to_thread(self.storage.load_manifest, upload_id)
        if manifest is not None:
            indices = await asyncio.to_thread(self.storage.list_chunk_indices, upload_id)
            candidate = UploadSession.from_manifest(manifest, indices)
        else:
            candidate = UploadSession(
                upload_id=upload_id,
                owner_id=owner_id,
                total_chunks=total_chunks,
                declared_metadata=metadata or DeclaredMetadata(),
                filename=filename,
                content_type=content_type,
            )

        # Another request may have registered or closed the id while we read from disk.
        session = self._sessions.get(upload_id)
        if session is not None:
            return session
        if upload_id in self._closed:
            raise UploadSessionClosedError(f"Upload {upload_id} has already finished")

        self._sessions[upload_id] = candidate
        if manifest is not None:
            logger.info(
                f"Rehydrated upload {upload_id} from staging "
                f"({candidate.received_count}/{candidate.total_chunks} chunks)"
            )
        else:
            logger.info(f"Opened upload session {upload_id} for {total_chunks} chunks")
        return candidate

    @staticmethod
    def _validate(upload_id: str, chunk_index: int, total_chunks: int) -> None:
        if not upload_id or not UPLOAD_ID_PATTERN.match(upload_id):
            raise ClientInputError("uploadId must be 1-128 characters of letters, digits, '-' or '_'")
        if total_chunks < 1:
            raise ClientInputError("totalChunks must be a positive integer")
        if not 0 <= chunk_index < total_chunks:
            raise ClientInputError(f"chunkIndex must be between 0 and {total_chunks - 1}")
