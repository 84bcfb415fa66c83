"""Upload session record and state machine for chunked uploads."""

import asyncio
from dataclasses import dataclass, field, replace
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional, Set

from uploader.types import DeclaredMetadata
from uploader.utils import utcnow


class SessionState(str, Enum):
    """
    Lifecycle of one chunked upload.

    OPEN accepts chunk writes. ASSEMBLING is entered exactly once, when the
    last missing index lands. DONE and FAILED are terminal.
    """
    OPEN = "open"
    ASSEMBLING = "assembling"
    DONE = "done"
    FAILED = "failed"


@dataclass
class UploadSession:
    """
    One chunked upload in progress.

    received_chunks only ever holds indices in [0, total_chunks); re-sending
    an index replaces the stored chunk without changing the count. lock
    serializes chunk commits and state changes for this session only.
    """
    upload_id: str
    owner_id: str
    total_chunks: int
    declared_metadata: DeclaredMetadata = field(default_factory=DeclaredMetadata)
    filename: Optional[str] = None
    content_type: Optional[str] = None
    received_chunks: Set[int] = field(default_factory=set)
    state: SessionState = SessionState.OPEN
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)
    lock: asyncio.Lock = field(default_factory=asyncio.Lock, repr=False, compare=False)

    @property
    def received_count(self) -> int:
        return len(self.received_chunks)

    @property
    def is_complete(self) -> bool:
        return self.received_count == self.total_chunks

    def record_chunk(self, chunk_index: int) -> None:
        if not 0 <= chunk_index < self.total_chunks:
            raise ValueError(f"Chunk index {chunk_index} outside [0, {self.total_chunks})")
        self.received_chunks.add(chunk_index)
        self.updated_at = utcnow()

    def merge_declared(
        self,
        metadata: Optional[DeclaredMetadata],
        filename: Optional[str] = None,
        content_type: Optional[str] = None,
    ) -> None:
        """
        Fold the metadata sent with a chunk into the session.

        Non-empty values replace earlier ones, so the completing chunk's
        fields win while chunks that omit them change nothing.
        """
        if metadata is not None:
            current = self.declared_metadata
            updates: Dict[str, Any] = {}
            if metadata.title and metadata.title != DeclaredMetadata.title:
                updates["title"] = metadata.title
            if metadata.description:
                updates["description"] = metadata.description
            if metadata.tags:
                updates["tags"] = list(metadata.tags)
            if metadata.is_public:
                updates["is_public"] = True
            if updates:
                self.declared_metadata = replace(current, **updates)

        if filename:
            self.filename = filename
        if content_type:
            self.content_type = content_type

    def to_manifest(self) -> Dict[str, Any]:
        """Serialize the durable part of the session (not the received set)."""
        metadata = self.declared_metadata
        return {
            "upload_id": self.upload_id,
            "owner_id": self.owner_id,
            "total_chunks": self.total_chunks,
            "filename": self.filename,
            "content_type": self.content_type,
            "metadata": {
                "title": metadata.title,
                "description": metadata.description,
                "tags": list(metadata.tags),
                "is_public": metadata.is_public,
            },
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
        }

    @classmethod
    def from_manifest(cls, data: Dict[str, Any], received_chunks: Set[int]) -> 'UploadSession':
        metadata = data.get("metadata") or {}
        total_chunks = int(data["total_chunks"])
        return cls(
            upload_id=data["upload_id"],
            owner_id=data["owner_id"],
            total_chunks=total_chunks,
            declared_metadata=DeclaredMetadata(
                title=metadata.get("title") or DeclaredMetadata.title,
                description=metadata.get("description"),
                tags=list(metadata.get("tags") or []),
                is_public=bool(metadata.get("is_public", False)),
            ),
            filename=data.get("filename"),
            content_type=data.get("content_type"),
            received_chunks={i for i in received_chunks if 0 <= i < total_chunks},
            created_at=datetime.fromisoformat(data["created_at"]),
            updated_at=datetime.fromisoformat(data["updated_at"]),
        )


@dataclass(frozen=True)
class ChunkReceipt:
    """
    Result of storing one chunk.

    ready is True for exactly one receipt per session: the one whose write
    moved the session from OPEN to ASSEMBLING.
    """
    upload_id: str
    chunk_index: int
    received_count: int
    total_chunks: int
    ready: bool
    session: UploadSession
