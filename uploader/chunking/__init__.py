"""Chunked upload sessions and reassembly."""

from uploader.chunking.assembler import ChunkAssembler
from uploader.chunking.chunk_storage import ChunkStorage
from uploader.chunking.session import ChunkReceipt, SessionState, UploadSession

__all__ = [
    "ChunkAssembler",
    "ChunkStorage",
    "ChunkReceipt",
    "SessionState",
    "UploadSession",
]
