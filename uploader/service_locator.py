"""Service locator for the components wired up at startup."""

from typing import Optional

from uploader.chunking.assembler import ChunkAssembler
from uploader.services.ingestion_service import IngestionService
from uploader.services.video_service import VideoService
from uploader.storage.gateway import StorageGateway

_ingestion_service: Optional[IngestionService] = None
_video_service: Optional[VideoService] = None
_storage_gateway: Optional[StorageGateway] = None
_chunk_assembler: Optional[ChunkAssembler] = None


def set_ingestion_service(service: IngestionService):
    """Set global ingestion service instance"""
    global _ingestion_service
    _ingestion_service = service


def get_ingestion_service() -> IngestionService:
    """Get global ingestion service instance"""
    if _ingestion_service is None:
        raise RuntimeError("Ingestion service not initialized")
    return _ingestion_service


def set_video_service(service: VideoService):
    """Set global video service instance"""
    global _video_service
    _video_service = service


def get_video_service() -> VideoService:
    """Get global video service instance"""
    if _video_service is None:
        raise RuntimeError("Video service not initialized")
    return _video_service


def set_storage_gateway(gateway: StorageGateway):
    global _storage_gateway
    _storage_gateway = gateway


def get_storage_gateway() -> StorageGateway:
    if _storage_gateway is None:
        raise RuntimeError("Storage gateway not initialized")
    return _storage_gateway


def set_chunk_assembler(assembler: ChunkAssembler):
    global _chunk_assembler
    _chunk_assembler = assembler


def get_chunk_assembler() -> Optional[ChunkAssembler]:
    return _chunk_assembler
