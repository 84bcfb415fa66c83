"""Durable object storage for ingested media."""

from uploader.storage.base import ObjectStore, StoredObject
from uploader.storage.gateway import StorageGateway
from uploader.storage.local_store import LocalObjectStore
from uploader.storage.orphans import OrphanedObjectLog
from uploader.storage.s3_store import S3ObjectStore

__all__ = [
    "ObjectStore",
    "StoredObject",
    "StorageGateway",
    "LocalObjectStore",
    "S3ObjectStore",
    "OrphanedObjectLog",
    "build_object_store",
]


def build_object_store(
    backend: str,
    local_path: str,
    public_base_url: str,
    signing_secret: str,
    s3_bucket: str = None,
    s3_region: str = None,
    s3_endpoint_url: str = None,
) -> ObjectStore:
    """
    Create the configured object store backend.

    Raises:
        ValueError: If the backend name is unknown
    """
    if backend == "local":
        return LocalObjectStore(local_path, public_base_url, signing_secret)
    if backend == "s3":
        return S3ObjectStore(s3_bucket, region=s3_region, endpoint_url=s3_endpoint_url)
    raise ValueError(f"Unknown storage backend: {backend}")
