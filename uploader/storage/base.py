"""Object store contract shared by the local and S3 backends."""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from pathlib import Path
from typing import Optional


@dataclass(frozen=True)
class StoredObject:
    """
    Durable reference to an uploaded object.
    """
    key: str
    url: str
    size: int
    content_type: Optional[str] = None


class ObjectStore(ABC):
    """
    Blocking object store operations.

    Callers run these in a worker thread; implementations raise their own
    backend errors and the gateway maps them to StorageFailureError.
    """

    name = "object_store"

    @abstractmethod
    def upload_file(self, local_path: Path, key: str, content_type: Optional[str]) -> StoredObject:
        """Upload a local file under key, replacing any existing object."""

    @abstractmethod
    def delete_object(self, key: str) -> bool:
        """Delete one object. Returns False if it did not exist."""

    @abstractmethod
    def delete_prefix(self, prefix: str) -> int:
        """Delete every object under prefix. Returns the number deleted."""

    @abstractmethod
    def signed_url(self, key: str, expires_in_seconds: int) -> str:
        """Time-limited read URL for key."""

    @abstractmethod
    def check(self) -> None:
        """Raise if the backend is not reachable."""
