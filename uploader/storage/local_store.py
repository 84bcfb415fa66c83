"""Filesystem-backed object store with HMAC-signed read URLs."""

import logging
import os
import shutil
import time
import uuid
from pathlib import Path
from typing import Optional
from urllib.parse import quote

import jwt

from uploader.storage.base import ObjectStore, StoredObject

logger = logging.getLogger(__name__)

TOKEN_ALGORITHM = "HS256"


class LocalObjectStore(ObjectStore):
    """
    Stores objects as files under root/<key>.

    Objects are served by the /objects route; a signed URL carries a short
    lived token bound to the object key.
    """

    name = "local"

    def __init__(self, root: Path, public_base_url: str, signing_secret: str):
        self.root = Path(root)
        self.public_base_url = public_base_url.rstrip("/")
        self.signing_secret = signing_secret

    def resolve_path(self, key: str) -> Path:
        """
        Map a key to its file path, refusing keys that escape the root.

        Raises:
            ValueError: If the key is empty or leaves the store root
        """
        if not key or key.startswith("/"):
            raise ValueError(f"Invalid object key: {key!r}")

        root = self.root.resolve()
        path = (root / key).resolve()
        if root not in path.parents:
            raise ValueError(f"Invalid object key: {key!r}")
        return path

    def public_url(self, key: str) -> str:
        return f"{self.public_base_url}/objects/{quote(key)}"

    def upload_file(self, local_path: Path, key: str, content_type: Optional[str]) -> StoredObject:
        destination = self.resolve_path(key)
        destination.parent.mkdir(parents=True, exist_ok=True)

        temp_path = destination.parent / f".upload-{uuid.uuid4().hex}"
        try:
            shutil.copyfile(local_path, temp_path)
            os.replace(temp_path, destination)
        except BaseException:
            temp_path.unlink(missing_ok=True)
            raise

        size = destination.stat().st_size
        logger.debug(f"Stored object {key} ({size} bytes)")
        return StoredObject(key=key, url=self.public_url(key), size=size, content_type=content_type)

    def delete_object(self, key: str) -> bool:
        path = self.resolve_path(key)
        if not path.exists():
            return False
        path.unlink()
        return True

    def delete_prefix(self, prefix: str) -> int:
        folder = self.resolve_path(prefix.rstrip("/"))
        if not folder.exists():
            return 0

        count = sum(1 for p in folder.rglob("*") if p.is_file())
        shutil.rmtree(folder)
        return count

    def signed_url(self, key: str, expires_in_seconds: int) -> str:
        self.resolve_path(key)
        payload = {
            "key": key,
            "exp": int(time.time()) + expires_in_seconds,
        }
        token = jwt.encode(payload, self.signing_secret, algorithm=TOKEN_ALGORITHM)
        return f"{self.public_url(key)}?token={token}"

    def verify_token(self, key: str, token: str) -> bool:
        """
        Check that token is an unexpired signature for key.
        """
        try:
            payload = jwt.decode(token, self.signing_secret, algorithms=[TOKEN_ALGORITHM])
        except jwt.PyJWTError as e:
            logger.debug(f"Rejected object token for {key}: {e}")
            return False
        return payload.get("key") == key

    def check(self) -> None:
        self.root.mkdir(parents=True, exist_ok=True)
        if not os.access(self.root, os.W_OK):
            raise OSError(f"Object store root {self.root} is not writable")
