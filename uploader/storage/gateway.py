"""Async facade over the object store: uploads, deletions, signed URLs."""

import asyncio
import logging
from typing import Callable, List, Optional, Set, TypeVar

from uploader.exceptions import StorageFailureError
from uploader.storage.base import ObjectStore, StoredObject
from uploader.storage.keys import asset_folder, object_key
from uploader.storage.orphans import OrphanedObjectLog
from uploader.types import StagedFile

logger = logging.getLogger(__name__)

T = TypeVar("T")


class StorageGateway:
    """
    Runs blocking object store calls in worker threads, each bounded by a
    timeout. Every backend error or timeout surfaces as StorageFailureError.

    A timed-out upload keeps running in its thread. Once it finishes, the
    object it wrote is deleted; keys that cannot be deleted go to the orphan
    log.
    """

    def __init__(
        self,
        store: ObjectStore,
        collection: str,
        timeout: float = 300.0,
        signed_url_ttl_minutes: int = 60,
        delete_attempts: int = 3,
        retry_delay: float = 1.0,
        orphan_log: Optional[OrphanedObjectLog] = None,
    ):
        self.store = store
        self.collection = collection
        self.timeout = timeout
        self.signed_url_ttl_minutes = signed_url_ttl_minutes
        self.delete_attempts = delete_attempts
        self.retry_delay = retry_delay
        self.orphan_log = orphan_log
        self._late_cleanups: Set[asyncio.Task] = set()

    async def _call(self, description: str, func: Callable[..., T], *args) -> T:
        try:
            return await asyncio.wait_for(asyncio.to_thread(func, *args), timeout=self.timeout)
        except asyncio.TimeoutError as e:
            logger.error(f"Storage {description} timed out after {self.timeout}s")
            raise StorageFailureError(f"Storage {description} timed out") from e
        except StorageFailureError:
            raise
        except Exception as e:
            logger.error(f"Storage {description} failed: {e}", exc_info=True)
            raise StorageFailureError(f"Storage {description} failed: {e}") from e

    async def upload_asset_file(
        self,
        staged: StagedFile,
        owner_id: str,
        asset_id: str,
        role: str,
        language: Optional[str] = None,
    ) -> StoredObject:
        """
        Upload a staged file under the asset's deterministic key.

        Args:
            staged: Inspected local file
            owner_id: Owning user id
            asset_id: Video id
            role: video, thumbnail or caption
            language: Caption language (caption role only)

        Returns:
            StoredObject with key and public URL

        Raises:
            StorageFailureError: On backend failure or timeout
        """
        key = self.asset_key(staged, owner_id, asset_id, role, language=language)
        logger.info(f"Uploading {role} for asset {asset_id} to {key} ({staged.size} bytes)")

        upload = asyncio.ensure_future(
            asyncio.to_thread(self.store.upload_file, staged.path, key, staged.content_type)
        )
        try:
            stored = await asyncio.wait_for(asyncio.shield(upload), timeout=self.timeout)
        except asyncio.TimeoutError as e:
            logger.error(f"Storage upload of {key} timed out after {self.timeout}s")
            self._delete_when_done(upload, key)
            raise StorageFailureError(f"Storage upload of {key} timed out") from e
        except Exception as e:
            logger.error(f"Storage upload of {key} failed: {e}", exc_info=True)
            raise StorageFailureError(f"Storage upload of {key} failed: {e}") from e

        logger.info(f"Uploaded {key}")
        return stored

    def asset_key(
        self,
        staged: StagedFile,
        owner_id: str,
        asset_id: str,
        role: str,
        language: Optional[str] = None,
    ) -> str:
        """Key that upload_asset_file stores this file under."""
        return object_key(self.collection, owner_id, asset_id, role, staged.filename, language=language)

    def _delete_when_done(self, upload: asyncio.Future, key: str) -> None:
        async def _wait_and_delete():
            try:
                await upload
            except Exception:
                return
            logger.warning(f"Timed-out upload of {key} completed late, deleting it")
            failed = await self.delete_objects([key])
            if failed and self.orphan_log is not None:
                await asyncio.to_thread(self.orphan_log.record, failed, "upload completed after timeout")

        task = asyncio.create_task(_wait_and_delete())
        self._late_cleanups.add(task)
        task.add_done_callback(self._late_cleanups.discard)

    async def drain(self) -> None:
        """Wait for cleanups of timed-out uploads still in flight."""
        if self._late_cleanups:
            await asyncio.gather(*self._late_cleanups, return_exceptions=True)

    async def delete_object(self, key: str) -> bool:
        return await self._call(f"delete of {key}", self.store.delete_object, key)

    async def delete_asset_folder(self, owner_id: str, asset_id: str) -> int:
        """
        Delete every object stored for one asset.

        Returns:
            Number of objects deleted
        """
        prefix = asset_folder(self.collection, owner_id, asset_id)
        count = await self._call(f"delete of {prefix}", self.store.delete_prefix, prefix)
        logger.info(f"Deleted {count} objects under {prefix}")
        return count

    async def delete_objects(self, keys: List[str]) -> List[str]:
        """
        Delete objects with retry and exponential backoff.

        Args:
            keys: Object keys to delete

        Returns:
            Keys that could not be deleted
        """
        failed = []

        for key in keys:
            deleted = False

            for attempt in range(self.delete_attempts):
                try:
                    await self.delete_object(key)
                    logger.info(f"Deleted object {key}")
                    deleted = True
                    break
                except StorageFailureError as e:
                    if attempt < self.delete_attempts - 1:
                        delay = self.retry_delay * (2 ** attempt)
                        logger.warning(f"Failed to delete object {key}, retrying in {delay}s: {e}")
                        await asyncio.sleep(delay)
                    else:
                        logger.error(f"Failed to delete object {key} after {self.delete_attempts} attempts: {e}")

            if not deleted:
                failed.append(key)

        return failed

    async def signed_url(self, key: str, expiration_minutes: Optional[int] = None) -> str:
        """
        Issue a time-limited read URL.

        Raises:
            StorageFailureError: If signing fails
        """
        minutes = expiration_minutes or self.signed_url_ttl_minutes
        return await self._call(f"signing of {key}", self.store.signed_url, key, minutes * 60)

    async def check(self) -> None:
        await self._call("readiness check", self.store.check)
