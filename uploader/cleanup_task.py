"""Background task for cleaning up abandoned staging and orphaned objects."""

import asyncio
import logging
import shutil
import time
from pathlib import Path
from typing import List, Optional

from uploader.chunking.assembler import ChunkAssembler
from uploader.exceptions import StorageFailureError
from uploader.storage.gateway import StorageGateway
from uploader.storage.orphans import OrphanedObjectLog

logger = logging.getLogger(__name__)


class StagingCleaner:
    """
    Background task that periodically purges abandoned upload sessions,
    stale request staging directories, and objects left behind by failed
    compensation.
    """

    def __init__(
        self,
        assembler: ChunkAssembler,
        gateway: StorageGateway,
        orphan_log: OrphanedObjectLog,
        requests_dir: Path,
        retention_seconds: int,
        interval_seconds: int,
    ):
        """
        Initialize cleaner task.

        Args:
            assembler: Owner of upload session state
            gateway: Storage gateway used to retry orphan deletions
            orphan_log: Log of objects that could not be deleted
            requests_dir: Parent of per-request staging directories
            retention_seconds: Idle time after which staging is abandoned
            interval_seconds: Time between cleanup cycles
        """
        self.assembler = assembler
        self.gateway = gateway
        self.orphan_log = orphan_log
        self.requests_dir = Path(requests_dir)
        self.retention_seconds = retention_seconds
        self.interval_seconds = interval_seconds
        self._running = False
        self._task: Optional[asyncio.Task] = None

    async def start(self) -> None:
        """Start the background cleanup task."""
        if self._running:
            logger.warning("Cleanup task already running")
            return

        self._running = True
        self._task = asyncio.create_task(self._run())
        logger.info(f"Started staging cleanup task (interval: {self.interval_seconds}s)")

    async def stop(self) -> None:
        """Stop the background cleanup task."""
        if not self._running:
            return

        self._running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass

        logger.info("Stopped staging cleanup task")

    async def _run(self) -> None:
        """Main loop for cleanup task."""
        while self._running:
            try:
                await asyncio.sleep(self.interval_seconds)

                if not self._running:
                    break

                await self.cleanup_cycle()

            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error(f"Error in cleanup task: {e}", exc_info=True)

    async def cleanup_cycle(self, now: Optional[float] = None) -> None:
        """Execute one cleanup cycle."""
        now = time.time() if now is None else now

        purged = await self.assembler.purge_stale_sessions(self.retention_seconds, now=now)
        if purged:
            logger.info(f"Purged abandoned upload sessions: {purged}")

        removed = await asyncio.to_thread(self._purge_request_dirs, now - self.retention_seconds)
        if removed:
            logger.info(f"Removed {len(removed)} stale request staging directories")

        await self._retry_orphans()

    def _purge_request_dirs(self, cutoff: float) -> List[str]:
        if not self.requests_dir.exists():
            return []

        removed = []
        for path in self.requests_dir.iterdir():
            try:
                if path.is_dir() and path.stat().st_mtime < cutoff:
                    shutil.rmtree(path)
                    removed.append(path.name)
            except OSError as e:
                logger.warning(f"Could not remove stale staging directory {path}: {e}")
        return removed

    async def _retry_orphans(self) -> None:
        orphaned = await asyncio.to_thread(self.orphan_log.load)
        if not orphaned:
            logger.debug("No orphaned objects to clean")
            return

        logger.info(f"Retrying deletion of {len(orphaned)} orphaned objects")

        remaining = []
        cleaned_count = 0

        for entry in orphaned:
            key = entry.get("key")
            if not key:
                continue

            try:
                await self.gateway.delete_object(key)
                logger.info(f"Cleaned orphaned object {key}")
                cleaned_count += 1
            except StorageFailureError as e:
                logger.warning(f"Error cleaning orphaned object {key}: {e}")
                remaining.append(entry)

        try:
            await asyncio.to_thread(self.orphan_log.replace, remaining)
        except OSError as e:
            logger.error(f"Failed to update orphaned objects log: {e}")
            return

        logger.info(f"Cleanup cycle complete: {cleaned_count} cleaned, {len(remaining)} remaining")
