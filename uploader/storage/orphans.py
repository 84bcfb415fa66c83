"""Persistent list of stored objects that compensation failed to delete."""

import json
import logging
import os
from pathlib import Path
from typing import Any, Dict, List

from uploader.utils import utcnow

logger = logging.getLogger(__name__)


class OrphanedObjectLog:
    """
    JSON file of {"key", "reason", "recorded_at"} entries, retried by the
    staging cleaner until the delete succeeds.
    """

    def __init__(self, path: Path):
        self.path = Path(path)

    def load(self) -> List[Dict[str, Any]]:
        if not self.path.exists():
            return []
        try:
            with open(self.path, 'r') as f:
                data = json.load(f)
        except (OSError, ValueError) as e:
            logger.error(f"Failed to read orphaned objects log: {e}")
            return []
        return data if isinstance(data, list) else []

    def record(self, keys: List[str], reason: str) -> None:
        """
        Append keys to the log. Write failures are logged, never raised.
        """
        if not keys:
            return

        entries = self.load()
        known = {entry.get("key") for entry in entries}
        now = utcnow().isoformat()
        for key in keys:
            if key not in known:
                entries.append({"key": key, "reason": reason, "recorded_at": now})

        try:
            self.replace(entries)
        except OSError as e:
            logger.error(f"Failed to record orphaned objects {keys}: {e}", exc_info=True)
            return

        logger.error(f"Recorded {len(keys)} orphaned objects for cleanup: {keys} ({reason})")

    def replace(self, entries: List[Dict[str, Any]]) -> None:
        if not entries:
            self.path.unlink(missing_ok=True)
            return

        self.path.parent.mkdir(parents=True, exist_ok=True)
        temp_path = self.path.with_suffix(self.path.suffix + ".tmp")
        with open(temp_path, 'w') as f:
            json.dump(entries, f, indent=2)
        os.replace(temp_path, self.path)
