"""Utility helper functions for the upload service."""

import re
import uuid
from datetime import datetime, timezone
from pathlib import PurePosixPath
from typing import Iterable, List, Optional

_UNSAFE_FILENAME_CHARS = re.compile(r"[^A-Za-z0-9._-]+")


def generate_uuid() -> str:
    """
    Generate a new UUID4 string.

    Returns:
        UUID4 string
    """
    return str(uuid.uuid4())


def utcnow() -> datetime:
    """Timezone-aware current UTC time."""
    return datetime.now(timezone.utc)


def parse_tags(values: Optional[Iterable[str]]) -> List[str]:
    """
    Flatten tag form values into a list.

    Accepts repeated form values, comma-separated values, or both.

    Args:
        values: Raw tag values from the request (may be None)

    Returns:
        List of trimmed, de-duplicated tags in first-seen order
    """
    tags: List[str] = []
    for value in values or []:
        for tag in value.split(','):
            tag = tag.strip()
            if tag and tag not in tags:
                tags.append(tag)
    return tags


def parse_flag(value: Optional[str]) -> bool:
    """
    Interpret a multipart boolean flag; only an explicit true value counts.
    """
    if value is None:
        return False
    return value.strip().lower() in ("true", "1", "yes", "on")


def safe_filename(filename: Optional[str], default: str = "file") -> str:
    """
    Reduce a client-supplied filename to a safe single path segment.

    Args:
        filename: Declared filename, possibly with directories
        default: Fallback when nothing usable remains

    Returns:
        Basename with unsafe characters replaced by '_'
    """
    if not filename:
        return default
    name = PurePosixPath(filename.replace("\\", "/")).name
    name = _UNSAFE_FILENAME_CHARS.sub("_", name).strip("._")
    return name or default
