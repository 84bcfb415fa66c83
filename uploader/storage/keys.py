"""Object key layout: <collection>/<owner_id>/<asset_id>/<role>/<filename>."""

from typing import Optional

from uploader.utils import safe_filename

ROLE_VIDEO = "video"
ROLE_THUMBNAIL = "thumbnail"
ROLE_CAPTION = "caption"


def asset_folder(collection: str, owner_id: str, asset_id: str) -> str:
    """
    Folder prefix holding every object of one asset.

    Returns:
        Prefix with a trailing slash
    """
    return f"{collection.strip('/')}/{_segment(owner_id)}/{_segment(asset_id)}/"


def role_path(role: str, language: Optional[str] = None) -> str:
    if role == ROLE_CAPTION:
        if not language:
            raise ValueError("Caption objects require a language")
        return f"{ROLE_CAPTION}/{_segment(language)}"
    if role not in (ROLE_VIDEO, ROLE_THUMBNAIL):
        raise ValueError(f"Unknown asset role: {role}")
    return role


def object_key(
    collection: str,
    owner_id: str,
    asset_id: str,
    role: str,
    filename: str,
    language: Optional[str] = None,
) -> str:
    """
    Build the deterministic key for one asset file.

    Args:
        collection: Top-level collection (e.g. "videos")
        owner_id: Owning user id
        asset_id: Video id the file belongs to
        role: video, thumbnail or caption
        filename: Declared filename, reduced to a safe basename
        language: Caption language (caption role only)

    Returns:
        Object key string
    """
    return (
        f"{asset_folder(collection, owner_id, asset_id)}"
        f"{role_path(role, language)}/{safe_filename(filename)}"
    )


def _segment(value: str) -> str:
    value = str(value)
    if not value or "/" in value or value in (".", ".."):
        raise ValueError(f"Invalid key segment: {value!r}")
    return value
