"""Video repository for database operations."""

import sqlite3
from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, List, Optional

from common.logging_config import get_logger
from uploader.database import get_db_connection
from uploader.utils import utcnow

logger = get_logger(__name__)

STATUS_PENDING = "pending"

_VIDEO_COLUMNS = """
    video_id, owner_id, title, description, video_url, thumbnail_url,
    storage_key, thumbnail_key, folder_path, file_size, content_type, duration,
    is_public, is_downloaded, is_deleted, deleted_at, view_count,
    embedded_link, transcoding_status, created_at, updated_at
"""


@dataclass
class Video:
    video_id: str
    owner_id: str
    title: str
    video_url: str
    storage_key: str
    folder_path: str
    file_size: int
    created_at: datetime
    updated_at: datetime
    description: Optional[str] = None
    tags: List[str] = field(default_factory=list)
    thumbnail_url: Optional[str] = None
    thumbnail_key: Optional[str] = None
    content_type: Optional[str] = None
    duration: Optional[int] = None
    is_public: bool = False
    is_downloaded: bool = False
    is_deleted: bool = False
    deleted_at: Optional[datetime] = None
    view_count: int = 0
    embedded_link: Optional[str] = None
    transcoding_status: str = STATUS_PENDING


def _row_to_video(row: sqlite3.Row, tags: List[str]) -> Video:
    return Video(
        video_id=row["video_id"],
        owner_id=row["owner_id"],
        title=row["title"],
        description=row["description"],
        tags=tags,
        video_url=row["video_url"],
        thumbnail_url=row["thumbnail_url"],
        storage_key=row["storage_key"],
        thumbnail_key=row["thumbnail_key"],
        folder_path=row["folder_path"],
        file_size=row["file_size"],
        content_type=row["content_type"],
        duration=row["duration"],
        is_public=bool(row["is_public"]),
        is_downloaded=bool(row["is_downloaded"]),
        is_deleted=bool(row["is_deleted"]),
        deleted_at=datetime.fromisoformat(row["deleted_at"]) if row["deleted_at"] else None,
        view_count=row["view_count"],
        embedded_link=row["embedded_link"],
        transcoding_status=row["transcoding_status"],
        created_at=datetime.fromisoformat(row["created_at"]),
        updated_at=datetime.fromisoformat(row["updated_at"]),
    )


def _load_tags(cursor: sqlite3.Cursor, video_ids: List[str]) -> Dict[str, List[str]]:
    tags: Dict[str, List[str]] = {video_id: [] for video_id in video_ids}
    if not video_ids:
        return tags

    placeholders = ','.join('?' for _ in video_ids)
    cursor.execute(
        f"SELECT video_id, tag FROM video_tags WHERE video_id IN ({placeholders}) ORDER BY rowid",
        video_ids
    )
    for row in cursor.fetchall():
        tags[row["video_id"]].append(row["tag"])
    return tags


class VideoRepository:
    @staticmethod
    def create_video(video: Video, conn=None) -> Video:
        """
        Insert a video and its tags in one transaction.
        """
        should_close = conn is None
        if conn is None:
            conn = get_db_connection().__enter__()

        try:
            cursor = conn.cursor()
            cursor.execute(
                f"""
                INSERT INTO videos ({_VIDEO_COLUMNS})
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    video.video_id,
                    video.owner_id,
                    video.title,
                    video.description,
                    video.video_url,
                    video.thumbnail_url,
                    video.storage_key,
                    video.thumbnail_key,
                    video.folder_path,
                    video.file_size,
                    video.content_type,
                    video.duration,
                    int(video.is_public),
                    int(video.is_downloaded),
                    int(video.is_deleted),
                    video.deleted_at.isoformat() if video.deleted_at else None,
                    video.view_count,
                    video.embedded_link,
                    video.transcoding_status,
                    video.created_at.isoformat(),
                    video.updated_at.isoformat(),
                )
            )
            cursor.executemany(
                "INSERT OR IGNORE INTO video_tags (video_id, tag) VALUES (?, ?)",
                [(video.video_id, tag) for tag in video.tags]
            )

            if should_close:
                conn.commit()
            logger.info(f"Video record created [video_id={video.video_id}] [owner_id={video.owner_id}]")
            return video
        except Exception:
            if should_close:
                conn.rollback()
            raise
        finally:
            if should_close:
                conn.close()

    @staticmethod
    def get_by_id(video_id: str, include_deleted: bool = False) -> Optional[Video]:
        with get_db_connection() as conn:
            cursor = conn.cursor()
            query = f"SELECT {_VIDEO_COLUMNS} FROM videos WHERE video_id = ?"
            if not include_deleted:
                query += " AND is_deleted = 0"
            cursor.execute(query, (video_id,))
            row = cursor.fetchone()

            if row is None:
                return None

            tags = _load_tags(cursor, [video_id])
            return _row_to_video(row, tags[video_id])

    @staticmethod
    def list_by_owner(owner_id: str, limit: int = 20, offset: int = 0) -> List[Video]:
        with get_db_connection() as conn:
            cursor = conn.cursor()
            cursor.execute(
                f"""
                SELECT {_VIDEO_COLUMNS} FROM videos
                WHERE owner_id = ? AND is_deleted = 0
                ORDER BY created_at DESC
                LIMIT ? OFFSET ?
                """,
                (owner_id, limit, offset)
            )
            rows = cursor.fetchall()
            tags = _load_tags(cursor, [row["video_id"] for row in rows])
            return [_row_to_video(row, tags[row["video_id"]]) for row in rows]

    @staticmethod
    def list_public(limit: int = 20, offset: int = 0) -> List[Video]:
        with get_db_connection() as conn:
            cursor = conn.cursor()
            cursor.execute(
                f"""
                SELECT {_VIDEO_COLUMNS} FROM videos
                WHERE is_public = 1 AND is_deleted = 0
                ORDER BY created_at DESC
                LIMIT ? OFFSET ?
                """,
                (limit, offset)
            )
            rows = cursor.fetchall()
            tags = _load_tags(cursor, [row["video_id"] for row in rows])
            return [_row_to_video(row, tags[row["video_id"]]) for row in rows]

    @staticmethod
    def set_public(video_id: str, is_public: bool) -> None:
        with get_db_connection() as conn:
            conn.execute(
                "UPDATE videos SET is_public = ?, updated_at = ? WHERE video_id = ?",
                (int(is_public), utcnow().isoformat(), video_id)
            )
            conn.commit()

    @staticmethod
    def set_downloaded(video_id: str, is_downloaded: bool = True) -> None:
        with get_db_connection() as conn:
            conn.execute(
                "UPDATE videos SET is_downloaded = ?, updated_at = ? WHERE video_id = ?",
                (int(is_downloaded), utcnow().isoformat(), video_id)
            )
            conn.commit()

    @staticmethod
    def increment_view_count(video_id: str) -> int:
        with get_db_connection() as conn:
            cursor = conn.cursor()
            cursor.execute(
                "UPDATE videos SET view_count = view_count + 1 WHERE video_id = ?",
                (video_id,)
            )
            cursor.execute("SELECT view_count FROM videos WHERE video_id = ?", (video_id,))
            row = cursor.fetchone()
            conn.commit()
            return row["view_count"] if row else 0

    @staticmethod
    def soft_delete(video_id: str) -> None:
        """
        Soft delete a video by setting is_deleted=1.
        """
        logger.debug(f"Soft deleting video [video_id={video_id}]")
        now = utcnow().isoformat()
        with get_db_connection() as conn:
            conn.execute(
                "UPDATE videos SET is_deleted = 1, deleted_at = ?, updated_at = ? WHERE video_id = ?",
                (now, now, video_id)
            )
            conn.commit()
        logger.info(f"Video soft deleted [video_id={video_id}]")

    @staticmethod
    def delete_permanently(video_id: str) -> None:
        """
        Remove a video row together with its tags and captions.
        """
        with get_db_connection() as conn:
            try:
                cursor = conn.cursor()
                cursor.execute("DELETE FROM captions WHERE video_id = ?", (video_id,))
                cursor.execute("DELETE FROM video_tags WHERE video_id = ?", (video_id,))
                cursor.execute("DELETE FROM videos WHERE video_id = ?", (video_id,))
                conn.commit()
            except Exception as e:
                conn.rollback()
                logger.error(f"Failed to delete video [video_id={video_id}]: {e}", exc_info=True)
                raise
        logger.info(f"Video permanently deleted [video_id={video_id}]")
