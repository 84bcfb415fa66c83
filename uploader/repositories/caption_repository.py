"""Caption repository for database operations."""

from dataclasses import dataclass
from datetime import datetime
from typing import List, Optional

from uploader.database import get_db_connection


@dataclass
class Caption:
    caption_id: str
    video_id: str
    language: str
    language_code: str
    caption_url: str
    storage_key: str
    file_size: Optional[int]
    created_at: datetime
    updated_at: datetime


class CaptionRepository:
    @staticmethod
    def create_caption(caption: Caption) -> Caption:
        with get_db_connection() as conn:
            conn.execute(
                """
                INSERT INTO captions (caption_id, video_id, language, language_code, caption_url,
                                      storage_key, file_size, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    caption.caption_id,
                    caption.video_id,
                    caption.language,
                    caption.language_code,
                    caption.caption_url,
                    caption.storage_key,
                    caption.file_size,
                    caption.created_at.isoformat(),
                    caption.updated_at.isoformat(),
                )
            )
            conn.commit()
        return caption

    @staticmethod
    def get_by_id(caption_id: str) -> Optional[Caption]:
        with get_db_connection() as conn:
            cursor = conn.cursor()
            cursor.execute("SELECT * FROM captions WHERE caption_id = ?", (caption_id,))
            row = cursor.fetchone()

            if row is None:
                return None

            return _row_to_caption(row)

    @staticmethod
    def list_by_video(video_id: str) -> List[Caption]:
        with get_db_connection() as conn:
            cursor = conn.cursor()
            cursor.execute(
                "SELECT * FROM captions WHERE video_id = ? ORDER BY created_at",
                (video_id,)
            )
            return [_row_to_caption(row) for row in cursor.fetchall()]


def _row_to_caption(row) -> Caption:
    return Caption(
        caption_id=row["caption_id"],
        video_id=row["video_id"],
        language=row["language"],
        language_code=row["language_code"],
        caption_url=row["caption_url"],
        storage_key=row["storage_key"],
        file_size=row["file_size"],
        created_at=datetime.fromisoformat(row["created_at"]),
        updated_at=datetime.fromisoformat(row["updated_at"]),
    )
