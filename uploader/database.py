"""Database schema and connection management for SQLite."""

import sqlite3
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Dict, Generator, Optional

from uploader.config import DATABASE_PATH


def init_database() -> None:
    """
    Initialize database and create tables if they don't exist.
    """
    db_path = Path(DATABASE_PATH)
    db_path.parent.mkdir(parents=True, exist_ok=True)

    with get_db_connection() as conn:
        cursor = conn.cursor()

        cursor.execute("""
            CREATE TABLE IF NOT EXISTS videos (
                video_id TEXT PRIMARY KEY,
                owner_id TEXT NOT NULL,
                title TEXT NOT NULL,
                description TEXT,
                video_url TEXT NOT NULL,
                thumbnail_url TEXT,
                storage_key TEXT NOT NULL,
                thumbnail_key TEXT,
                folder_path TEXT NOT NULL,
                file_size INTEGER NOT NULL,
                content_type TEXT,
                duration INTEGER,
                is_public INTEGER NOT NULL DEFAULT 0,
                is_downloaded INTEGER NOT NULL DEFAULT 0,
                is_deleted INTEGER NOT NULL DEFAULT 0,
                deleted_at TEXT,
                view_count INTEGER NOT NULL DEFAULT 0,
                embedded_link TEXT,
                transcoding_status TEXT NOT NULL DEFAULT 'pending',
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL
            )
        """)

        cursor.execute("""
            CREATE TABLE IF NOT EXISTS video_tags (
                video_id TEXT NOT NULL,
                tag TEXT NOT NULL,
                PRIMARY KEY(video_id, tag),
                FOREIGN KEY(video_id) REFERENCES videos(video_id) ON DELETE CASCADE
            )
        """)

        cursor.execute("""
            CREATE TABLE IF NOT EXISTS captions (
                caption_id TEXT PRIMARY KEY,
                video_id TEXT NOT NULL,
                language TEXT NOT NULL,
                language_code TEXT NOT NULL,
                caption_url TEXT NOT NULL,
                storage_key TEXT NOT NULL,
                file_size INTEGER,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL,
                FOREIGN KEY(video_id) REFERENCES videos(video_id) ON DELETE CASCADE
            )
        """)

        cursor.execute("""
            CREATE INDEX IF NOT EXISTS idx_videos_owner ON videos(owner_id, is_deleted)
        """)

        cursor.execute("""
            CREATE INDEX IF NOT EXISTS idx_videos_public ON videos(is_public, is_deleted, created_at)
        """)

        cursor.execute("""
            CREATE INDEX IF NOT EXISTS idx_captions_video ON captions(video_id)
        """)

        conn.commit()


@contextmanager
def get_db_connection() -> Generator[sqlite3.Connection, None, None]:
    """
    Context manager for database connections.
    """
    conn = sqlite3.connect(DATABASE_PATH)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA foreign_keys = ON")
    try:
        yield conn
    finally:
        conn.close()


def row_to_dict(row: Optional[sqlite3.Row]) -> Optional[Dict[str, Any]]:
    if row is None:
        return None
    return {key: row[key] for key in row.keys()}
