"""Project-wide constants (size limits, stream piece sizes, default paths)."""

MAX_UPLOAD_SIZE_BYTES: int = 500 * 1024 * 1024  # 500 MiB per staged file
MAX_CHUNK_SIZE_BYTES: int = 64 * 1024 * 1024  # 64 MiB per chunk upload

STREAM_PIECE_SIZE_BYTES: int = 1024 * 1024
SIGNATURE_PREFIX_BYTES: int = 512
HEURISTIC_PREFIX_BYTES: int = 1024

DEFAULT_STAGING_DIR: str = "./data/staging"
DEFAULT_OBJECT_STORE_PATH: str = "./data/objects"
DEFAULT_DATABASE_PATH: str = "./data/metadata.db"
DEFAULT_STORAGE_COLLECTION: str = "videos"

CLAMAV_DEFAULT_PORT: int = 3310
