"""Configuration settings for the upload service."""

import os
from typing import List

from common.constants import (
    CLAMAV_DEFAULT_PORT,
    DEFAULT_DATABASE_PATH,
    DEFAULT_OBJECT_STORE_PATH,
    DEFAULT_STAGING_DIR,
    DEFAULT_STORAGE_COLLECTION,
    MAX_CHUNK_SIZE_BYTES,
    MAX_UPLOAD_SIZE_BYTES,
)


def _csv(value: str) -> List[str]:
    return [item.strip() for item in value.split(",") if item.strip()]


def _flag(value: str) -> bool:
    return value.strip().lower() in ("1", "true", "yes", "on")


UPLOADER_HOST = os.environ.get("UPLOADER_HOST", "0.0.0.0")

UPLOADER_PORT = int(os.environ.get("UPLOADER_PORT", "5000"))

DATABASE_PATH = os.environ.get("UPLOADER_DATABASE_PATH", DEFAULT_DATABASE_PATH)

STAGING_DIR = os.environ.get("UPLOADER_STAGING_DIR", DEFAULT_STAGING_DIR)

MAX_UPLOAD_BYTES = int(os.environ.get("MAX_UPLOAD_BYTES", str(MAX_UPLOAD_SIZE_BYTES)))

MAX_CHUNK_BYTES = int(os.environ.get("MAX_CHUNK_BYTES", str(MAX_CHUNK_SIZE_BYTES)))

ALLOWED_VIDEO_MIME_TYPES = _csv(os.environ.get(
    "ALLOWED_VIDEO_MIME_TYPES",
    "video/mp4,video/mpeg,video/quicktime,video/x-msvideo,"
    "video/x-flv,video/x-matroska,video/webm,video/ogg",
))

ALLOWED_THUMBNAIL_MIME_TYPES = _csv(os.environ.get(
    "ALLOWED_THUMBNAIL_MIME_TYPES", "image/jpeg,image/png,image/webp"
))

ALLOWED_CAPTION_MIME_TYPES = _csv(os.environ.get(
    "ALLOWED_CAPTION_MIME_TYPES", "text/vtt,application/x-subrip,text/plain"
))

SCAN_BACKENDS = _csv(os.environ.get(
    "SCAN_BACKENDS", "hash_reputation,upload_and_scan,local_daemon,heuristic"
))

VIRUSTOTAL_API_KEY = os.environ.get("VIRUSTOTAL_API_KEY")

VIRUSTOTAL_BASE_URL = os.environ.get("VIRUSTOTAL_BASE_URL", "https://www.virustotal.com/api/v3")

CLAMAV_HOST = os.environ.get("CLAMAV_HOST")

CLAMAV_PORT = int(os.environ.get("CLAMAV_PORT", str(CLAMAV_DEFAULT_PORT)))

SCAN_TIMEOUT_SECONDS = float(os.environ.get("SCAN_TIMEOUT_SECONDS", "30"))

STORAGE_BACKEND = os.environ.get("STORAGE_BACKEND", "local").lower()

STORAGE_COLLECTION = os.environ.get("STORAGE_COLLECTION", DEFAULT_STORAGE_COLLECTION)

LOCAL_OBJECT_STORE_PATH = os.environ.get("LOCAL_OBJECT_STORE_PATH", DEFAULT_OBJECT_STORE_PATH)

PUBLIC_BASE_URL = os.environ.get("PUBLIC_BASE_URL", f"http://localhost:{UPLOADER_PORT}").rstrip("/")

S3_BUCKET = os.environ.get("S3_BUCKET")

S3_REGION = os.environ.get("S3_REGION")

S3_ENDPOINT_URL = os.environ.get("S3_ENDPOINT_URL")

STORAGE_TIMEOUT_SECONDS = float(os.environ.get("STORAGE_TIMEOUT_SECONDS", "300"))

METADATA_TIMEOUT_SECONDS = float(os.environ.get("METADATA_TIMEOUT_SECONDS", "30"))

SIGNED_URL_TTL_MINUTES = int(os.environ.get("SIGNED_URL_TTL_MINUTES", "60"))

URL_SIGNING_SECRET = os.environ.get("URL_SIGNING_SECRET", "development-only-url-signing-secret-change-me")

AUTH_DISABLED = _flag(os.environ.get("AUTH_DISABLED", "false"))

AUTH_JWKS_URL = os.environ.get("AUTH_JWKS_URL", "https://www.googleapis.com/oauth2/v3/certs")

AUTH_AUDIENCE = os.environ.get("AUTH_AUDIENCE")

AUTH_ISSUER = os.environ.get("AUTH_ISSUER")

AUTH_KEYS_TTL_SECONDS = int(os.environ.get("AUTH_KEYS_TTL_SECONDS", "3600"))

SESSION_RETENTION_SECONDS = int(os.environ.get("SESSION_RETENTION_SECONDS", str(24 * 3600)))

CLEANUP_INTERVAL_SECONDS = int(os.environ.get("CLEANUP_INTERVAL_SECONDS", "3600"))

ORPHANED_OBJECTS_LOG_PATH = os.environ.get("ORPHANED_OBJECTS_LOG_PATH", "./data/orphaned_objects.json")

EMBED_BASE_URL = os.environ.get("EMBED_BASE_URL", f"{PUBLIC_BASE_URL}/embed").rstrip("/")

SUPERADMIN_EMAILS = _csv(os.environ.get("SUPERADMIN_EMAILS", ""))

ADMIN_EMAILS = _csv(os.environ.get("ADMIN_EMAILS", ""))
