"""Entry point for the video upload service."""

import time
import uuid
from pathlib import Path

import uvicorn
from fastapi import FastAPI, Request, status
from fastapi.responses import JSONResponse

from common.logging_config import setup_logging
from uploader import config
from uploader.chunking.assembler import ChunkAssembler
from uploader.chunking.chunk_storage import ChunkStorage
from uploader.cleanup_task import StagingCleaner
from uploader.database import get_db_connection, init_database
from uploader.exceptions import (
    ClientInputError,
    IngestException,
    InfrastructureFailure,
    InsufficientRoleError,
    InvalidTokenError,
    MetadataCommitError,
    MissingFileError,
    SecurityRejectedError,
    StorageFailureError,
    UnauthorizedAccessError,
    UploadSessionClosedError,
    VideoNotFoundError,
)
from uploader.routes.object_routes import router as object_router
from uploader.routes.user_routes import router as user_router
from uploader.routes.video_routes import router as video_router
from uploader.security.inspector import ContentInspector
from uploader.security.scanners import build_scanner_chain
from uploader.service_locator import (
    get_storage_gateway,
    set_chunk_assembler,
    set_ingestion_service,
    set_storage_gateway,
    set_video_service,
)
from uploader.services.ingestion_service import IngestionService
from uploader.services.video_service import VideoService
from uploader.storage import OrphanedObjectLog, StorageGateway, build_object_store

logger = setup_logging('uploader')

app = FastAPI(
    title="Video Upload Service",
    description="Upload ingestion, content inspection and video metadata API",
    version="1.0.0"
)

staging_cleaner = None
storage_gateway = None


@app.middleware("http")
async def log_requests(request: Request, call_next):
    """
    Middleware to log all HTTP requests and responses.
    """
    request_id = str(uuid.uuid4())
    request.state.request_id = request_id

    start_time = time.time()

    logger.info(
        f"Request started: {request.method} {request.url.path} [request_id={request_id}]"
    )

    response = await call_next(request)

    duration = time.time() - start_time

    logger.info(
        f"Request completed: {request.method} {request.url.path} "
        f"status={response.status_code} duration={duration:.3f}s [request_id={request_id}]"
    )

    response.headers["X-Request-ID"] = request_id

    return response


@app.on_event("startup")
async def startup_event():
    """
    Initialize database, wire services and start background tasks.
    """
    global staging_cleaner, storage_gateway

    logger.info("Upload service starting up...")

    init_database()
    logger.info("Database initialized")

    chunk_storage = ChunkStorage(Path(config.STAGING_DIR))
    chunk_storage.ensure_directories()
    assembler = ChunkAssembler(chunk_storage, max_chunk_bytes=config.MAX_CHUNK_BYTES)

    scanners = build_scanner_chain(
        config.SCAN_BACKENDS,
        virustotal_api_key=config.VIRUSTOTAL_API_KEY,
        virustotal_base_url=config.VIRUSTOTAL_BASE_URL,
        clamav_host=config.CLAMAV_HOST,
        clamav_port=config.CLAMAV_PORT,
        timeout=config.SCAN_TIMEOUT_SECONDS,
    )
    inspector = ContentInspector(
        allowed_mime_types=config.ALLOWED_VIDEO_MIME_TYPES,
        scanners=scanners,
        max_size_bytes=config.MAX_UPLOAD_BYTES,
        scan_timeout=config.SCAN_TIMEOUT_SECONDS,
    )
    logger.info(f"Content inspector ready with scan chain {[s.name for s in scanners]}")

    store = build_object_store(
        config.STORAGE_BACKEND,
        local_path=config.LOCAL_OBJECT_STORE_PATH,
        public_base_url=config.PUBLIC_BASE_URL,
        signing_secret=config.URL_SIGNING_SECRET,
        s3_bucket=config.S3_BUCKET,
        s3_region=config.S3_REGION,
        s3_endpoint_url=config.S3_ENDPOINT_URL,
    )
    orphan_log = OrphanedObjectLog(Path(config.ORPHANED_OBJECTS_LOG_PATH))
    gateway = StorageGateway(
        store,
        collection=config.STORAGE_COLLECTION,
        timeout=config.STORAGE_TIMEOUT_SECONDS,
        signed_url_ttl_minutes=config.SIGNED_URL_TTL_MINUTES,
        orphan_log=orphan_log,
    )
    storage_gateway = gateway
    logger.info(f"Object store: {store.name} (collection={config.STORAGE_COLLECTION})")

    ingestion_service = IngestionService(
        inspector=inspector,
        assembler=assembler,
        gateway=gateway,
        orphan_log=orphan_log,
        staging_dir=Path(config.STAGING_DIR),
        allowed_video_types=config.ALLOWED_VIDEO_MIME_TYPES,
        allowed_thumbnail_types=config.ALLOWED_THUMBNAIL_MIME_TYPES,
        allowed_caption_types=config.ALLOWED_CAPTION_MIME_TYPES,
        embed_base_url=config.EMBED_BASE_URL,
        metadata_timeout=config.METADATA_TIMEOUT_SECONDS,
    )

    set_chunk_assembler(assembler)
    set_storage_gateway(gateway)
    set_ingestion_service(ingestion_service)
    set_video_service(VideoService(gateway, metadata_timeout=config.METADATA_TIMEOUT_SECONDS))

    if config.AUTH_DISABLED:
        logger.warning("AUTH_DISABLED is set: every request runs as the development identity")

    staging_cleaner = StagingCleaner(
        assembler=assembler,
        gateway=gateway,
        orphan_log=orphan_log,
        requests_dir=ingestion_service.requests_dir,
        retention_seconds=config.SESSION_RETENTION_SECONDS,
        interval_seconds=config.CLEANUP_INTERVAL_SECONDS,
    )
    await staging_cleaner.start()
    logger.info("Background cleanup task started")


@app.on_event("shutdown")
async def shutdown_event():
    """
    Cleanup resources on application shutdown.
    """
    logger.info("Upload service shutting down...")

    if staging_cleaner:
        await staging_cleaner.stop()
        logger.info("Cleanup task stopped")

    if storage_gateway:
        await storage_gateway.drain()


@app.exception_handler(MissingFileError)
async def missing_file_handler(request: Request, exc: MissingFileError):
    request_id = getattr(request.state, 'request_id', 'unknown')
    logger.warning(
        f"Missing file error: {exc} [request_id={request_id}] path={request.url.path}"
    )
    return JSONResponse(
        status_code=status.HTTP_400_BAD_REQUEST,
        content={"detail": str(exc), "code": "MISSING_FILE"}
    )


@app.exception_handler(ClientInputError)
async def client_input_handler(request: Request, exc: ClientInputError):
    request_id = getattr(request.state, 'request_id', 'unknown')
    logger.warning(
        f"Invalid input error: {exc} [request_id={request_id}] path={request.url.path}"
    )
    return JSONResponse(
        status_code=status.HTTP_400_BAD_REQUEST,
        content={"detail": str(exc), "code": "INVALID_INPUT"}
    )


@app.exception_handler(SecurityRejectedError)
async def security_rejected_handler(request: Request, exc: SecurityRejectedError):
    request_id = getattr(request.state, 'request_id', 'unknown')
    logger.warning(
        f"Security validation failed: {exc} errors={exc.errors} [request_id={request_id}] path={request.url.path}"
    )
    return JSONResponse(
        status_code=status.HTTP_400_BAD_REQUEST,
        content={
            "detail": str(exc),
            "code": "SECURITY_VALIDATION_FAILED",
            "errors": exc.errors,
            "warnings": exc.warnings,
        }
    )


@app.exception_handler(InvalidTokenError)
async def invalid_token_handler(request: Request, exc: InvalidTokenError):
    request_id = getattr(request.state, 'request_id', 'unknown')
    logger.warning(
        f"Invalid token error: {exc} [request_id={request_id}] path={request.url.path}"
    )
    return JSONResponse(
        status_code=status.HTTP_401_UNAUTHORIZED,
        content={"detail": str(exc), "code": "INVALID_TOKEN"}
    )


@app.exception_handler(UnauthorizedAccessError)
async def unauthorized_access_handler(request: Request, exc: UnauthorizedAccessError):
    request_id = getattr(request.state, 'request_id', 'unknown')
    logger.warning(
        f"Unauthorized access error: {exc} [request_id={request_id}] path={request.url.path}"
    )
    return JSONResponse(
        status_code=status.HTTP_403_FORBIDDEN,
        content={"detail": str(exc), "code": "UNAUTHORIZED_ACCESS"}
    )


@app.exception_handler(InsufficientRoleError)
async def insufficient_role_handler(request: Request, exc: InsufficientRoleError):
    request_id = getattr(request.state, 'request_id', 'unknown')
    logger.warning(
        f"Insufficient role error: {exc} [request_id={request_id}] path={request.url.path}"
    )
    return JSONResponse(
        status_code=status.HTTP_403_FORBIDDEN,
        content={"detail": str(exc), "code": "INSUFFICIENT_ROLE"}
    )


@app.exception_handler(VideoNotFoundError)
async def video_not_found_handler(request: Request, exc: VideoNotFoundError):
    request_id = getattr(request.state, 'request_id', 'unknown')
    logger.warning(
        f"Video not found error: {exc} [request_id={request_id}] path={request.url.path}"
    )
    return JSONResponse(
        status_code=status.HTTP_404_NOT_FOUND,
        content={"detail": str(exc), "code": "VIDEO_NOT_FOUND"}
    )


@app.exception_handler(UploadSessionClosedError)
async def upload_session_closed_handler(request: Request, exc: UploadSessionClosedError):
    request_id = getattr(request.state, 'request_id', 'unknown')
    logger.warning(
        f"Upload session closed error: {exc} [request_id={request_id}] path={request.url.path}"
    )
    return JSONResponse(
        status_code=status.HTTP_409_CONFLICT,
        content={"detail": str(exc), "code": "UPLOAD_SESSION_CLOSED"}
    )


@app.exception_handler(StorageFailureError)
async def storage_failure_handler(request: Request, exc: StorageFailureError):
    request_id = getattr(request.state, 'request_id', 'unknown')
    logger.error(
        f"Storage failure: {exc} [request_id={request_id}] path={request.url.path}",
        exc_info=exc
    )
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={"detail": "Failed to store uploaded file", "code": "STORAGE_FAILURE"}
    )


@app.exception_handler(MetadataCommitError)
async def metadata_commit_handler(request: Request, exc: MetadataCommitError):
    request_id = getattr(request.state, 'request_id', 'unknown')
    logger.error(
        f"Metadata commit failure: {exc} [request_id={request_id}] path={request.url.path}",
        exc_info=exc
    )
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={"detail": "Failed to save video metadata", "code": "METADATA_COMMIT_FAILED"}
    )


@app.exception_handler(InfrastructureFailure)
async def infrastructure_failure_handler(request: Request, exc: InfrastructureFailure):
    request_id = getattr(request.state, 'request_id', 'unknown')
    logger.error(
        f"Infrastructure failure: {exc} [request_id={request_id}] path={request.url.path}",
        exc_info=exc
    )
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={"detail": "Internal server error", "code": "INTERNAL_ERROR"}
    )


@app.exception_handler(IngestException)
async def ingest_exception_handler(request: Request, exc: IngestException):
    request_id = getattr(request.state, 'request_id', 'unknown')
    logger.error(
        f"Upload service exception: {exc} [request_id={request_id}] path={request.url.path}",
        exc_info=exc
    )
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={"detail": "Internal server error", "code": "INTERNAL_ERROR"}
    )


app.include_router(video_router)
app.include_router(user_router)
app.include_router(object_router)


@app.get("/")
async def root():
    """
    Root endpoint for health check.
    """
    return {"message": "Video Upload Service API", "status": "running"}


@app.get("/health")
async def health_check():
    """
    Health check endpoint for Docker healthcheck.
    Returns 200 if service is alive.
    """
    return {"status": "healthy", "service": "uploader"}


@app.get("/ready")
async def ready_check():
    """
    Readiness check endpoint.
    Verifies database and object store connectivity.
    """
    try:
        with get_db_connection() as conn:
            conn.execute("SELECT 1")
        db_status = "ok"
    except Exception as e:
        db_status = f"error: {str(e)}"

    try:
        await get_storage_gateway().check()
        storage_status = "ok"
    except Exception as e:
        storage_status = f"error: {str(e)}"

    ready = db_status == "ok" and storage_status == "ok"
    status_code = status.HTTP_200_OK if ready else status.HTTP_503_SERVICE_UNAVAILABLE

    return JSONResponse(
        status_code=status_code,
        content={
            "ready": ready,
            "database": db_status,
            "storage": storage_status
        }
    )


def main() -> None:
    """
    Start the FastAPI server with uvicorn.
    """
    uvicorn.run(
        "uploader.main:app",
        host=config.UPLOADER_HOST,
        port=config.UPLOADER_PORT,
    )


if __name__ == "__main__":
    main()
