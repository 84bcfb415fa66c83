"""API routes package."""

from uploader.routes.object_routes import router as object_router
from uploader.routes.user_routes import router as user_router
from uploader.routes.video_routes import router as video_router

__all__ = ["object_router", "user_router", "video_router"]
