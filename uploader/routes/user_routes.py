"""Caller identity API routes."""

from fastapi import APIRouter, Depends

from uploader.auth import get_current_user
from uploader.schemas.common import UserInfoResponse
from uploader.types import Identity

router = APIRouter(prefix="/api", tags=["Users"])


@router.get("/user-info", response_model=UserInfoResponse)
async def user_info(current_user: Identity = Depends(get_current_user)):
    """
    Return the authenticated caller's identity and role.
    """
    return UserInfoResponse(
        user_id=current_user.user_id,
        email=current_user.email,
        name=current_user.name,
        role=current_user.role,
    )
