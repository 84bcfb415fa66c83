"""Common schemas used across multiple endpoints."""

from typing import List, Optional

from pydantic import BaseModel


class ErrorResponse(BaseModel):
    """Response model for errors."""
    detail: str
    code: str


class SecurityErrorResponse(ErrorResponse):
    """Response model for uploads rejected by content inspection."""
    errors: List[str]
    warnings: List[str]


class UserInfoResponse(BaseModel):
    """Response model for the authenticated caller."""
    user_id: str
    email: Optional[str] = None
    name: Optional[str] = None
    role: str
