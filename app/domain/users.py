"""
User & Session Domain Models

Enums and request/response DTOs for the identity bounded context.
"""

from datetime import datetime
from enum import Enum
from typing import Dict, Optional
from uuid import UUID

from pydantic import BaseModel, ConfigDict, EmailStr, Field


class UserRole(str, Enum):
    """Authorization role."""
    ADMIN = "admin"
    USER = "user"
    MODERATOR = "moderator"


class UserStatus(str, Enum):
    """Account lifecycle status. Only ACTIVE accounts may log in."""
    ACTIVE = "active"
    INACTIVE = "inactive"
    PENDING = "pending"
    SUSPENDED = "suspended"


# =============================================================================
# Request DTOs
# =============================================================================

class RegisterRequest(BaseModel):
    """Request DTO for account registration."""
    email: EmailStr
    password: str = Field(..., min_length=8, max_length=128)
    username: Optional[str] = Field(
        default=None,
        min_length=3,
        max_length=50,
        pattern=r"^[A-Za-z0-9_.-]+$",
    )


class LoginRequest(BaseModel):
    """Request DTO for email/password login."""
    email: EmailStr
    password: str = Field(..., min_length=1, max_length=128)


class RefreshRequest(BaseModel):
    """Request DTO for refresh-token rotation."""
    refresh_token: str = Field(..., min_length=16)


class ChangePasswordRequest(BaseModel):
    """Request DTO for changing the caller's own password."""
    current_password: str = Field(..., min_length=1, max_length=128)
    new_password: str = Field(..., min_length=8, max_length=128)


class UserStatusUpdate(BaseModel):
    """Admin request DTO for activating, deactivating or suspending an account."""
    status: UserStatus
    reason: Optional[str] = Field(default=None, max_length=255)


# =============================================================================
# Response DTOs
# =============================================================================

class UserResponse(BaseModel):
    """Public view of a user account."""
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    email: str
    username: Optional[str] = None
    role: UserRole
    status: UserStatus
    email_verified: bool = False
    last_login_at: Optional[datetime] = None
    created_at: datetime


class TokenResponse(BaseModel):
    """Issued credentials after login or refresh."""
    access_token: str
    refresh_token: str
    token_type: str = "bearer"
    expires_in: int = Field(description="Access token lifetime in seconds")
    session_expires_at: datetime


class AuthResponse(BaseModel):
    """Login response: the user plus a fresh token pair."""
    user: UserResponse
    tokens: TokenResponse


class ChangePasswordResponse(BaseModel):
    message: str = "Password changed"
    sessions_revoked: int = 0


class UserStatsResponse(BaseModel):
    """Account counts for the operator dashboard. Deleted accounts are excluded."""
    total_users: int
    by_status: Dict[str, int]
    new_today: int
    new_this_week: int
    new_this_month: int
