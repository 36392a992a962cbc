"""
Auth API Routes

Registration, login, token refresh, password change and logout.
"""

import logging
from typing import Optional

from fastapi import APIRouter, Depends, Request, status

from app.api.dependencies import CurrentSession, CurrentUserId, get_session_token
from app.domain.users import (
    AuthResponse,
    ChangePasswordRequest,
    ChangePasswordResponse,
    LoginRequest,
    RefreshRequest,
    RegisterRequest,
    TokenResponse,
    UserResponse,
)
from app.infrastructure.db.dependencies import SessionServiceDep, UserServiceDep


logger = logging.getLogger(__name__)

router = APIRouter()


def _client_info(request: Request) -> dict:
    return {
        "ip_address": request.client.host if request.client else None,
        "user_agent": request.headers.get("user-agent"),
    }


@router.post("/auth/register", response_model=AuthResponse, status_code=status.HTTP_201_CREATED)
async def register(
    payload: RegisterRequest,
    request: Request,
    users: UserServiceDep,
    sessions: SessionServiceDep,
):
    """Create an account and log it in."""
    user = await users.register(payload.email, payload.password, payload.username)
    issued = await sessions.create_session(user.id, **_client_info(request))
    return AuthResponse(user=UserResponse.model_validate(user), tokens=issued.to_response())


@router.post("/auth/login", response_model=AuthResponse)
async def login(
    payload: LoginRequest,
    request: Request,
    users: UserServiceDep,
    sessions: SessionServiceDep,
):
    user = await users.authenticate(payload.email, payload.password)
    issued = await sessions.create_session(user.id, **_client_info(request))
    return AuthResponse(user=UserResponse.model_validate(user), tokens=issued.to_response())


@router.post("/auth/refresh", response_model=TokenResponse)
async def refresh(payload: RefreshRequest, sessions: SessionServiceDep):
    """Rotate the refresh token and mint a new access token."""
    issued = await sessions.refresh(payload.refresh_token)
    return issued.to_response()


@router.post("/auth/logout", status_code=status.HTTP_204_NO_CONTENT)
async def logout(
    sessions: SessionServiceDep,
    user_id: CurrentUserId,
    session_token: Optional[str] = Depends(get_session_token),
):
    if session_token:
        await sessions.logout(session_token)


@router.post("/auth/logout-all")
async def logout_all(user_id: CurrentUserId, sessions: SessionServiceDep):
    """Revoke every session of the caller."""
    revoked = await sessions.revoke_all(user_id)
    return {"revoked": revoked}


@router.get("/auth/me", response_model=UserResponse)
async def me(user_id: CurrentUserId, users: UserServiceDep):
    return await users.get_user(user_id)


@router.patch("/auth/change-password", response_model=ChangePasswordResponse)
async def change_password(
    payload: ChangePasswordRequest,
    current_session: CurrentSession,
    users: UserServiceDep,
):
    """Change the caller's password. Other sessions are logged out; this one stays valid."""
    revoked = await users.change_password(
        current_session.user_id,
        payload.current_password,
        payload.new_password,
        keep_session_id=current_session.id,
    )
    return ChangePasswordResponse(sessions_revoked=revoked)
