"""
api/routes/v1/auth.py -- Registration, login, and self-service session endpoints.

Routes:
  POST  /api/v1/auth/register   -- create an account (public, rate-limited)
  POST  /api/v1/auth/login      -- password login; sets session cookie (public, rate-limited)
  POST  /api/v1/auth/logout     -- end this session, or another by token_id
  GET   /api/v1/auth/me         -- current user info
  PATCH /api/v1/auth/me         -- change display name / email
  GET   /api/v1/auth/sessions   -- the caller's active sessions

Security:
  register and login are rate-limited per client address (moving window).
  Login failures carry one message for unknown user and wrong password.
  Cache-Control: no-store on login responses.
  Logging out someone else's session requires the "admin" tag (checked in
  SessionManager.logout).
"""

from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse

from api.limiter import limiter
from api.models import (
    LoginRequest,
    LoginResponse,
    LogoutRequest,
    MessageResponse,
    ProfilePatch,
    RegisterRequest,
    RegisterResponse,
    SessionResponse,
    UserResponse,
)
from auth.accounts import AccountManager
from auth.dependencies import get_current_user
from auth.models import User
from auth.sessions import SessionManager
from auth.tokens import clear_session_cookie, set_session_cookie
from core.config import get_settings
from core.errors import ValidationError

_cfg = get_settings()

# Auth policy:
# - POST  /api/v1/auth/register:  public, rate-limited
# - POST  /api/v1/auth/login:     public, rate-limited
# - POST  /api/v1/auth/logout:    requires auth (get_current_user)
# - GET   /api/v1/auth/me:        requires auth
# - PATCH /api/v1/auth/me:        requires auth
# - GET   /api/v1/auth/sessions:  requires auth
router = APIRouter()


# ---------------------------------------------------------------------------
# Public endpoints
# ---------------------------------------------------------------------------


@router.post("/auth/register", response_model=RegisterResponse, status_code=201)
@limiter.limit(_cfg.register_rate_limit)
def register(request: Request, body: RegisterRequest) -> RegisterResponse:
    """Create an account. Blocked usernames and duplicates are rejected with 400."""
    accounts: AccountManager = request.app.state.accounts
    user = accounts.register(
        body.username,
        body.password,
        email=body.email,
        display_name=body.display_name,
    )
    return RegisterResponse(message="Created user account successfully!", user=UserResponse.from_user(user))


@router.post("/auth/login", response_model=LoginResponse)
@limiter.limit(_cfg.login_rate_limit)
def login(request: Request, body: LoginRequest) -> JSONResponse:
    """Authenticate with username and password; set the session cookie.

    SessionManager.login() runs argon2 on the unknown-username path too, so
    the response time does not reveal whether the account exists.
    """
    sessions: SessionManager = request.app.state.sessions
    token, user = sessions.login(body.username, body.password)
    resp = JSONResponse(
        status_code=200,
        content=LoginResponse(
            message="Logged in successfully",
            token=token,
            user=UserResponse.from_user(user),
        ).model_dump(),
    )
    set_session_cookie(resp, token)
    resp.headers["Cache-Control"] = "no-store"
    return resp


# ---------------------------------------------------------------------------
# Authenticated endpoints
# ---------------------------------------------------------------------------


@router.post("/auth/logout", response_model=MessageResponse)
def logout(
    request: Request,
    body: Optional[LogoutRequest] = None,
    current_user: User = Depends(get_current_user),
) -> JSONResponse:
    """End a session. Without token_id, ends the session that made this request."""
    sessions: SessionManager = request.app.state.sessions
    current = request.state.session
    token_id = body.token_id if body is not None else None
    if token_id is None:
        if current is None:
            raise ValidationError("token_id is required", field="token_id")
        token_id = current.id

    sessions.logout(token_id, current_user)

    resp = JSONResponse(content=MessageResponse(message="Logged out successfully").model_dump())
    if current is not None and current.id == token_id:
        clear_session_cookie(resp)
    return resp


@router.get("/auth/me", response_model=UserResponse)
async def me(current_user: User = Depends(get_current_user)) -> UserResponse:
    """Return identity information for the currently authenticated user."""
    return UserResponse.from_user(current_user)


@router.patch("/auth/me", response_model=UserResponse)
def update_me(
    request: Request,
    body: ProfilePatch,
    current_user: User = Depends(get_current_user),
) -> UserResponse:
    """Update display name and/or email. A changed email is marked unverified."""
    accounts: AccountManager = request.app.state.accounts
    updated = accounts.update_profile(current_user, display_name=body.display_name, email=body.email)
    return UserResponse.from_user(updated)


@router.get("/auth/sessions", response_model=list[SessionResponse])
def list_sessions(
    request: Request,
    current_user: User = Depends(get_current_user),
) -> list[SessionResponse]:
    """List the caller's sessions, newest first. Token values are never returned."""
    sessions: SessionManager = request.app.state.sessions
    current = request.state.session
    current_id = current.id if current is not None else None
    return [SessionResponse.from_session(s, current_id) for s in sessions.list_sessions(current_user.id)]
