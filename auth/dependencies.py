"""
auth/dependencies.py -- FastAPI Depends() helpers for authentication.

Two credential sources are checked in priority order:
  1. Session cookie (SESSION_COOKIE_NAME, default "token") -- set at login.
  2. Authorization: Bearer <token> header -- API clients.

A Bearer value is tried as a session token first, then as an OAuth access
token, so resource servers and first-party clients share one header.

All paths converge on a User object after successful verification. The
matching session row (if any) is stored on request.state.session so
POST /auth/logout can end "this" session.

try_get_current_user() is the soft variant (returns None on failure).
get_current_user() wraps it and raises 401 if unauthenticated.
require_admin() / require_editor() raise 403 on missing permission tags.

auth/dependencies.py may import from fastapi (Request only) because it is
part of the FastAPI dependency injection system. Failures are raised as
core.errors types and mapped to responses by api/main.py.
"""

from __future__ import annotations

from fastapi import Request

from auth.models import User
from auth.permissions import can_edit_projects, is_admin
from core.config import get_settings
from core.errors import AuthenticationError, AuthorizationError


def _presented_token(request: Request) -> str | None:
    token = request.cookies.get(get_settings().session_cookie_name)
    if token:
        return token
    auth_header = request.headers.get("Authorization", "")
    if auth_header.startswith("Bearer "):
        return auth_header[7:].strip() or None
    return None


def try_get_current_user(request: Request) -> User | None:
    """Resolve the caller from the session cookie or a Bearer token.

    Returns the authenticated User on success, None on any failure.
    Never raises -- callers that need a hard 401 should use get_current_user().
    """
    request.state.session = None
    token = _presented_token(request)
    if not token:
        return None

    resolved = request.app.state.sessions.resolve_session(token)
    if resolved is not None:
        session, user = resolved
        request.state.session = session
        return user

    resolved = request.app.state.oauth.resolve_user(token)
    if resolved is not None:
        return resolved[1]
    return None


def get_current_user(request: Request) -> User:
    """Require authentication. Raises AuthenticationError (401) if absent.

    Use as a FastAPI dependency:
        @router.get("/protected")
        async def route(user: User = Depends(get_current_user)): ...
    """
    user = try_get_current_user(request)
    if user is None:
        raise AuthenticationError("Authentication required")
    return user


def require_admin(request: Request) -> User:
    """Require the "admin" tag. 401 if unauthenticated, 403 otherwise."""
    user = get_current_user(request)
    if not is_admin(user.permissions):
        raise AuthorizationError("Admin permissions required")
    return user


def require_editor(request: Request) -> User:
    """Require the "editor" or "admin" tag."""
    user = get_current_user(request)
    if not can_edit_projects(user.permissions):
        raise AuthorizationError("Editor or admin permissions required")
    return user
