"""
api/routes/v1/users.py -- Account administration (admin only).

Routes:
  GET    /api/v1/users                    -- list all accounts
  GET    /api/v1/users/{id}               -- one account
  PUT    /api/v1/users/{id}/permissions   -- replace the permission-tag set
  POST   /api/v1/users/{id}/password      -- set a new password; ends all sessions
  DELETE /api/v1/users/{id}               -- delete account, sessions, OAuth grants

Every route depends on require_admin. AccountManager re-checks the tag for
the password and delete operations, so the CLI cannot bypass it either.
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, Request

from api.models import MessageResponse, PasswordReset, PasswordResetResponse, PermissionsUpdate, UserResponse
from auth.accounts import AccountManager
from auth.dependencies import require_admin
from auth.models import User

router = APIRouter()


@router.get("/users", response_model=list[UserResponse])
def list_users(request: Request, admin: User = Depends(require_admin)) -> list[UserResponse]:
    accounts: AccountManager = request.app.state.accounts
    return [UserResponse.from_user(u) for u in accounts.list_users()]


@router.get("/users/{user_id}", response_model=UserResponse)
def get_user(request: Request, user_id: int, admin: User = Depends(require_admin)) -> UserResponse:
    accounts: AccountManager = request.app.state.accounts
    return UserResponse.from_user(accounts.get_user(user_id))


@router.put("/users/{user_id}/permissions", response_model=UserResponse)
def update_permissions(
    request: Request,
    user_id: int,
    body: PermissionsUpdate,
    admin: User = Depends(require_admin),
) -> UserResponse:
    """Replace a user's permission tags. Takes effect on the user's next request."""
    accounts: AccountManager = request.app.state.accounts
    return UserResponse.from_user(accounts.update_permissions(user_id, body.permissions))


@router.post("/users/{user_id}/password", response_model=PasswordResetResponse)
def reset_password(
    request: Request,
    user_id: int,
    body: PasswordReset,
    admin: User = Depends(require_admin),
) -> PasswordResetResponse:
    accounts: AccountManager = request.app.state.accounts
    revoked = accounts.reset_password(user_id, body.new_password, admin)
    return PasswordResetResponse(message="Password reset successfully", sessions_revoked=revoked)


@router.delete("/users/{user_id}", response_model=MessageResponse)
def delete_user(request: Request, user_id: int, admin: User = Depends(require_admin)) -> MessageResponse:
    accounts: AccountManager = request.app.state.accounts
    accounts.delete_account(user_id, admin)
    return MessageResponse(message="User deleted successfully")
