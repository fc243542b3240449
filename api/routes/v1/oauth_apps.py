"""
api/routes/v1/oauth_apps.py -- OAuth client registry and user grant management.

Routes:
  GET    /api/v1/oauth/applications             -- caller's applications (?all=true for admins)
  POST   /api/v1/oauth/applications             -- register; client_secret shown ONCE
  GET    /api/v1/oauth/applications/{id}        -- owner or admin
  PUT    /api/v1/oauth/applications/{id}        -- owner or admin
  DELETE /api/v1/oauth/applications/{id}        -- owner or admin; cascades codes + tokens
  GET    /api/v1/oauth/connected                -- applications holding the caller's tokens
  DELETE /api/v1/oauth/connected/{client_id}    -- revoke the caller's tokens for one client
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, Query, Request

from api.models import (
    ApplicationCreate,
    ApplicationCreatedResponse,
    ApplicationResponse,
    ConnectedApplicationResponse,
    DeleteApplicationResponse,
    RevokeAccessResponse,
)
from auth.dependencies import get_current_user
from auth.models import User
from auth.oauth import OAuthProvider

router = APIRouter()


@router.get("/oauth/applications", response_model=list[ApplicationResponse])
def list_applications(
    request: Request,
    include_all: bool = Query(False, alias="all"),
    current_user: User = Depends(get_current_user),
) -> list[ApplicationResponse]:
    oauth: OAuthProvider = request.app.state.oauth
    apps = oauth.list_applications(current_user, include_all=include_all)
    return [ApplicationResponse.from_application(a) for a in apps]


@router.post("/oauth/applications", response_model=ApplicationCreatedResponse, status_code=201)
def create_application(
    request: Request,
    body: ApplicationCreate,
    current_user: User = Depends(get_current_user),
) -> ApplicationCreatedResponse:
    """Register an OAuth client. Store the client_secret now; it is not shown again."""
    oauth: OAuthProvider = request.app.state.oauth
    app = oauth.create_application(
        current_user,
        body.name,
        description=body.description,
        redirect_uris=body.redirect_uris,
        scopes=body.scopes,
    )
    return ApplicationCreatedResponse.from_application(app)


@router.get("/oauth/applications/{app_id}", response_model=ApplicationResponse)
def get_application(
    request: Request,
    app_id: int,
    current_user: User = Depends(get_current_user),
) -> ApplicationResponse:
    oauth: OAuthProvider = request.app.state.oauth
    return ApplicationResponse.from_application(oauth.get_application(app_id, current_user))


@router.put("/oauth/applications/{app_id}", response_model=ApplicationResponse)
def update_application(
    request: Request,
    app_id: int,
    body: ApplicationCreate,
    current_user: User = Depends(get_current_user),
) -> ApplicationResponse:
    oauth: OAuthProvider = request.app.state.oauth
    app = oauth.update_application(
        app_id,
        current_user,
        body.name,
        description=body.description,
        redirect_uris=body.redirect_uris,
        scopes=body.scopes,
    )
    return ApplicationResponse.from_application(app)


@router.delete("/oauth/applications/{app_id}", response_model=DeleteApplicationResponse)
def delete_application(
    request: Request,
    app_id: int,
    current_user: User = Depends(get_current_user),
) -> DeleteApplicationResponse:
    oauth: OAuthProvider = request.app.state.oauth
    counts = oauth.delete_application(app_id, current_user)
    return DeleteApplicationResponse(message="OAuth application deleted successfully", **counts)


@router.get("/oauth/connected", response_model=list[ConnectedApplicationResponse])
def connected_applications(
    request: Request,
    current_user: User = Depends(get_current_user),
) -> list[ConnectedApplicationResponse]:
    oauth: OAuthProvider = request.app.state.oauth
    return [ConnectedApplicationResponse.from_connected(c) for c in oauth.connected_applications(current_user.id)]


@router.delete("/oauth/connected/{client_id}", response_model=RevokeAccessResponse)
def revoke_application_access(
    request: Request,
    client_id: str,
    current_user: User = Depends(get_current_user),
) -> RevokeAccessResponse:
    oauth: OAuthProvider = request.app.state.oauth
    revoked = oauth.revoke_application_access(current_user.id, client_id)
    return RevokeAccessResponse(message="Application access revoked", tokens_revoked=revoked)
