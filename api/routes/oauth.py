"""
api/routes/oauth.py -- OAuth 2.0 wire endpoints for third-party clients.

Routes (site root, no /api/v1 prefix):
  GET  /oauth/authorize        -- authorization endpoint (RFC 6749 section 4.1.1)
  POST /oauth/token            -- token endpoint, authorization_code grant only
  POST /oauth/validate_token   -- resource-server token check

The response bodies here are a fixed contract with existing clients:
errors are {error, error_description}, never the /api/v1 error envelope.

/oauth/token and /oauth/validate_token accept either a JSON body or an
application/x-www-form-urlencoded body. RFC 6749 clients send the latter.

An unauthenticated /oauth/authorize is redirected to LOGIN_URL with the
original path and query in ?next=, so the login page can replay it.
"""

from __future__ import annotations

import logging
from typing import Optional
from urllib.parse import quote

from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse, RedirectResponse

from api.models import TokenRequest, TokenResponse, ValidateTokenRequest, ValidateTokenResponse
from auth.dependencies import try_get_current_user
from auth.oauth import INVALID_ACCESS_TOKEN, OAuthProvider
from core.config import get_settings
from core.errors import LoginRequired, OAuthError

logger = logging.getLogger("keyhold.api.oauth")

router = APIRouter()

_NO_STORE = {"Cache-Control": "no-store", "Pragma": "no-cache"}


async def _read_params(request: Request) -> dict[str, str]:
    """Return the string-valued fields of a JSON or form-encoded body."""
    content_type = request.headers.get("content-type", "")
    if content_type.startswith("application/json"):
        try:
            payload = await request.json()
        except ValueError as exc:
            raise OAuthError("invalid_request", "Malformed JSON body") from exc
        if not isinstance(payload, dict):
            raise OAuthError("invalid_request", "Request body must be an object")
    else:
        payload = dict(await request.form())
    return {k: v for k, v in payload.items() if isinstance(v, str)}


@router.get("/oauth/authorize")
def authorize(
    request: Request,
    client_id: Optional[str] = None,
    redirect_uri: Optional[str] = None,
    response_type: Optional[str] = None,
    scope: Optional[str] = None,
    state: Optional[str] = None,
) -> RedirectResponse:
    """Validate the client and redirect back to it with ?code=...&state=..."""
    oauth: OAuthProvider = request.app.state.oauth
    user = try_get_current_user(request)
    try:
        location = oauth.authorize(client_id, redirect_uri, response_type, scope, state, user)
    except LoginRequired:
        target = request.url.path
        if request.url.query:
            target = f"{target}?{request.url.query}"
        login_url = get_settings().login_url
        return RedirectResponse(f"{login_url}?next={quote(target, safe='')}", status_code=302)
    return RedirectResponse(location, status_code=302)


@router.post("/oauth/token", response_model=TokenResponse)
async def token(request: Request) -> JSONResponse:
    """Exchange an authorization code for an access token."""
    body = TokenRequest.model_validate(await _read_params(request))
    oauth: OAuthProvider = request.app.state.oauth
    issued = oauth.exchange_code_for_token(
        body.grant_type,
        body.code,
        body.client_id,
        body.client_secret,
        body.redirect_uri,
    )
    return JSONResponse(content=TokenResponse(**issued).model_dump(), headers=_NO_STORE)


@router.post("/oauth/validate_token", response_model=ValidateTokenResponse)
async def validate_token(request: Request) -> ValidateTokenResponse:
    """Report whether an access token is live, and whose it is.

    Invalid, expired, and orphaned tokens (owner deleted) all return 401
    invalid_token.
    """
    body = ValidateTokenRequest.model_validate(await _read_params(request))
    oauth: OAuthProvider = request.app.state.oauth
    result = oauth.validate_access_token(body.access_token)
    if not result.valid:
        raise OAuthError("invalid_token", result.reason, status_code=401)
    user = request.app.state.users.get(result.token.user_id)
    if user is None:
        logger.warning("Access token for client_id=%s belongs to a deleted user", result.token.client_id)
        raise OAuthError("invalid_token", INVALID_ACCESS_TOKEN, status_code=401)
    return ValidateTokenResponse(
        valid=True,
        user_id=user.id,
        username=user.username,
        client_id=result.token.client_id,
        scope=result.token.scope,
        expires_at=result.token.expires_at,
    )
