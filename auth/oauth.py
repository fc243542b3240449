"""
auth/oauth.py -- OAuth 2.0 authorization-code provider.

Only the authorization code grant is supported. The flow:

  1. GET /oauth/authorize      client_id + redirect_uri validated against the
                               registered application; caller must be logged
                               in; a single-use code is minted (10 minutes).
  2. POST /oauth/token         code + client credentials exchanged for a
                               long-lived access token; the code is consumed.
  3. POST /oauth/validate_token  a resource server checks an access token.

Security notes:
  redirect_uri is matched by exact string equality against the registered
  list. Prefix or host matching would turn /oauth/authorize into an open
  redirect that leaks codes to an attacker-controlled callback.

  The code lookup uses the full (code, client_id, redirect_uri) triple. A
  mismatched redirect_uri is reported as invalid_grant, the same as an
  unknown code, so a probing client learns nothing about which field is wrong.

  client_secret is compared with hmac.compare_digest (exact match, constant
  time).

  Code redemption and token insertion happen in one store transaction
  (CredentialStore.redeem_authorization_code); a code can never produce two
  tokens, even under concurrent exchanges.

  state is opaque. It is appended to the redirect unchanged and never parsed.

Policy:
  Access tokens live for OAUTH_TOKEN_TTL_DAYS (100 years by default) and have
  no refresh token. Users revoke per client via revoke_application_access().

Layer rule: no imports from api/. cache/ is injected, not imported.
"""

from __future__ import annotations

import hmac
import logging
from datetime import datetime, timedelta, timezone
from typing import TYPE_CHECKING
from urllib.parse import urlparse

from authlib.common.urls import add_params_to_uri

from auth.models import (
    AuthorizationCode,
    ConnectedApplication,
    OAuthAccessToken,
    OAuthApplication,
    TokenValidation,
    User,
)
from auth.permissions import is_admin
from auth.tokens import generate_access_token, generate_authorization_code, generate_client_credentials
from core.config import get_settings
from core.errors import (
    AuthorizationError,
    LoginRequired,
    NotFoundError,
    OAuthError,
    ValidationError,
)

if TYPE_CHECKING:
    from auth.store import CredentialStore
    from cache.store import UserCache

logger = logging.getLogger("keyhold.auth.oauth")

_cfg = get_settings()

TOKEN_TYPE = "Bearer"
INVALID_ACCESS_TOKEN = "Invalid access token"
EXPIRED_ACCESS_TOKEN = "Access token expired"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _is_expired(expires_at: str, now: datetime) -> bool:
    """Return True if the ISO timestamp is in the past. Unparsable counts as expired."""
    try:
        expiry = datetime.fromisoformat(expires_at)
    except (TypeError, ValueError):
        return True
    if expiry.tzinfo is None:
        expiry = expiry.replace(tzinfo=timezone.utc)
    return now >= expiry


# ---------------------------------------------------------------------------
# Input normalization for application registration
# ---------------------------------------------------------------------------


def _clean_app_name(name) -> str:
    if not isinstance(name, str) or not name.strip():
        raise ValidationError("Application name is required", field="name")
    name = name.strip()
    if len(name) > 255:
        raise ValidationError("Application name must be at most 255 characters long", field="name")
    return name


def _clean_redirect_uris(redirect_uris) -> list[str]:
    """Accept one URI or a list of them. At least one absolute URI is required.

    RFC 6749 section 3.1.2: the redirection endpoint URI MUST be absolute and
    MUST NOT include a fragment.
    """
    if isinstance(redirect_uris, str):
        redirect_uris = [redirect_uris]
    if not isinstance(redirect_uris, (list, tuple)):
        raise ValidationError("At least one redirect URI is required", field="redirect_uris")
    cleaned: list[str] = []
    for uri in redirect_uris:
        if not isinstance(uri, str) or not uri.strip():
            continue
        uri = uri.strip()
        parsed = urlparse(uri)
        if not parsed.scheme or parsed.fragment:
            raise ValidationError(f"Invalid redirect URI: {uri}", field="redirect_uris")
        if uri not in cleaned:
            cleaned.append(uri)
    if not cleaned:
        raise ValidationError("At least one redirect URI is required", field="redirect_uris")
    return cleaned


def _clean_scopes(scopes) -> list[str]:
    if isinstance(scopes, str):
        scopes = scopes.split()
    if not isinstance(scopes, (list, tuple)):
        return []
    return [s.strip() for s in scopes if isinstance(s, str) and s.strip()]


# ---------------------------------------------------------------------------
# Provider
# ---------------------------------------------------------------------------


class OAuthProvider:
    """Client registry plus the authorization-code state machine."""

    def __init__(self, store: CredentialStore, users: UserCache) -> None:
        self.store = store
        self.users = users

    # ------------------------------------------------------------------
    # Application registry
    # ------------------------------------------------------------------

    def create_application(
        self,
        owner: User,
        name,
        description: str | None = None,
        redirect_uris=None,
        scopes=None,
    ) -> OAuthApplication:
        """Register a client for owner. The secret is generated here and returned once."""
        client_id, client_secret = generate_client_credentials()
        app = OAuthApplication(
            name=_clean_app_name(name),
            description=description or "",
            client_id=client_id,
            client_secret=client_secret,
            redirect_uris=_clean_redirect_uris(redirect_uris),
            scopes=_clean_scopes(scopes),
            user_id=owner.id,
        )
        app.id = self.store.create_application(app)
        logger.info("OAuth application id=%s created by user_id=%s", app.id, owner.id)
        return self.store.get_application(app.id) or app

    def list_applications(self, requester: User, include_all: bool = False) -> list[OAuthApplication]:
        if include_all:
            if not is_admin(requester.permissions):
                raise AuthorizationError("Admin permissions required")
            return self.store.list_applications()
        return self.store.list_applications(user_id=requester.id)

    def get_application(self, app_id: int, requester: User) -> OAuthApplication:
        return self._owned_application(app_id, requester)

    def update_application(
        self,
        app_id: int,
        requester: User,
        name,
        description: str | None = None,
        redirect_uris=None,
        scopes=None,
    ) -> OAuthApplication:
        self._owned_application(app_id, requester)
        fields = {
            "name": _clean_app_name(name),
            "description": description or "",
            "redirect_uris": _clean_redirect_uris(redirect_uris),
            "scopes": _clean_scopes(scopes),
        }
        if not self.store.update_application(app_id, **fields):
            raise NotFoundError("OAuth application not found")
        logger.info("OAuth application id=%s updated by user_id=%s", app_id, requester.id)
        return self.store.get_application(app_id)

    def delete_application(self, app_id: int, requester: User) -> dict:
        """Delete an application and every code and token issued to it.

        Returns {"codes_deleted": n, "tokens_deleted": m}.
        """
        self._owned_application(app_id, requester)
        counts = self.store.delete_application_cascade(app_id)
        if counts is None:
            raise NotFoundError("OAuth application not found")
        logger.info(
            "OAuth application id=%s deleted by user_id=%s (%d codes, %d tokens)",
            app_id,
            requester.id,
            counts["codes_deleted"],
            counts["tokens_deleted"],
        )
        return counts

    def _owned_application(self, app_id: int, requester: User) -> OAuthApplication:
        app = self.store.get_application(app_id)
        if app is None:
            raise NotFoundError("OAuth application not found")
        if app.user_id != requester.id and not is_admin(requester.permissions):
            raise AuthorizationError("Only the owner can manage this application")
        return app

    # ------------------------------------------------------------------
    # Authorization endpoint
    # ------------------------------------------------------------------

    def authorize(
        self,
        client_id: str | None,
        redirect_uri: str | None,
        response_type: str | None,
        scope: str | None,
        state: str | None,
        user: User | None,
    ) -> str:
        """Validate an authorization request and mint a code.

        Returns the URL to redirect the browser to. Raises OAuthError for a
        bad request and LoginRequired when the request is valid but nobody is
        logged in.
        """
        if not client_id or not redirect_uri:
            raise OAuthError("invalid_request", "Missing required parameter: client_id and redirect_uri")
        if response_type != "code":
            raise OAuthError("unsupported_response_type", "Only response_type=code is supported")

        app = self.store.get_application_by_client_id(client_id)
        if app is None:
            raise OAuthError("invalid_client", "Unknown client_id")
        if redirect_uri not in app.redirect_uris:
            logger.warning("Rejected unregistered redirect_uri for client_id=%s", client_id)
            raise OAuthError("invalid_request", "redirect_uri is not registered for this client")

        if user is None:
            raise LoginRequired()

        code = AuthorizationCode(
            code=generate_authorization_code(),
            client_id=client_id,
            user_id=user.id,
            redirect_uri=redirect_uri,
            scope=scope or "",
            expires_at=(_utcnow() + timedelta(seconds=_cfg.authorization_code_ttl_seconds)).isoformat(),
        )
        self.store.create_authorization_code(code)
        logger.info("Authorization code issued to client_id=%s for user_id=%s", client_id, user.id)

        params = [("code", code.code)]
        if state is not None:
            params.append(("state", state))
        return add_params_to_uri(redirect_uri, params)

    # ------------------------------------------------------------------
    # Token endpoint
    # ------------------------------------------------------------------

    def exchange_code_for_token(
        self,
        grant_type: str | None,
        code: str | None,
        client_id: str | None,
        client_secret: str | None,
        redirect_uri: str | None,
    ) -> dict:
        """Redeem an authorization code for an access token.

        Returns the RFC 6749 section 5.1 token response body.
        """
        if grant_type != "authorization_code":
            raise OAuthError("unsupported_grant_type", "Only grant_type=authorization_code is supported")
        if not code or not client_id or not client_secret or not redirect_uri:
            raise OAuthError(
                "invalid_request",
                "Missing required parameter: code, redirect_uri, client_id and client_secret",
            )

        auth_code = self.store.get_authorization_code(code, client_id, redirect_uri)
        if auth_code is None:
            raise OAuthError("invalid_grant", "Invalid authorization code")

        now = _utcnow()
        if _is_expired(auth_code.expires_at, now):
            self.store.delete_authorization_code(code)
            raise OAuthError("invalid_grant", "Authorization code expired")

        app = self.store.get_application_by_client_id(client_id)
        if app is None or not hmac.compare_digest(app.client_secret.encode(), client_secret.encode()):
            logger.warning("Client authentication failed for client_id=%s", client_id)
            raise OAuthError("invalid_client", "Invalid client credentials", status_code=401)

        token = OAuthAccessToken(
            access_token=generate_access_token(),
            client_id=client_id,
            user_id=auth_code.user_id,
            scope=auth_code.scope,
            expires_at=(now + timedelta(days=_cfg.oauth_token_ttl_days)).isoformat(),
        )
        if not self.store.redeem_authorization_code(auth_code, token):
            raise OAuthError("invalid_grant", "Invalid authorization code")
        logger.info("Access token issued to client_id=%s for user_id=%s", client_id, auth_code.user_id)

        return {
            "access_token": token.access_token,
            "token_type": TOKEN_TYPE,
            "expires_in": None,
            "scope": token.scope,
        }

    # ------------------------------------------------------------------
    # Token validation
    # ------------------------------------------------------------------

    def validate_access_token(self, access_token: str | None) -> TokenValidation:
        if not access_token:
            return TokenValidation(valid=False, reason=INVALID_ACCESS_TOKEN)
        token = self.store.get_access_token(access_token)
        if token is None:
            return TokenValidation(valid=False, reason=INVALID_ACCESS_TOKEN)
        if _is_expired(token.expires_at, _utcnow()):
            self.store.delete_access_token(access_token)
            return TokenValidation(valid=False, reason=EXPIRED_ACCESS_TOKEN)
        return TokenValidation(valid=True, token=token)

    def resolve_user(self, access_token: str | None) -> tuple[OAuthAccessToken, User] | None:
        """Return (token, owner) for a valid access token whose user still exists."""
        result = self.validate_access_token(access_token)
        if not result.valid:
            return None
        user = self.users.get(result.token.user_id)
        if user is None:
            return None
        return result.token, user

    # ------------------------------------------------------------------
    # Grants held by a user
    # ------------------------------------------------------------------

    def connected_applications(self, user_id: int) -> list[ConnectedApplication]:
        rows = self.store.connected_applications(user_id, _utcnow().isoformat())
        return [
            ConnectedApplication(application=app, active_tokens=count, last_expires=last)
            for app, count, last in rows
        ]

    def revoke_application_access(self, user_id: int, client_id: str) -> int:
        """Delete every access token user_id holds for client_id."""
        deleted = self.store.revoke_access_tokens(user_id, client_id)
        if deleted == 0:
            raise NotFoundError("No access granted to this application")
        logger.info("user_id=%s revoked %d tokens for client_id=%s", user_id, deleted, client_id)
        return deleted

    def purge_expired(self) -> dict:
        """Sweep expired codes and tokens."""
        counts = self.store.purge_expired(_utcnow().isoformat())
        if counts["codes_deleted"] or counts["tokens_deleted"]:
            logger.info(
                "Purged %d expired codes and %d expired tokens",
                counts["codes_deleted"],
                counts["tokens_deleted"],
            )
        return counts
