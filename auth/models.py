"""
auth/models.py -- Domain dataclasses for identity entities.

Pattern: Data class (pure data container, zero logic). Dataclasses own domain
shape; stores and managers do the work.

Permission tags are always a frozenset[str] here. The store converts whatever
was persisted (JSON text, empty string, NULL, garbage) through
auth.permissions.parse_tag_set() before building a User or Project, so no
other module ever sees the raw column value.

Layer rule: no imports from api/ or cache/.
"""

from __future__ import annotations

from dataclasses import dataclass, field


@dataclass
class User:
    """An account that can log in with a password.

    username is stored lower-cased; lookups compare case-insensitively.
    email is None until the user supplies one. display_name falls back to the
    username when not given. password_hash is the argon2 output and must never
    be serialized into a response.
    """

    username: str
    password_hash: str
    id: int | None = None
    email: str | None = None
    display_name: str | None = None
    email_verified: bool = False
    permissions: frozenset[str] = field(default_factory=frozenset)
    created_at: str | None = None


@dataclass
class SessionToken:
    """A server-side record of a session JWT issued at login."""

    user_id: int
    token: str
    id: int | None = None
    created_at: str | None = None


@dataclass
class Project:
    """A linked external resource gated by required permission tags.

    An empty permissions set makes the project public.
    """

    name: str
    description: str = ""
    link: str = "/"
    permissions: frozenset[str] = field(default_factory=frozenset)
    id: int | None = None
    created_at: str | None = None


@dataclass
class OAuthApplication:
    """A third-party client registered by a user.

    client_secret is compared by exact match at token exchange, so it is kept
    as issued. It is shown to the owner, never listed to anyone else.
    """

    name: str
    client_id: str
    client_secret: str
    user_id: int
    description: str = ""
    redirect_uris: list[str] = field(default_factory=list)
    scopes: list[str] = field(default_factory=list)
    id: int | None = None
    created_at: str | None = None


@dataclass
class AuthorizationCode:
    """Single-use voucher minted by /oauth/authorize, redeemed by /oauth/token."""

    code: str
    client_id: str
    user_id: int
    redirect_uri: str
    scope: str
    expires_at: str
    created_at: str | None = None


@dataclass
class OAuthAccessToken:
    """Bearer credential for one (client, user) pair."""

    access_token: str
    client_id: str
    user_id: int
    scope: str
    expires_at: str
    created_at: str | None = None


@dataclass
class TokenValidation:
    """Outcome of OAuthProvider.validate_access_token().

    Exactly one of token / reason is set, depending on valid.
    """

    valid: bool
    token: OAuthAccessToken | None = None
    reason: str | None = None


@dataclass
class ConnectedApplication:
    """An application holding at least one live access token for a user."""

    application: OAuthApplication
    active_tokens: int
    last_expires: str | None = None
