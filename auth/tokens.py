"""
auth/tokens.py -- Session JWTs, the session cookie, and random credentials.

Security design decisions:
  Session JWT: python-jose with HS256, signed with SECRET_KEY. The payload
       binds the user id plus a random jti so two logins in the same second
       still produce distinct tokens (the tokens table has a UNIQUE index).
       There is no exp claim: sessions are revoked server-side by deleting
       the row. The signature is checked before the store lookup, so a
       forged or truncated token never reaches SQL.

  Random credentials: secrets.token_hex(n) gives 8n bits of entropy.
       client_id       = 16 bytes (128 bits, public)
       client_secret   = 32 bytes (256 bits, confidential)
       auth code       = 32 bytes
       access token    = 32 bytes

  Cookie: HttpOnly, SameSite=Lax, Path=/, Secure unless SECURE_COOKIES=false
       (local http development only).

Layer rule: no imports from api/ or cache/. Import from core/ is allowed.
"""

from __future__ import annotations

import logging
import secrets
from datetime import datetime, timezone

from jose import JWTError, jwt

from core.config import get_settings

logger = logging.getLogger("keyhold.auth.tokens")

# ---------------------------------------------------------------------------
# Config -- read once at module load via the lru_cache singleton
# ---------------------------------------------------------------------------

_settings = get_settings()

_ALGORITHM = "HS256"

# ---------------------------------------------------------------------------
# Session JWT encode / decode
# ---------------------------------------------------------------------------


def create_session_token(user_id: int) -> str:
    """Sign a session token for the given user id."""
    payload = {
        "user_id": user_id,
        "jti": secrets.token_hex(16),
        "iat": int(datetime.now(timezone.utc).timestamp()),
    }
    return jwt.encode(payload, _settings.secret_key, algorithm=_ALGORITHM)


def decode_session_token(token: str) -> dict | None:
    """Verify a session token signature. Returns the payload or None on any failure.

    Returning None (rather than raising) keeps the caller simple: any invalid
    token is treated as unauthenticated.
    """
    if not token:
        return None
    try:
        payload = jwt.decode(token, _settings.secret_key, algorithms=[_ALGORITHM])
    except JWTError as exc:
        logger.debug("Rejected session token: %s", exc)
        return None
    if not isinstance(payload.get("user_id"), int):
        return None
    return payload


# ---------------------------------------------------------------------------
# Random credentials
# ---------------------------------------------------------------------------


def generate_client_credentials() -> tuple[str, str]:
    """Return a fresh (client_id, client_secret) pair."""
    return secrets.token_hex(16), secrets.token_hex(32)


def generate_authorization_code() -> str:
    return secrets.token_hex(32)


def generate_access_token() -> str:
    return secrets.token_hex(32)


# ---------------------------------------------------------------------------
# Cookie helpers
# ---------------------------------------------------------------------------


def set_session_cookie(response, token: str) -> None:
    """Write the session token as an httpOnly cookie scoped to the site root.

    httponly=True: JS cannot read the cookie (XSS mitigation).
    samesite="lax": sent on same-site requests and top-level cross-site GET
        navigations -- the /oauth/authorize redirect from a client site still
        carries the session, cross-site POSTs do not.
    """
    response.set_cookie(
        _settings.session_cookie_name,
        value=token,
        httponly=True,
        samesite="lax",
        secure=_settings.secure_cookies,
        path="/",
        max_age=_settings.session_cookie_max_age,
    )


def clear_session_cookie(response) -> None:
    response.delete_cookie(
        _settings.session_cookie_name,
        path="/",
        httponly=True,
        samesite="lax",
        secure=_settings.secure_cookies,
    )
