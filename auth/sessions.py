"""
auth/sessions.py -- Session token issue, resolution, and revocation.

Token lifecycle: issued at login -> read on every request -> deleted at
logout, on password reset, or when the account is deleted. There is no
expiry and no refresh; the row in the tokens table IS the session.

Login failure is deliberately uninformative. Unknown username and wrong
password both raise the same AuthenticationError, and both cost one argon2
verification (DUMMY_HASH on the unknown path), so neither the message nor
the response time reveals whether an account exists.

Layer rule: no imports from api/. cache/ is injected, not imported.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from auth.models import SessionToken, User
from auth.passwords import DUMMY_HASH, verify_password
from auth.permissions import is_admin
from auth.tokens import create_session_token, decode_session_token
from core.errors import AuthenticationError, AuthorizationError, NotFoundError, ValidationError

if TYPE_CHECKING:
    from auth.store import CredentialStore
    from cache.store import UserCache

logger = logging.getLogger("keyhold.auth.sessions")

INVALID_CREDENTIALS = "Invalid credentials"


class SessionManager:
    def __init__(self, store: CredentialStore, users: UserCache) -> None:
        self.store = store
        self.users = users

    def login(self, username: str | None, password: str | None) -> tuple[str, User]:
        """Verify a password login and issue a session token.

        Returns (token, user). The caller sets the token as the session cookie.
        """
        if not username or not password:
            raise ValidationError("Username and password required")

        user = self.store.get_user_by_username(username)
        if user is None:
            # Equalize timing -- do NOT return early before running argon2
            verify_password(DUMMY_HASH, password)
            logger.info("Login failed: unknown username")
            raise AuthenticationError(INVALID_CREDENTIALS)
        if not verify_password(user.password_hash, password):
            logger.info("Login failed: bad password for user_id=%s", user.id)
            raise AuthenticationError(INVALID_CREDENTIALS)

        token = create_session_token(user.id)
        self.store.create_session(user.id, token)
        self.users.put(user.id, user)
        logger.info("Login succeeded for user_id=%s", user.id)
        return token, user

    def resolve_session(self, token: str | None) -> tuple[SessionToken, User] | None:
        """Map a presented token to its session row and owner, or None."""
        if not token or decode_session_token(token) is None:
            return None
        session = self.store.get_session_by_token(token)
        if session is None:
            return None
        user = self.users.get(session.user_id)
        if user is None:
            return None
        return session, user

    def resolve(self, token: str | None) -> User | None:
        """Return the user a session token belongs to, or None if it resolves to nobody."""
        resolved = self.resolve_session(token)
        return resolved[1] if resolved is not None else None

    def logout(self, token_id: int, requester: User) -> None:
        """Delete one session. The requester must own it or hold "admin"."""
        session = self.store.get_session(token_id)
        if session is None:
            raise NotFoundError("Token not found")
        if session.user_id != requester.id and not is_admin(requester.permissions):
            logger.warning("user_id=%s denied logout of token_id=%s", requester.id, token_id)
            raise AuthorizationError("Permission denied")
        if not self.store.delete_session(token_id):
            # Deleted concurrently between the lookup and here.
            raise NotFoundError("Token not found")
        logger.info("Session token_id=%s revoked by user_id=%s", token_id, requester.id)

    def list_sessions(self, user_id: int) -> list[SessionToken]:
        return self.store.list_sessions(user_id)
