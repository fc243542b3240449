"""
auth/accounts.py -- Account registration and admin-side account mutation.

Every method that writes a user row calls self.users.invalidate(user_id)
afterwards. The user cache has no TTL, so a missed invalidate leaves stale
permissions in memory until restart.

Input rules (enforced here, not only at the HTTP layer, so the admin CLI
gets the same checks):
  username      letters and digits, 3-30 chars, stored lower-cased
  password      8-128 chars
  email         optional; simple address shape, <=254 chars, local part <=64
  display_name  optional; letters, digits, spaces, 2-50 chars

Layer rule: no imports from api/. cache/ is injected, not imported.
"""

from __future__ import annotations

import logging
import re
from collections.abc import Iterable
from typing import TYPE_CHECKING

from sqlalchemy.exc import IntegrityError

from auth.models import User
from auth.passwords import hash_password
from auth.permissions import is_admin
from core.config import get_settings
from core.errors import AuthorizationError, ConflictError, NotFoundError, ValidationError

if TYPE_CHECKING:
    from auth.store import CredentialStore
    from cache.store import UserCache

logger = logging.getLogger("keyhold.auth.accounts")

_USERNAME_RE = re.compile(r"^[A-Za-z0-9]+$")
_EMAIL_RE = re.compile(r"^[a-zA-Z0-9._+-]+@[a-zA-Z0-9.-]+\.[a-zA-Z]{2,}$")
_DISPLAY_NAME_RE = re.compile(r"^[a-zA-Z0-9 ]+$")


# ---------------------------------------------------------------------------
# Field validators -- each returns the normalized value or raises
# ---------------------------------------------------------------------------


def validate_username(username) -> str:
    if not isinstance(username, str) or not username:
        raise ValidationError("Username is required", field="username")
    if not _USERNAME_RE.match(username):
        raise ValidationError("Username must only contain letters and numbers", field="username")
    if len(username) < 3:
        raise ValidationError("Username must be at least 3 characters long", field="username")
    if len(username) > 30:
        raise ValidationError("Username must be at most 30 characters long", field="username")
    return username.lower()


def validate_password(password) -> str:
    if not isinstance(password, str) or not password:
        raise ValidationError("Password is required", field="password")
    if len(password) < 8:
        raise ValidationError("Password must be at least 8 characters long", field="password")
    if len(password) > 128:
        raise ValidationError("Password must be at most 128 characters long", field="password")
    return password


def validate_email(email: str | None) -> str | None:
    """Return the lower-cased email, or None if none was given."""
    if email is None or not email.strip():
        return None
    normalized = email.strip().lower()
    if len(normalized) > 254:
        raise ValidationError("Email address is too long", field="email")
    if not _EMAIL_RE.match(normalized):
        raise ValidationError("Invalid email format", field="email")
    local = normalized.split("@", 1)[0]
    if normalized.startswith(".") or normalized.endswith(".") or ".." in normalized or len(local) > 64:
        raise ValidationError("Invalid email format", field="email")
    return normalized


def validate_display_name(display_name: str | None) -> str | None:
    if display_name is None or not display_name.strip():
        return None
    trimmed = display_name.strip()
    if len(trimmed) < 2:
        raise ValidationError("Display name must be at least 2 characters long", field="display_name")
    if len(trimmed) > 50:
        raise ValidationError("Display name must be at most 50 characters long", field="display_name")
    if not _DISPLAY_NAME_RE.match(trimmed):
        raise ValidationError("Display name can only contain letters, numbers, and spaces", field="display_name")
    return trimmed


def validate_tags(permissions) -> list[str]:
    if not isinstance(permissions, (list, tuple)):
        raise ValidationError("Permissions must be an array", field="permissions")
    tags: list[str] = []
    for tag in permissions:
        if not isinstance(tag, str) or not tag.strip():
            raise ValidationError("Permissions must be non-empty strings", field="permissions")
        tags.append(tag.strip())
    return tags


# ---------------------------------------------------------------------------
# Manager
# ---------------------------------------------------------------------------


class AccountManager:
    def __init__(self, store: CredentialStore, users: UserCache) -> None:
        self.store = store
        self.users = users

    def register(
        self,
        username,
        password,
        email: str | None = None,
        display_name: str | None = None,
    ) -> User:
        """Self-service registration. Rejects blocked usernames."""
        normalized = validate_username(username)
        validate_password(password)
        blocked = {name.lower() for name in get_settings().blocked_usernames}
        if normalized in blocked:
            logger.info("Registration rejected: blocked username")
            raise ValidationError("Unallowed username", field="username")
        return self.create_account(normalized, password, email=email, display_name=display_name)

    def create_account(
        self,
        username,
        password,
        email: str | None = None,
        display_name: str | None = None,
        permissions: Iterable[str] = (),
    ) -> User:
        """Create an account without the blocklist check (admin CLI bootstrap)."""
        normalized = validate_username(username)
        validate_password(password)
        email = validate_email(email)
        display_name = validate_display_name(display_name)

        if self.store.get_user_by_username(normalized) is not None:
            raise ConflictError("Account already exists", field="username")
        if email is not None and self.store.get_user_by_email(email) is not None:
            raise ConflictError("Email already in use", field="email")

        user = User(
            username=normalized,
            password_hash=hash_password(password),
            email=email,
            display_name=display_name or normalized,
            email_verified=False,
            permissions=frozenset(permissions),
        )
        try:
            user.id = self.store.create_user(user)
        except IntegrityError as exc:
            # Lost a race with a concurrent registration for the same name/email.
            raise ConflictError("Account already exists", field="username") from exc
        logger.info("Created account user_id=%s", user.id)
        return self.store.get_user_by_id(user.id) or user

    def get_user(self, user_id: int) -> User:
        user = self.users.get(user_id)
        if user is None:
            raise NotFoundError("User not found")
        return user

    def list_users(self) -> list[User]:
        return self.store.list_users()

    def update_permissions(self, user_id: int, permissions) -> User:
        tags = validate_tags(permissions)
        if not self.store.update_user(user_id, permissions=tags):
            raise NotFoundError("User not found")
        self.users.invalidate(user_id)
        logger.info("Updated permissions for user_id=%s: %s", user_id, sorted(set(tags)))
        return self.get_user(user_id)

    def update_profile(self, user: User, display_name: str | None = None, email: str | None = None) -> User:
        """Change display name and/or email. A new email must be verified again."""
        fields: dict = {}
        new_display = validate_display_name(display_name)
        if new_display is not None:
            fields["display_name"] = new_display
        new_email = validate_email(email)
        if new_email is not None and new_email != user.email:
            other = self.store.get_user_by_email(new_email)
            if other is not None and other.id != user.id:
                raise ConflictError("Email already in use", field="email")
            fields["email"] = new_email
            fields["email_verified"] = False
        if not fields:
            raise ValidationError("No fields to update.")
        try:
            updated = self.store.update_user(user.id, **fields)
        except IntegrityError as exc:
            raise ConflictError("Email already in use", field="email") from exc
        self.users.invalidate(user.id)
        if not updated:
            raise NotFoundError("User not found")
        return self.get_user(user.id)

    def reset_password(self, user_id: int, new_password, admin: User) -> int:
        """Set a new password for any user. Admin only.

        Every session of that user is deleted. Returns how many were deleted.
        """
        if not is_admin(admin.permissions):
            raise AuthorizationError("Admin permissions required")
        validate_password(new_password)
        deleted = self.store.reset_password(user_id, hash_password(new_password))
        self.users.invalidate(user_id)
        if deleted is None:
            raise NotFoundError("User not found")
        logger.info("Password reset for user_id=%s by user_id=%s (%d sessions ended)", user_id, admin.id, deleted)
        return deleted

    def delete_account(self, user_id: int, admin: User) -> None:
        """Delete a user and everything that authenticates as them. Admin only."""
        if not is_admin(admin.permissions):
            raise AuthorizationError("Admin permissions required")
        if self.store.get_user_by_id(user_id) is None:
            raise NotFoundError("User not found")
        if user_id == admin.id:
            raise ValidationError("Cannot delete your own account")
        deleted = self.store.delete_user_cascade(user_id)
        self.users.invalidate(user_id)
        if not deleted:
            raise NotFoundError("User not found")
        logger.info("Deleted user_id=%s by user_id=%s", user_id, admin.id)
