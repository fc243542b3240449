"""
core/errors.py -- Typed failures raised by the auth core.

Every operation in auth/ either returns a success payload or raises one of
these. The HTTP layer (api/main.py) owns the mapping to status codes and the
JSON error envelope, so auth/ never imports fastapi for error reporting.

Taxonomy:
  ValidationError      -- malformed input. 400. Never logged as a fault.
  AuthenticationError  -- missing/invalid credentials. 401. The message never
                          says which part was wrong.
  LoginRequired        -- AuthenticationError raised by /oauth/authorize; the
                          route turns it into a redirect to the login page.
  AuthorizationError   -- authenticated but not allowed. 403.
  NotFoundError        -- referenced id does not exist. 404.
  ConflictError        -- duplicate unique value. 400, carries the field name.
  InternalError        -- store failure. 500 with a generic message.

OAuthError is separate: it carries the RFC 6749 error code and description
that the /oauth/* wire contract returns as {error, error_description}.

Layer rule: core/ is the kernel. No imports from api/, auth/, or cache/.
"""

from __future__ import annotations


class IdentityError(Exception):
    """Base class for failures surfaced to callers of the auth core."""

    status_code: int = 500
    code: str = "internal_error"
    default_message: str = "An unexpected error occurred."

    def __init__(self, message: str | None = None, *, field: str | None = None) -> None:
        self.message = message or self.default_message
        self.field = field
        super().__init__(self.message)


class ValidationError(IdentityError):
    status_code = 400
    code = "validation_error"
    default_message = "Invalid request."


class AuthenticationError(IdentityError):
    status_code = 401
    code = "unauthorized"
    default_message = "Authentication required."


class LoginRequired(AuthenticationError):
    """The caller must log in before the request can continue."""


class AuthorizationError(IdentityError):
    status_code = 403
    code = "forbidden"
    default_message = "Permission denied."


class NotFoundError(IdentityError):
    status_code = 404
    code = "not_found"
    default_message = "Not found."


class ConflictError(IdentityError):
    status_code = 400
    code = "conflict"
    default_message = "Already exists."


class InternalError(IdentityError):
    status_code = 500
    code = "internal_error"


class OAuthError(Exception):
    """An OAuth 2.0 protocol error (RFC 6749 section 5.2 error codes)."""

    def __init__(self, error: str, description: str, status_code: int = 400) -> None:
        self.error = error
        self.description = description
        self.status_code = status_code
        super().__init__(f"{error}: {description}")

    def to_dict(self) -> dict:
        return {"error": self.error, "error_description": self.description}
