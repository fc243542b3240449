"""
API request and response models for Keyhold REST endpoints.

These Pydantic v2 models define the HTTP transport contract for the API layer.
They are intentionally separate from the dataclasses in auth/models.py, which
own the internal domain representation. Route handlers map between the two.

Request models accept missing fields as None and leave the business rules
(lengths, formats, blocklist) to auth/, so the HTTP API and the admin CLI
report identical messages for identical input.

Separation of concerns: auth/ models = domain truth; api/ models = API contract.
"""

from typing import Optional, Union

from pydantic import BaseModel, ConfigDict, Field

from auth.models import ConnectedApplication, OAuthApplication, Project, SessionToken, User

# ---------------------------------------------------------------------------
# Errors and health
# ---------------------------------------------------------------------------


class ErrorDetail(BaseModel):
    """Machine-readable error payload."""

    model_config = ConfigDict(frozen=True)

    code: str
    message: str
    detail: Optional[str] = None
    field: Optional[str] = None


class ErrorResponse(BaseModel):
    """Top-level error envelope returned on 4xx/5xx responses."""

    model_config = ConfigDict(frozen=True)

    error: ErrorDetail


class OAuthErrorResponse(BaseModel):
    """RFC 6749 section 5.2 error body used by the /oauth/* endpoints."""

    model_config = ConfigDict(frozen=True)

    error: str
    error_description: str


class HealthResponse(BaseModel):
    """Response for GET /api/v1/health."""

    model_config = ConfigDict(frozen=True)

    status: str
    version: str
    components: dict[str, str]


class MessageResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    message: str


# ---------------------------------------------------------------------------
# Accounts and sessions
# ---------------------------------------------------------------------------


class RegisterRequest(BaseModel):
    """Request body for POST /api/v1/auth/register. Passwords are taken verbatim."""

    username: Optional[str] = None
    password: Optional[str] = None
    email: Optional[str] = None
    display_name: Optional[str] = None


class LoginRequest(BaseModel):
    """Request body for POST /api/v1/auth/login."""

    username: Optional[str] = None
    password: Optional[str] = None


class LogoutRequest(BaseModel):
    """Request body for POST /api/v1/auth/logout. No token_id = this session."""

    token_id: Optional[int] = None


class ProfilePatch(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True)

    display_name: Optional[str] = Field(default=None, max_length=255)
    email: Optional[str] = Field(default=None, max_length=320)


class UserResponse(BaseModel):
    """Public view of a user account. The password hash never leaves auth/."""

    model_config = ConfigDict(frozen=True)

    id: int
    username: str
    email: Optional[str]
    display_name: Optional[str]
    email_verified: bool
    permissions: list[str]
    created_at: str

    @classmethod
    def from_user(cls, user: User) -> "UserResponse":
        return cls(
            id=user.id,
            username=user.username,
            email=user.email,
            display_name=user.display_name,
            email_verified=user.email_verified,
            permissions=sorted(user.permissions),
            created_at=user.created_at or "",
        )


class RegisterResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    message: str
    user: UserResponse


class LoginResponse(BaseModel):
    """Response for a successful login.

    The token is also set as the session cookie; it is returned in the body
    for clients that send it as a Bearer header instead.
    """

    model_config = ConfigDict(frozen=True)

    message: str
    token: str
    user: UserResponse


class SessionResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: int
    created_at: str
    current: bool

    @classmethod
    def from_session(cls, session: SessionToken, current_id: Optional[int]) -> "SessionResponse":
        return cls(id=session.id, created_at=session.created_at or "", current=session.id == current_id)


# ---------------------------------------------------------------------------
# User administration
# ---------------------------------------------------------------------------


class PermissionsUpdate(BaseModel):
    """Request body for PUT /api/v1/users/{id}/permissions. Replaces the set."""

    permissions: list[str] = Field(max_length=100)


class PasswordReset(BaseModel):
    new_password: Optional[str] = None


class PasswordResetResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    message: str
    sessions_revoked: int


# ---------------------------------------------------------------------------
# Projects
# ---------------------------------------------------------------------------


class ProjectCreate(BaseModel):
    """Request body for POST /api/v1/projects and PUT /api/v1/projects/{id}."""

    model_config = ConfigDict(str_strip_whitespace=True)

    name: Optional[str] = Field(default=None, max_length=255)
    description: Optional[str] = Field(default=None, max_length=2000)
    link: Optional[str] = Field(default=None, max_length=2048)
    permissions: list[str] = Field(default_factory=list, max_length=100)


class ProjectResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: int
    name: str
    description: str
    link: str
    permissions: list[str]
    created_at: str

    @classmethod
    def from_project(cls, project: Project) -> "ProjectResponse":
        return cls(
            id=project.id,
            name=project.name,
            description=project.description,
            link=project.link,
            permissions=sorted(project.permissions),
            created_at=project.created_at or "",
        )


# ---------------------------------------------------------------------------
# OAuth application registry
# ---------------------------------------------------------------------------


class ApplicationCreate(BaseModel):
    """Request body for POST/PUT /api/v1/oauth/applications.

    redirect_uris accepts a single string or a list of strings.
    """

    model_config = ConfigDict(str_strip_whitespace=True)

    name: Optional[str] = Field(default=None, max_length=255)
    description: Optional[str] = Field(default=None, max_length=2000)
    redirect_uris: Union[str, list[str]] = Field(default_factory=list)
    scopes: list[str] = Field(default_factory=list, max_length=50)


class ApplicationResponse(BaseModel):
    """An application as shown to its owner. The client secret is omitted."""

    model_config = ConfigDict(frozen=True)

    id: int
    name: str
    description: str
    client_id: str
    redirect_uris: list[str]
    scopes: list[str]
    user_id: int
    created_at: str

    @classmethod
    def from_application(cls, app: OAuthApplication) -> "ApplicationResponse":
        return cls(
            id=app.id,
            name=app.name,
            description=app.description,
            client_id=app.client_id,
            redirect_uris=list(app.redirect_uris),
            scopes=list(app.scopes),
            user_id=app.user_id,
            created_at=app.created_at or "",
        )


class ApplicationCreatedResponse(ApplicationResponse):
    """Returned once at registration. The only response carrying client_secret."""

    client_secret: str

    @classmethod
    def from_application(cls, app: OAuthApplication) -> "ApplicationCreatedResponse":
        base = ApplicationResponse.from_application(app).model_dump()
        return cls(**base, client_secret=app.client_secret)


class DeleteApplicationResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    message: str
    codes_deleted: int
    tokens_deleted: int


class ConnectedApplicationResponse(BaseModel):
    """An application the caller has granted access to, with live token counts."""

    model_config = ConfigDict(frozen=True)

    client_id: str
    name: str
    description: str
    scopes: list[str]
    active_tokens: int
    last_expires: Optional[str] = None

    @classmethod
    def from_connected(cls, connected: ConnectedApplication) -> "ConnectedApplicationResponse":
        app = connected.application
        return cls(
            client_id=app.client_id,
            name=app.name,
            description=app.description,
            scopes=list(app.scopes),
            active_tokens=connected.active_tokens,
            last_expires=connected.last_expires,
        )


class RevokeAccessResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    message: str
    tokens_revoked: int


# ---------------------------------------------------------------------------
# OAuth wire contract
# ---------------------------------------------------------------------------


class TokenRequest(BaseModel):
    """POST /oauth/token body (JSON or application/x-www-form-urlencoded)."""

    grant_type: Optional[str] = None
    code: Optional[str] = None
    redirect_uri: Optional[str] = None
    client_id: Optional[str] = None
    client_secret: Optional[str] = None


class TokenResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    access_token: str
    token_type: str
    expires_in: Optional[int] = None
    scope: str


class ValidateTokenRequest(BaseModel):
    access_token: Optional[str] = None


class ValidateTokenResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    valid: bool
    user_id: int
    username: str
    client_id: str
    scope: str
    expires_at: str
