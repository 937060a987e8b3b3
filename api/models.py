"""
API request and response models for the authcore REST endpoints.

These Pydantic v2 models define the HTTP transport contract for the API layer.
They are intentionally separate from the dataclasses in auth/models.py, which
own the internal domain representation. Route handlers map between the two.

Validation here is shape only (lengths, required fields). Email format and
password policy are enforced by the AuthProvider so every caller, HTTP or
not, gets the same rules and messages.
"""

from typing import Optional

from pydantic import BaseModel, ConfigDict, Field

from auth.models import Session, User

# Bounded so a multi-megabyte "password" never reaches bcrypt.
_Email = Field(min_length=1, max_length=255)
_Password = Field(min_length=1, max_length=255)


# ---------------------------------------------------------------------------
# Request models
# ---------------------------------------------------------------------------


class SignUpRequest(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True)

    email: str = _Email
    password: str = Field(max_length=255)
    name: Optional[str] = Field(default=None, max_length=255)


class SignInRequest(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True)

    email: str = Field(max_length=255)
    password: str = Field(max_length=255)


class EmailRequest(BaseModel):
    """Body for POST /auth/password-reset/request."""

    model_config = ConfigDict(str_strip_whitespace=True)

    email: str = _Email


class PasswordResetComplete(BaseModel):
    email: str = _Email
    token: str = Field(min_length=1, max_length=128)
    new_password: str = Field(max_length=255)


class VerifyEmailComplete(BaseModel):
    email: str = _Email
    token: str = Field(min_length=1, max_length=128)


class ProfilePatch(BaseModel):
    """PATCH /auth/profile. Omitted fields are left unchanged."""

    model_config = ConfigDict(str_strip_whitespace=True)

    name: Optional[str] = Field(default=None, max_length=255)
    email: Optional[str] = Field(default=None, max_length=255)


class PasswordChange(BaseModel):
    current_password: str = _Password
    new_password: str = Field(max_length=255)


# ---------------------------------------------------------------------------
# Response models
# ---------------------------------------------------------------------------


class UserResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    email: str
    name: Optional[str] = None
    image: Optional[str] = None
    email_verified: Optional[str] = None
    oauth_provider: Optional[str] = None
    created_at: Optional[str] = None

    @classmethod
    def from_user(cls, user: User) -> "UserResponse":
        return cls(
            id=user.id,
            email=user.email,
            name=user.name,
            image=user.image,
            email_verified=user.email_verified.isoformat() if user.email_verified else None,
            oauth_provider=user.oauth_provider,
            created_at=user.created_at,
        )


class AuthResponse(BaseModel):
    """Successful sign-up / sign-in. The session token travels in the cookie."""

    model_config = ConfigDict(frozen=True)

    user: UserResponse
    expires_at: str


class SessionInfo(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: int
    created_at: str
    last_activity: str
    expires_at: str
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    current: bool = False

    @classmethod
    def from_session(cls, session: Session, current_id: Optional[int] = None) -> "SessionInfo":
        return cls(
            id=session.id,
            created_at=session.created_at.isoformat(),
            last_activity=session.last_activity.isoformat(),
            expires_at=session.expires_at.isoformat(),
            ip_address=session.ip_address,
            user_agent=session.user_agent,
            current=session.id == current_id,
        )


class RevokedResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    revoked: int


class MessageResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    message: str


class OAuthProviderInfo(BaseModel):
    """One entry of GET /auth/providers."""

    model_config = ConfigDict(frozen=True)

    name: str
    label: str


class ErrorDetail(BaseModel):
    """Machine-readable error payload."""

    model_config = ConfigDict(frozen=True)

    code: str
    message: str
    detail: Optional[str] = None


class ErrorResponse(BaseModel):
    """Top-level error envelope returned on 4xx/5xx responses."""

    model_config = ConfigDict(frozen=True)

    error: ErrorDetail


class HealthResponse(BaseModel):
    """Response for GET /api/v1/health."""

    model_config = ConfigDict(frozen=True)

    status: str = "healthy"
    version: str
    components: dict[str, str] = Field(default_factory=dict)
