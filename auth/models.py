"""
auth/models.py -- Domain dataclasses for authentication entities and results.

Pattern: Data class (pure data container, zero logic beyond tiny factories).
Dataclasses own domain shape; stores, providers and services do the work.

Result objects (AuthResult, TokenVerification, SessionValidation, ...) carry
expected failures as data. Only infrastructure faults are raised.

Layer rule: no imports from api/ or ratelimit/.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum

# One-time token purposes used by the built-in workflows. Any other string is
# accepted by TokenService; these are just the ones AuthService issues.
PASSWORD_RESET = "password_reset"
EMAIL_VERIFICATION = "email_verification"


# ---------------------------------------------------------------------------
# Entities
# ---------------------------------------------------------------------------


@dataclass
class User:
    """An identity record as seen by everything outside the stores.

    email is always stored stripped and lower-cased. email_verified is None
    until the address is confirmed; changing the email resets it to None.

    The password hash is NOT a field here. Stores keep it on the
    row and hand it to the provider through a separate accessor, so no code
    path can serialize a User and leak the hash.
    """

    email: str
    id: str | None = None
    name: str | None = None
    image: str | None = None  # avatar URL
    email_verified: datetime | None = None
    oauth_provider: str | None = None  # "github", "google", "oidc"
    oauth_subject: str | None = None  # provider's stable user ID
    created_at: str | None = None
    updated_at: str | None = None


@dataclass
class Session:
    """One authenticated device/browser binding.

    token_hash is HMAC-SHA256(SECRET_KEY, raw_token). The raw token is handed
    to the caller once, in SessionCreated, and never persisted.
    """

    user_id: str
    token_hash: str
    created_at: datetime
    last_activity: datetime
    expires_at: datetime
    id: int | None = None
    ip_address: str | None = None
    user_agent: str | None = None
    is_active: bool = True
    ended_reason: str | None = None  # "logout", "inactivity", "concurrent_limit", ...


@dataclass
class ProfileUpdate:
    """Partial profile change. None leaves a field alone; "" clears name or image."""

    name: str | None = None
    email: str | None = None
    image: str | None = None


@dataclass
class OneTimeToken:
    """A purpose-tagged, identifier-scoped, expiring, single-use secret."""

    identifier: str
    purpose: str
    token_hash: str
    created_at: datetime
    expires_at: datetime
    id: int | None = None
    consumed_at: datetime | None = None

    @property
    def consumed(self) -> bool:
        return self.consumed_at is not None


# ---------------------------------------------------------------------------
# Results
# ---------------------------------------------------------------------------


@dataclass
class AuthResult:
    """Uniform provider/service result: success flag, optional user, optional error."""

    success: bool
    user: User | None = None
    error: str | None = None

    @classmethod
    def ok(cls, user: User | None = None) -> AuthResult:
        return cls(success=True, user=user)

    @classmethod
    def fail(cls, error: str) -> AuthResult:
        return cls(success=False, error=error)


@dataclass
class OAuthProviderInfo:
    name: str
    label: str


@dataclass
class OAuthResult:
    success: bool
    user: User | None = None
    error: str | None = None
    redirect_url: str | None = None


@dataclass
class AuthConfiguration:
    """Which identity backend is active and which OAuth providers to surface."""

    provider: str  # "database" or "memory"
    oauth_providers: list[str] = field(default_factory=list)


@dataclass
class TokenData:
    token: str  # raw value -- returned once, never stored
    purpose: str
    expires: datetime


@dataclass
class TokenVerification:
    valid: bool
    purpose: str | None = None


@dataclass
class CookieOptions:
    http_only: bool
    secure: bool
    same_site: str  # "Strict" or "Lax"
    path: str = "/"
    domain: str | None = None
    max_age: int | None = None
    expires: datetime | None = None


@dataclass
class CookieConfig:
    name: str
    options: CookieOptions


@dataclass
class SessionCreated:
    session_token: str  # raw value -- the only time it leaves the system
    expires: datetime
    cookie_options: CookieOptions


class SessionAction(str, Enum):
    """What validate_session tells the caller to do with the session."""

    REFRESH = "refresh"  # valid; last activity (and maybe expiry) bumped
    EXPIRING = "expiring"  # valid, but the absolute expiry is close
    REJECT = "reject"  # invalid; clear the cookie


@dataclass
class SessionValidation:
    valid: bool
    action: SessionAction
    user: User | None = None
    session_id: int | None = None
    expires: datetime | None = None
    ip_mismatch: bool = False
    reason: str | None = None  # why it was rejected, for logs and tests

    @classmethod
    def reject(cls, reason: str, ip_mismatch: bool = False) -> SessionValidation:
        return cls(valid=False, action=SessionAction.REJECT, reason=reason, ip_mismatch=ip_mismatch)


@dataclass
class SignInResult:
    """AuthResult plus the session established by a successful sign-in/up."""

    success: bool
    user: User | None = None
    session: SessionCreated | None = None
    error: str | None = None
