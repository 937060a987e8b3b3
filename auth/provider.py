"""
auth/provider.py -- The identity backend contract and its factory.

Pattern: Strategy. AuthService talks to an AuthProvider; which one is active
(in-memory or database) is a configuration choice made by create_provider().

Every operation returns an AuthResult. Expected failures (validation,
conflict, not-found on a mutation, bad credentials) come back as
success=False with a specific message; lookups that find nothing return
success=True with user=None. Only infrastructure faults raise.

Anti-enumeration: authenticate_user() has exactly one failure message,
"Invalid credentials", whether the email is unknown, the account has no
password, or the password is wrong. Unknown emails still pay for a bcrypt
check so timing does not tell them apart either.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import Callable
from datetime import datetime

from sqlalchemy.engine import Engine

from auth.models import AuthConfiguration, AuthResult, OAuthProviderInfo, OAuthResult, ProfileUpdate
from auth.oauth import get_enabled_providers
from auth.tokens import is_valid_email, normalize_email, password_policy_error, utcnow
from core.config import Settings, get_settings

INVALID_EMAIL = "Invalid email format"
EMAIL_EXISTS = "Email already exists"
EMAIL_IN_USE = "Email already in use"
INVALID_CREDENTIALS = "Invalid credentials"
USER_NOT_FOUND = "User not found"
WRONG_CURRENT_PASSWORD = "Current password is incorrect"
OAUTH_ACCOUNT_CONFLICT = "Account is linked to a different sign-in provider"


class AuthProvider(ABC):
    """Identity backend: user records, credentials and OAuth linking."""

    name: str = ""

    def __init__(self, settings: Settings | None = None, clock: Callable[[], datetime] = utcnow) -> None:
        self._settings = settings or get_settings()
        self._clock = clock

    # ------------------------------------------------------------------
    # Validation shared by every backend
    # ------------------------------------------------------------------

    def _check_email(self, email: str) -> str | None:
        return None if is_valid_email(email) else INVALID_EMAIL

    def _check_password(self, password: str) -> str | None:
        return password_policy_error(password, self._settings.password_min_length)

    def _check_new_credentials(self, email: str, password: str) -> str | None:
        return self._check_email(email) or self._check_password(password)

    @staticmethod
    def _clean_profile(update: ProfileUpdate) -> tuple[dict, str | None]:
        """Turn a ProfileUpdate into column changes. Returns (changes, new_email)."""
        changes: dict = {}
        if update.name is not None:
            changes["name"] = update.name.strip() or None
        if update.image is not None:
            changes["image"] = update.image or None
        new_email = normalize_email(update.email) if update.email is not None else None
        return changes, new_email

    # ------------------------------------------------------------------
    # Users and credentials
    # ------------------------------------------------------------------

    @abstractmethod
    def create_user(self, email: str, password: str, name: str | None = None) -> AuthResult: ...

    @abstractmethod
    def authenticate_user(self, email: str, password: str) -> AuthResult: ...

    @abstractmethod
    def get_user_by_id(self, user_id: str) -> AuthResult: ...

    @abstractmethod
    def get_user_by_email(self, email: str) -> AuthResult: ...

    @abstractmethod
    def update_user(self, user_id: str, update: ProfileUpdate) -> AuthResult:
        """Apply a partial profile change. A changed email resets email_verified."""

    @abstractmethod
    def delete_user(self, user_id: str) -> AuthResult: ...

    @abstractmethod
    def verify_user_email(self, user_id: str) -> AuthResult: ...

    @abstractmethod
    def change_user_password(self, user_id: str, current_password: str, new_password: str) -> AuthResult: ...

    @abstractmethod
    def reset_user_password(self, user_id: str, new_password: str) -> AuthResult:
        """Set a new password without the old one. Callers must have proven ownership."""

    @abstractmethod
    def complete_oauth_sign_in(
        self, provider: str, email: str, subject: str, name: str | None = None
    ) -> AuthResult:
        """Resolve a verified provider identity to a local user.

        Lookup order: linked (provider, subject) -> same email (link it) ->
        new password-less user with the email already verified.
        """

    # ------------------------------------------------------------------
    # Configuration and OAuth delegation
    # ------------------------------------------------------------------

    def is_configured(self) -> bool:
        return True

    def get_available_oauth_providers(self) -> list[OAuthProviderInfo]:
        return get_enabled_providers(self._settings)

    def get_configuration(self) -> AuthConfiguration:
        return AuthConfiguration(
            provider=self.name,
            oauth_providers=[p.name for p in self.get_available_oauth_providers()],
        )

    def sign_in_with_oauth(self, provider: str) -> OAuthResult:
        """Point the caller at the HTTP route that starts the provider's flow."""
        enabled = {p.name for p in self.get_available_oauth_providers()}
        if provider not in enabled:
            return OAuthResult(success=False, error=f"OAuth provider '{provider}' is not configured")
        base = self._settings.app_url.rstrip("/")
        return OAuthResult(success=True, redirect_url=f"{base}/api/v1/auth/oauth/{provider}")


def create_provider(
    settings: Settings | None = None,
    engine: Engine | None = None,
    clock: Callable[[], datetime] = utcnow,
) -> AuthProvider:
    """Build the provider named by settings.auth_provider."""
    settings = settings or get_settings()
    if settings.auth_provider == "memory":
        from auth.memory_provider import MemoryAuthProvider

        return MemoryAuthProvider(settings=settings, clock=clock)

    from auth.db_provider import DatabaseAuthProvider
    from auth.store import UserStore, open_engine

    store = UserStore(engine if engine is not None else open_engine(settings.database_url))
    return DatabaseAuthProvider(store, settings=settings, clock=clock)
