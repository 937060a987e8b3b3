"""
core/config.py -- Centralized application configuration via pydantic-settings.

All environment variable reads for authcore happen here. No module should
call os.getenv() or os.environ.get() directly -- import get_settings() instead.

Design patterns used:
  Singleton via lru_cache: get_settings() instantiates Settings once at first
      call and returns the cached instance on every subsequent call. This is
      the official FastAPI dependency injection pattern for config.

  BaseSettings (pydantic-settings): Reads values from environment variables
      and an optional .env file automatically. Field names map to env var names
      (e.g. secret_key -> SECRET_KEY). Type coercion and validation are built in.

  @model_validator(mode="after"): Runs cross-field validation after all fields
      are resolved from environment. Used for the DEBUG-conditional SECRET_KEY
      rule and for rejecting session limits that would make every session unusable.

Security notes:
  [M6] SECRET_KEY shorter than 32 chars is rejected outright. Session tokens
       and one-time tokens are stored as HMAC-SHA256(SECRET_KEY, token), so a
       short key weakens every stored credential at once.

  [M7] In production mode (DEBUG not set or false), a missing SECRET_KEY is a
       hard startup failure. A random key per restart would make every stored
       token hash unverifiable, which silently logs everybody out.

Layer rule: core/ is the kernel. This module may not import from api/,
auth/ or ratelimit/.
"""

import logging
import secrets
from functools import lru_cache
from pathlib import Path
from typing import Literal

from pydantic import model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger("authcore.config")

_PROJECT_ROOT = Path(__file__).resolve().parent.parent


class Settings(BaseSettings):
    """Application settings loaded from environment variables and .env file.

    All fields have defaults so Settings() can be instantiated in test
    environments without a real .env file. The model_validator enforces
    production-safety rules at startup.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # ------------------------------------------------------------------
    # Core
    # ------------------------------------------------------------------

    debug: bool = False
    # development / test relax cookie flags so local HTTP flows work.
    environment: Literal["development", "test", "production"] = "production"
    # Empty string is the sentinel for "not configured". The model_validator
    # below either generates a dev key or raises, so callers never see "".
    secret_key: str = ""
    database_url: str = f"sqlite:///{_PROJECT_ROOT / 'auth' / 'authcore.db'}"
    app_url: str = "http://localhost:8000"

    # ------------------------------------------------------------------
    # Identity provider
    # ------------------------------------------------------------------

    auth_provider: Literal["database", "memory"] = "database"
    password_min_length: int = 8
    # bcrypt work factor. Tests lower it to 4 to keep the suite fast.
    bcrypt_rounds: int = 12

    # ------------------------------------------------------------------
    # Sessions
    # ------------------------------------------------------------------

    session_max_age_seconds: int = 24 * 60 * 60
    session_inactivity_timeout_seconds: int = 60 * 60
    max_concurrent_sessions: int = 3
    session_sliding_expiry: bool = True
    # Absolute lifetime cap, as a multiple of session_max_age_seconds measured
    # from creation. Sliding refresh never extends a session past it.
    session_max_lifetime_factor: int = 3
    session_expiring_soon_seconds: int = 5 * 60
    # What validate_session does when the request IP differs from the IP the
    # session was created from: ignore it, flag it (log + report), or reject.
    session_ip_policy: Literal["ignore", "flag", "reject"] = "flag"
    session_cookie_name: str = "auth_session"
    session_cookie_domain: str = ""

    # ------------------------------------------------------------------
    # One-time tokens
    # ------------------------------------------------------------------

    password_reset_ttl_minutes: int = 60
    email_verification_ttl_minutes: int = 24 * 60

    # ------------------------------------------------------------------
    # Uploads
    # ------------------------------------------------------------------

    avatar_max_bytes: int = 5 * 1024 * 1024
    upload_dir: str = str(_PROJECT_ROOT / "uploads")
    upload_base_url: str = "/uploads"

    # ------------------------------------------------------------------
    # Email (SMTP). Empty smtp_server means emails are logged and skipped.
    # ------------------------------------------------------------------

    smtp_server: str = ""
    smtp_port: int = 587
    smtp_username: str = ""
    smtp_password: str = ""
    smtp_from: str = "no-reply@localhost"
    smtp_use_tls: bool = True

    # ------------------------------------------------------------------
    # OAuth providers (optional -- empty string means provider is disabled)
    # ------------------------------------------------------------------

    github_client_id: str = ""
    github_client_secret: str = ""
    google_client_id: str = ""
    google_client_secret: str = ""

    # Generic OIDC (Okta, Azure AD, Keycloak, Authentik, etc.)
    oidc_client_id: str = ""
    oidc_client_secret: str = ""
    oidc_discovery_url: str = ""
    oidc_display_name: str = "SSO"

    # ------------------------------------------------------------------
    # Rate limiting
    # ------------------------------------------------------------------

    # Coarse per-IP HTTP throttle on credential routes (slowapi). The
    # per-identifier policies live in ratelimit/limiter.py.
    login_rate_limit: str = "10/minute"

    # ------------------------------------------------------------------
    # Maintenance
    # ------------------------------------------------------------------

    cleanup_interval_seconds: int = 60 * 60

    # ------------------------------------------------------------------
    # Derived
    # ------------------------------------------------------------------

    @property
    def is_production(self) -> bool:
        return self.environment == "production"

    # ------------------------------------------------------------------
    # Validators
    # ------------------------------------------------------------------

    @model_validator(mode="after")
    def validate_secret_key(self) -> "Settings":
        """Enforce the SECRET_KEY policy [M7].

        Dev mode (DEBUG=true): auto-generate a random key with a warning.
            Sessions will not survive restart -- acceptable for local dev.

        Production mode (DEBUG=false or not set): refuse to start if
            SECRET_KEY is missing.

        Both modes: reject keys shorter than 32 characters [M6].
        """
        if not self.secret_key:
            if self.debug:
                self.secret_key = secrets.token_hex(32)
                logger.warning("WARNING: Using auto-generated SECRET_KEY. Sessions will not persist across restarts.")
            else:
                raise ValueError(
                    "SECRET_KEY is required in production mode. "
                    "Set SECRET_KEY in your environment or .env file. "
                    "To run in development mode, set DEBUG=true."
                )
        if len(self.secret_key) < 32:
            raise ValueError("SECRET_KEY must be at least 32 characters.")
        return self

    @model_validator(mode="after")
    def validate_session_limits(self) -> "Settings":
        """Reject session settings that would make every session unusable."""
        if self.max_concurrent_sessions < 1:
            raise ValueError("MAX_CONCURRENT_SESSIONS must be at least 1.")
        if self.session_max_age_seconds <= 0 or self.session_inactivity_timeout_seconds <= 0:
            raise ValueError("Session lifetimes must be positive.")
        if self.session_max_lifetime_factor < 1:
            raise ValueError("SESSION_MAX_LIFETIME_FACTOR must be at least 1.")
        return self


@lru_cache
def get_settings() -> Settings:
    """Return the application Settings singleton.

    Uses lru_cache so Settings() is instantiated exactly once -- at first call.
    All modules should call get_settings() rather than constructing Settings()
    directly, except tests that need an isolated configuration.

    In tests: call get_settings.cache_clear() between test cases if you need
    to inject different environment variables.
    """
    return Settings()
