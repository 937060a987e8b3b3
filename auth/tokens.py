"""
auth/tokens.py -- Password hashing, opaque token, and input normalization utilities.

Security design decisions:
  Passwords: bcrypt used directly. Bcrypt is the right choice for low-entropy
       secrets (passwords) because its cost factor makes brute-force expensive.
       The _DUMMY_HASH constant enables timing equalization in the providers'
       authenticate_user() so response time does not reveal whether an email
       is registered [C1].

  Opaque tokens (sessions, password reset, email verification):
       secrets.token_hex(32) gives 256 bits of entropy -- brute-force is
       computationally infeasible. We store HMAC-SHA256(SECRET_KEY, raw) so
       lookup is O(1) and a leaked database does not yield usable tokens.
       bcrypt's intentional slowness is unnecessary for high-entropy secrets.

  SECRET_KEY: sourced from core.config.get_settings() unless the caller passes
       one explicitly (SessionManager and TokenService do, so tests can pin it).

Layer rule: no imports from api/ or ratelimit/. Import from core/ is allowed.
"""

from __future__ import annotations

import hashlib
import hmac
import logging
import re
import secrets
from datetime import datetime, timezone

import bcrypt

from core.config import get_settings

logger = logging.getLogger("authcore.auth")

_settings = get_settings()

_EMAIL_RE = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")

# ---------------------------------------------------------------------------
# Clock
# ---------------------------------------------------------------------------


def utcnow() -> datetime:
    """Default clock for every time-dependent component. Always timezone-aware UTC."""
    return datetime.now(timezone.utc)


def to_epoch(value: datetime) -> float:
    return value.timestamp()


def from_epoch(value: float | None) -> datetime | None:
    if value is None:
        return None
    return datetime.fromtimestamp(value, tz=timezone.utc)


# ---------------------------------------------------------------------------
# Password hashing (bcrypt -- direct usage, no passlib wrapper)
# ---------------------------------------------------------------------------


def hash_password(plain: str) -> str:
    """Return a bcrypt hash of the given plaintext password.

    Passwords longer than 72 bytes are truncated by bcrypt (a known bcrypt
    limitation). The API layer caps password fields at 255 characters.
    """
    salt = bcrypt.gensalt(rounds=_settings.bcrypt_rounds)
    return bcrypt.hashpw(plain.encode("utf-8")[:72], salt).decode("utf-8")


def verify_password(plain: str, hashed: str) -> bool:
    """Return True if the plaintext password matches the bcrypt hash."""
    try:
        return bcrypt.checkpw(plain.encode("utf-8")[:72], hashed.encode("utf-8"))
    except ValueError:
        # Malformed stored hash -- treat as a mismatch, never as a match.
        logger.warning("verify_password: stored hash is not a valid bcrypt hash")
        return False


# Timing equalization dummy hash [C1].
# Computed once at module load so the first login attempt is not measurably
# slower than subsequent ones. Providers call verify_password() against it
# when the email does not exist.
_DUMMY_HASH: str = hash_password("authcore_timing_dummy")


def burn_password_check(plain: str) -> None:
    """Spend one bcrypt verification's worth of time and discard the result [C1]."""
    verify_password(plain, _DUMMY_HASH)


# ---------------------------------------------------------------------------
# Opaque tokens
# ---------------------------------------------------------------------------


def generate_token() -> str:
    """Return 32 random bytes as 64 hex characters (256 bits of entropy)."""
    return secrets.token_hex(32)


def hash_token(raw_token: str, secret_key: str | None = None) -> str:
    """Return HMAC-SHA256(secret_key, raw_token) as a hex string.

    Deterministic, so stores can look tokens up by hash through a UNIQUE
    index instead of scanning rows.
    """
    key = secret_key if secret_key is not None else get_settings().secret_key
    return hmac.new(key.encode(), raw_token.encode(), hashlib.sha256).hexdigest()


# ---------------------------------------------------------------------------
# Input normalization and policy
# ---------------------------------------------------------------------------


def normalize_email(email: str) -> str:
    return (email or "").strip().lower()


def is_valid_email(email: str) -> bool:
    return bool(_EMAIL_RE.match(email or ""))


def password_policy_error(password: str, min_length: int | None = None) -> str | None:
    """Return the policy violation message for password, or None if acceptable."""
    minimum = min_length if min_length is not None else _settings.password_min_length
    if password is None or len(password) < minimum:
        return f"Password must be at least {minimum} characters"
    return None
