"""
auth/sessions.py -- Server-side session lifecycle.

A session is an opaque random token handed to the client (cookie or Bearer
header) plus a user_sessions row keyed by HMAC(SECRET_KEY, token). Nothing
about the user lives in the token itself, so revocation is immediate: flip
is_active and the next validate_session() rejects it.

Lifetimes:
  expires_at       absolute expiry, initially created_at + max_age.
  sliding expiry   every successful validation moves expires_at to
                   now + max_age, but never past created_at + factor * max_age.
  inactivity       a session unused for longer than inactivity_timeout is
                   rejected even if expires_at is still in the future.

Concurrency cap:
  create_session() holds a per-user lock while it counts the user's active
  sessions and evicts the oldest (by created_at) until there is room, so two
  simultaneous sign-ins cannot both squeeze under the cap.

IP binding (session_ip_policy):
  ignore  the request IP is not compared.
  flag    a mismatch is logged as a suspicious_session event and reported via
          SessionValidation.ip_mismatch, but the session stays valid.
  reject  a mismatch ends the session (ended_reason="ip_mismatch").
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timedelta
from email.utils import format_datetime

from auth.audit import log_security_event
from auth.models import (
    CookieConfig,
    CookieOptions,
    Session,
    SessionAction,
    SessionCreated,
    SessionValidation,
    User,
)
from auth.store import SessionStore
from auth.tokens import generate_token, hash_token, utcnow
from core.config import Settings

logger = logging.getLogger("authcore.sessions")

_EPOCH_HTTP_DATE = "Thu, 01 Jan 1970 00:00:00 GMT"

# Users share a fixed pool of locks; two users on one stripe merely serialize.
LOCK_STRIPES = 256


@dataclass
class SessionConfig:
    max_age_seconds: int = 24 * 60 * 60
    inactivity_timeout_seconds: int = 60 * 60
    max_concurrent_sessions: int = 3
    sliding_expiry: bool = True
    max_lifetime_factor: int = 3
    expiring_soon_seconds: int = 5 * 60
    ip_policy: str = "flag"
    cookie_name: str = "auth_session"
    cookie_domain: str | None = None
    secure_cookies: bool = True
    same_site: str = "Strict"

    @classmethod
    def from_settings(cls, settings: Settings) -> SessionConfig:
        # Local HTTP (development/test) cannot carry Secure cookies.
        return cls(
            max_age_seconds=settings.session_max_age_seconds,
            inactivity_timeout_seconds=settings.session_inactivity_timeout_seconds,
            max_concurrent_sessions=settings.max_concurrent_sessions,
            sliding_expiry=settings.session_sliding_expiry,
            max_lifetime_factor=settings.session_max_lifetime_factor,
            expiring_soon_seconds=settings.session_expiring_soon_seconds,
            ip_policy=settings.session_ip_policy,
            cookie_name=settings.session_cookie_name,
            cookie_domain=settings.session_cookie_domain or None,
            secure_cookies=settings.is_production,
            same_site="Strict" if settings.is_production else "Lax",
        )


class SessionManager:
    """Creates, validates and ends sessions.

    user_loader maps a user id to a User (or None if the account is gone); it
    keeps this module independent of which AuthProvider is in use.
    """

    def __init__(
        self,
        store: SessionStore,
        user_loader: Callable[[str], User | None],
        config: SessionConfig | None = None,
        clock: Callable[[], datetime] = utcnow,
        secret_key: str | None = None,
    ) -> None:
        self._store = store
        self._load_user = user_loader
        self.config = config or SessionConfig()
        self._clock = clock
        self._secret_key = secret_key
        self._user_locks = [threading.Lock() for _ in range(LOCK_STRIPES)]

    def _hash(self, raw: str) -> str:
        return hash_token(raw, self._secret_key)

    def _user_lock(self, user_id: str) -> threading.Lock:
        return self._user_locks[hash(user_id) % LOCK_STRIPES]

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def create_session(
        self, user: User, client_ip: str | None = None, user_agent: str | None = None
    ) -> SessionCreated:
        cfg = self.config
        with self._user_lock(user.id):
            now = self._clock()
            self._store.deactivate_expired(now, user_id=user.id)

            active = []
            idle_limit = timedelta(seconds=cfg.inactivity_timeout_seconds)
            for session in self._store.active_sessions(user.id):
                if now - session.last_activity > idle_limit:
                    self._store.deactivate(session.id, "inactivity")
                else:
                    active.append(session)

            while len(active) >= cfg.max_concurrent_sessions:
                oldest = active.pop(0)
                self._store.deactivate(oldest.id, "concurrent_limit")
                logger.info("Evicted session %s for user %s (concurrent limit)", oldest.id, user.id)

            raw = generate_token()
            expires = now + timedelta(seconds=cfg.max_age_seconds)
            self._store.create_session(
                Session(
                    user_id=user.id,
                    token_hash=self._hash(raw),
                    created_at=now,
                    last_activity=now,
                    expires_at=expires,
                    ip_address=client_ip,
                    user_agent=user_agent,
                )
            )
        return SessionCreated(session_token=raw, expires=expires, cookie_options=self._cookie_options(expires))

    def validate_session(
        self, token: str | None, client_ip: str | None = None, user_agent: str | None = None
    ) -> SessionValidation:
        """Check a presented token and refresh the session when it is good."""
        if not token:
            return SessionValidation.reject("missing")
        session = self._store.get_by_token_hash(self._hash(token))
        if session is None:
            return SessionValidation.reject("unknown")
        if not session.is_active:
            return SessionValidation.reject("inactive")

        cfg = self.config
        now = self._clock()
        if now >= session.expires_at:
            self._store.deactivate(session.id, "timeout")
            return SessionValidation.reject("expired")
        if now - session.last_activity > timedelta(seconds=cfg.inactivity_timeout_seconds):
            self._store.deactivate(session.id, "inactivity")
            return SessionValidation.reject("inactivity")

        ip_mismatch = bool(
            cfg.ip_policy != "ignore" and client_ip and session.ip_address and client_ip != session.ip_address
        )
        if ip_mismatch:
            if cfg.ip_policy == "reject":
                self._store.deactivate(session.id, "ip_mismatch")
                log_security_event(
                    "suspicious_session",
                    "high",
                    user_id=session.user_id,
                    ip_address=client_ip,
                    action_taken="session_ended",
                )
                return SessionValidation.reject("ip_mismatch", ip_mismatch=True)
            log_security_event(
                "suspicious_session",
                "medium",
                user_id=session.user_id,
                ip_address=client_ip,
                action_taken="flagged",
            )

        user = self._load_user(session.user_id)
        if user is None:
            self._store.deactivate(session.id, "security")
            return SessionValidation.reject("user_missing")

        expires = session.expires_at
        if cfg.sliding_expiry:
            ceiling = session.created_at + timedelta(seconds=cfg.max_age_seconds * cfg.max_lifetime_factor)
            expires = max(expires, min(now + timedelta(seconds=cfg.max_age_seconds), ceiling))
        if not self._store.touch(session.id, now, expires):
            # Ended by another request between the read and the refresh.
            return SessionValidation.reject("inactive")

        if expires - now <= timedelta(seconds=cfg.expiring_soon_seconds):
            action = SessionAction.EXPIRING
        else:
            action = SessionAction.REFRESH
        return SessionValidation(
            valid=True,
            action=action,
            user=user,
            session_id=session.id,
            expires=expires,
            ip_mismatch=ip_mismatch,
        )

    def destroy_session(self, token: str | None) -> None:
        """End the session for token. Unknown or already-ended tokens are a no-op."""
        if not token:
            return
        session = self._store.get_by_token_hash(self._hash(token))
        if session is not None and session.is_active:
            self._store.deactivate(session.id, "logout")

    def get_session(self, token: str | None) -> Session | None:
        if not token:
            return None
        return self._store.get_by_token_hash(self._hash(token))

    def invalidate_user_sessions(self, user_id: str, reason: str = "security", except_token: str | None = None) -> int:
        """End every active session of user_id, optionally sparing the one behind except_token."""
        except_id = None
        if except_token:
            keep = self.get_session(except_token)
            if keep is not None and keep.user_id == user_id:
                except_id = keep.id
        with self._user_lock(user_id):
            count = self._store.deactivate_for_user(user_id, reason, except_id=except_id)
        if count:
            logger.info("Ended %d session(s) for user %s (%s)", count, user_id, reason)
        return count

    def get_user_sessions(self, user_id: str) -> list[Session]:
        """Active, unexpired sessions of user_id, most recently used first."""
        now = self._clock()
        sessions = [s for s in self._store.active_sessions(user_id) if s.expires_at > now]
        return sorted(sessions, key=lambda s: s.last_activity, reverse=True)

    def cleanup_expired_sessions(self) -> int:
        removed = self._store.delete_expired(self._clock())
        if removed:
            logger.info("Removed %d expired or ended session(s)", removed)
        return removed

    # ------------------------------------------------------------------
    # Cookies
    # ------------------------------------------------------------------

    def _cookie_options(self, expires: datetime | None = None) -> CookieOptions:
        cfg = self.config
        return CookieOptions(
            http_only=True,
            secure=cfg.secure_cookies,
            same_site=cfg.same_site,
            path="/",
            domain=cfg.cookie_domain,
            max_age=cfg.max_age_seconds,
            expires=expires,
        )

    def get_cookie_config(self) -> CookieConfig:
        return CookieConfig(name=self.config.cookie_name, options=self._cookie_options())

    def _cookie_attributes(self) -> list[str]:
        opts = self._cookie_options()
        attrs = ["HttpOnly", f"SameSite={opts.same_site}"]
        if opts.secure:
            attrs.append("Secure")
        if opts.domain:
            attrs.append(f"Domain={opts.domain}")
        return attrs

    def create_cookie_string(self, token: str, expires: datetime) -> str:
        """Set-Cookie header value carrying token until expires."""
        max_age = max(0, int((expires - self._clock()).total_seconds()))
        parts = [
            f"{self.config.cookie_name}={token}",
            "Path=/",
            f"Expires={format_datetime(expires, usegmt=True)}",
            f"Max-Age={max_age}",
        ]
        return "; ".join(parts + self._cookie_attributes())

    def create_clear_cookie_string(self) -> str:
        """Set-Cookie header value that makes the browser drop the session cookie."""
        parts = [f"{self.config.cookie_name}=", "Path=/", f"Expires={_EPOCH_HTTP_DATE}", "Max-Age=0"]
        return "; ".join(parts + self._cookie_attributes())
