"""
auth/service.py -- AuthService: the account workflows callers actually use.

Pattern: Facade. Composes an AuthProvider (who the user is), a SessionManager
(whether they are signed in), a TokenService (proof of inbox ownership), an
EmailSender and an UploadStore into complete flows: sign-up, sign-in,
password reset, email verification, profile and avatar changes, password
change and account deletion.

Rules the workflows keep:
  - Password-reset requests succeed whether or not the email is registered.
  - Email delivery never rolls back the step that triggered it. Sign-up and
    reset requests log a failed send and carry on; a verification request
    reports it, since sending is its whole purpose.
  - Completing a password reset ends every session of the account. Changing
    the password ends every session except the caller's own.
  - Account deletion always ends the user's sessions, even if the delete
    itself fails part-way. The avatar file is only removed once the delete
    succeeded.

Rate limiting is not done here; api/ checks the limiter before calling in.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from urllib.parse import urlencode

from auth.audit import log_auth_event
from auth.mailer import EmailResult, EmailSender
from auth.models import (
    EMAIL_VERIFICATION,
    PASSWORD_RESET,
    AuthConfiguration,
    AuthResult,
    OAuthProviderInfo,
    OAuthResult,
    ProfileUpdate,
    Session,
    SessionValidation,
    SignInResult,
    User,
)
from auth.provider import USER_NOT_FOUND, AuthProvider
from auth.sessions import SessionManager
from auth.tokens import normalize_email, password_policy_error
from auth.uploads import ALLOWED_IMAGE_TYPES, AvatarFile, UploadStore
from auth.verification import TokenService
from core.config import Settings, get_settings

logger = logging.getLogger("authcore.service")

EMAIL_REQUIRED = "Email is required"
PASSWORD_REQUIRED = "Password is required"
INVALID_RESET_TOKEN = "Invalid or expired reset token"
INVALID_VERIFICATION_TOKEN = "Invalid or expired verification token"
ALREADY_VERIFIED = "Email is already verified"
INVALID_FILE_TYPE = "Invalid file type. Allowed: JPEG, PNG, GIF, WebP"
EMPTY_FILE = "File is empty"

AVATAR_FOLDER = "avatars"


class AuthService:
    def __init__(
        self,
        provider: AuthProvider,
        sessions: SessionManager,
        tokens: TokenService,
        email_sender: EmailSender,
        uploads: UploadStore,
        settings: Settings | None = None,
    ) -> None:
        self.provider = provider
        self.sessions = sessions
        self.tokens = tokens
        self.email_sender = email_sender
        self.uploads = uploads
        self._settings = settings or get_settings()

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _link(self, path: str, token: str, email: str) -> str:
        base = self._settings.app_url.rstrip("/")
        return f"{base}/{path}?{urlencode({'token': token, 'email': email})}"

    def _deliver(self, kind: str, send: Callable[[], EmailResult]) -> EmailResult:
        try:
            result = send()
        except Exception:
            logger.exception("Email sender raised while sending %s email", kind)
            return EmailResult(success=False, error="Failed to send email")
        if not result.success:
            logger.warning("%s email not delivered: %s", kind, result.error)
        return result

    def _discard_file(self, url: str) -> None:
        """Best-effort removal of a stored upload; a leftover file is not worth failing over."""
        try:
            result = self.uploads.delete_file(url)
        except Exception:
            logger.exception("Could not delete upload %s", url)
            return
        if not result.success:
            logger.info("Upload %s not deleted: %s", url, result.error)

    def _find_user(self, user_id: str) -> User | None:
        return self.provider.get_user_by_id(user_id).user

    # ------------------------------------------------------------------
    # Sign-up / sign-in / sign-out
    # ------------------------------------------------------------------

    def sign_up(
        self,
        email: str,
        password: str,
        name: str | None = None,
        client_ip: str | None = None,
        user_agent: str | None = None,
    ) -> SignInResult:
        result = self.provider.create_user(email, password, name)
        if not result.success:
            log_auth_event("signup", False, email=email, ip_address=client_ip, error=result.error)
            return SignInResult(success=False, error=result.error)

        user = result.user
        session = self.sessions.create_session(user, client_ip, user_agent)
        self._deliver("welcome", lambda: self.email_sender.send_welcome_email(user.email, user))
        log_auth_event("signup", True, email=user.email, user_id=user.id, ip_address=client_ip)
        return SignInResult(success=True, user=user, session=session)

    def sign_in(
        self,
        email: str,
        password: str,
        client_ip: str | None = None,
        user_agent: str | None = None,
    ) -> SignInResult:
        if not email or not email.strip():
            return SignInResult(success=False, error=EMAIL_REQUIRED)
        if not password:
            return SignInResult(success=False, error=PASSWORD_REQUIRED)

        result = self.provider.authenticate_user(email, password)
        if not result.success:
            log_auth_event("login", False, email=email, ip_address=client_ip, error=result.error)
            return SignInResult(success=False, error=result.error)

        session = self.sessions.create_session(result.user, client_ip, user_agent)
        log_auth_event("login", True, email=result.user.email, user_id=result.user.id, ip_address=client_ip)
        return SignInResult(success=True, user=result.user, session=session)

    def sign_out(self, session_token: str | None) -> AuthResult:
        session = self.sessions.get_session(session_token)
        self.sessions.destroy_session(session_token)
        if session is not None:
            log_auth_event("logout", True, user_id=session.user_id)
        return AuthResult.ok()

    def get_current_user(
        self, session_token: str | None, client_ip: str | None = None, user_agent: str | None = None
    ) -> SessionValidation:
        return self.sessions.validate_session(session_token, client_ip, user_agent)

    # ------------------------------------------------------------------
    # Password reset
    # ------------------------------------------------------------------

    def request_password_reset(self, email: str) -> AuthResult:
        """Email a reset link if the account exists. Reports success either way."""
        email = normalize_email(email)
        user = self.provider.get_user_by_email(email).user if email else None
        if user is None:
            logger.info("Password reset requested for an unknown email")
            return AuthResult.ok()

        issued = self.tokens.create_token(email, PASSWORD_RESET, self._settings.password_reset_ttl_minutes)
        url = self._link("reset-password", issued.token, email)
        self._deliver(
            "password_reset",
            lambda: self.email_sender.send_password_reset_email(email, issued.token, url, user),
        )
        return AuthResult.ok()

    def complete_password_reset(self, email: str, token: str, new_password: str) -> AuthResult:
        email = normalize_email(email)
        # Policy first, so a weak password does not burn the token.
        policy_error = password_policy_error(new_password, self._settings.password_min_length)
        if policy_error:
            return AuthResult.fail(policy_error)

        if not self.tokens.verify_token(token, email, PASSWORD_RESET).valid:
            log_auth_event("password_reset", False, email=email, error=INVALID_RESET_TOKEN)
            return AuthResult.fail(INVALID_RESET_TOKEN)

        user = self.provider.get_user_by_email(email).user
        if user is None:
            return AuthResult.fail(USER_NOT_FOUND)

        result = self.provider.reset_user_password(user.id, new_password)
        if not result.success:
            return result
        self.sessions.invalidate_user_sessions(user.id, "password_reset")
        log_auth_event("password_reset", True, email=email, user_id=user.id)
        return result

    # ------------------------------------------------------------------
    # Email verification
    # ------------------------------------------------------------------

    def request_email_verification(self, email: str) -> AuthResult:
        email = normalize_email(email)
        user = self.provider.get_user_by_email(email).user if email else None
        if user is None:
            return AuthResult.fail(USER_NOT_FOUND)
        if user.email_verified is not None:
            return AuthResult.fail(ALREADY_VERIFIED)

        issued = self.tokens.create_token(email, EMAIL_VERIFICATION, self._settings.email_verification_ttl_minutes)
        url = self._link("verify-email", issued.token, email)
        sent = self._deliver(
            "verification",
            lambda: self.email_sender.send_verification_email(email, issued.token, url, user),
        )
        if not sent.success:
            return AuthResult.fail(sent.error or "Failed to send verification email")
        return AuthResult.ok(user)

    def complete_email_verification(self, email: str, token: str) -> AuthResult:
        email = normalize_email(email)
        if not self.tokens.verify_token(token, email, EMAIL_VERIFICATION).valid:
            log_auth_event("email_verification", False, email=email, error=INVALID_VERIFICATION_TOKEN)
            return AuthResult.fail(INVALID_VERIFICATION_TOKEN)

        user = self.provider.get_user_by_email(email).user
        if user is None:
            return AuthResult.fail(USER_NOT_FOUND)
        result = self.provider.verify_user_email(user.id)
        if result.success:
            log_auth_event("email_verification", True, email=email, user_id=user.id)
        return result

    # ------------------------------------------------------------------
    # Profile and avatar
    # ------------------------------------------------------------------

    def get_user_profile(self, user_id: str) -> AuthResult:
        return self.provider.get_user_by_id(user_id)

    def update_profile(self, user_id: str, update: ProfileUpdate) -> AuthResult:
        # A changed email clears email_verified inside the provider.
        return self.provider.update_user(user_id, update)

    def upload_avatar(self, user_id: str, avatar: AvatarFile) -> AuthResult:
        user = self._find_user(user_id)
        if user is None:
            return AuthResult.fail(USER_NOT_FOUND)
        if avatar.content_type not in ALLOWED_IMAGE_TYPES:
            return AuthResult.fail(INVALID_FILE_TYPE)
        if avatar.size == 0:
            return AuthResult.fail(EMPTY_FILE)
        max_bytes = self._settings.avatar_max_bytes
        if avatar.size > max_bytes:
            return AuthResult.fail(f"File too large. Maximum size is {max_bytes // (1024 * 1024)}MB")

        uploaded = self.uploads.upload_file(avatar.data, avatar.filename, avatar.content_type, AVATAR_FOLDER)
        if not uploaded.success:
            return AuthResult.fail(uploaded.error or "Upload failed")

        result = self.provider.update_user(user_id, ProfileUpdate(image=uploaded.url))
        if not result.success:
            self._discard_file(uploaded.url)
            return result
        if user.image and user.image != uploaded.url:
            self._discard_file(user.image)
        return result

    def delete_avatar(self, user_id: str) -> AuthResult:
        user = self._find_user(user_id)
        if user is None:
            return AuthResult.fail(USER_NOT_FOUND)
        if not user.image:
            return AuthResult.ok(user)
        result = self.provider.update_user(user_id, ProfileUpdate(image=""))
        if result.success:
            self._discard_file(user.image)
        return result

    # ------------------------------------------------------------------
    # Account and credentials
    # ------------------------------------------------------------------

    def delete_account(self, user_id: str) -> AuthResult:
        user = self._find_user(user_id)
        try:
            result = self.provider.delete_user(user_id)
        finally:
            self.sessions.invalidate_user_sessions(user_id, "account_deleted")
            if user is not None:
                self.tokens.delete_tokens_for_identifier(user.email)
        if result.success and user is not None and user.image:
            self._discard_file(user.image)
        log_auth_event(
            "account_deleted",
            result.success,
            email=user.email if user else None,
            user_id=user_id,
            error=result.error,
        )
        return result

    def change_password(
        self,
        user_id: str,
        current_password: str,
        new_password: str,
        current_session_token: str | None = None,
    ) -> AuthResult:
        result = self.provider.change_user_password(user_id, current_password, new_password)
        if not result.success:
            log_auth_event("password_change", False, user_id=user_id, error=result.error)
            return result
        ended = self.sessions.invalidate_user_sessions(
            user_id, "password_change", except_token=current_session_token
        )
        log_auth_event("password_change", True, user_id=user_id, sessions_ended=ended)
        return result

    # ------------------------------------------------------------------
    # Sessions
    # ------------------------------------------------------------------

    def list_sessions(self, user_id: str) -> list[Session]:
        return self.sessions.get_user_sessions(user_id)

    def sign_out_everywhere(self, user_id: str, keep_session_token: str | None = None) -> int:
        ended = self.sessions.invalidate_user_sessions(user_id, "logout", except_token=keep_session_token)
        log_auth_event("session_revoked", True, user_id=user_id, sessions_ended=ended)
        return ended

    # ------------------------------------------------------------------
    # OAuth and configuration
    # ------------------------------------------------------------------

    def sign_in_with_oauth(self, provider: str) -> OAuthResult:
        return self.provider.sign_in_with_oauth(provider)

    def complete_oauth_sign_in(
        self,
        provider: str,
        email: str,
        subject: str,
        name: str | None = None,
        client_ip: str | None = None,
        user_agent: str | None = None,
    ) -> SignInResult:
        result = self.provider.complete_oauth_sign_in(provider, email, subject, name)
        if not result.success:
            log_auth_event("oauth_login", False, email=email, ip_address=client_ip, error=result.error, provider=provider)
            return SignInResult(success=False, error=result.error)
        session = self.sessions.create_session(result.user, client_ip, user_agent)
        log_auth_event("oauth_login", True, email=result.user.email, user_id=result.user.id, provider=provider)
        return SignInResult(success=True, user=result.user, session=session)

    def get_available_oauth_providers(self) -> list[OAuthProviderInfo]:
        return self.provider.get_available_oauth_providers()

    def get_configuration(self) -> AuthConfiguration:
        return self.provider.get_configuration()

    def is_configured(self) -> bool:
        return self.provider.is_configured()

    # ------------------------------------------------------------------
    # Maintenance
    # ------------------------------------------------------------------

    def cleanup(self) -> dict[str, int]:
        """Run the token and session expiry sweeps. Safe alongside live traffic."""
        return {
            "tokens": self.tokens.cleanup_expired_tokens(),
            "sessions": self.sessions.cleanup_expired_sessions(),
        }
