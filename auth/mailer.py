"""
auth/mailer.py -- Outbound account email (reset links, verification, welcome).

AuthService only needs the EmailSender protocol. Two implementations:

  MemoryEmailSender  records every message in .sent; tests and the memory
                     provider setup use it. Can be told to fail.
  SmtpEmailSender    plain-text mail over SMTP (stdlib smtplib + STARTTLS).
                     With no SMTP server configured it logs a warning and
                     reports failure instead of raising.

Delivery problems are always returned as EmailResult(success=False, error),
never raised: a failed email must not undo the workflow that sent it.
"""

from __future__ import annotations

import logging
import smtplib
from dataclasses import dataclass, field
from email.mime.text import MIMEText
from typing import Protocol

from auth.audit import mask_email
from auth.models import User
from core.config import Settings, get_settings

logger = logging.getLogger("authcore.email")


@dataclass
class EmailResult:
    success: bool
    error: str | None = None


class EmailSender(Protocol):
    def send_password_reset_email(self, email: str, reset_token: str, reset_url: str, user: User) -> EmailResult: ...

    def send_verification_email(
        self, email: str, verification_token: str, verification_url: str, user: User
    ) -> EmailResult: ...

    def send_welcome_email(self, email: str, user: User) -> EmailResult: ...


# ---------------------------------------------------------------------------
# Message bodies
# ---------------------------------------------------------------------------


def _greeting(user: User) -> str:
    return f"Hi {user.name}," if user.name else "Hi,"


def _reset_message(user: User, reset_url: str) -> tuple[str, str]:
    body = (
        f"{_greeting(user)}\n\n"
        "Someone asked to reset the password for this account. To choose a new\n"
        f"password, open this link:\n\n{reset_url}\n\n"
        "The link works once and expires soon. If you did not ask for this,\n"
        "you can ignore this email; your password has not changed.\n"
    )
    return "Reset your password", body


def _verification_message(user: User, verification_url: str) -> tuple[str, str]:
    body = (
        f"{_greeting(user)}\n\n"
        f"Please confirm your email address by opening this link:\n\n{verification_url}\n"
    )
    return "Verify your email address", body


def _welcome_message(user: User, app_url: str) -> tuple[str, str]:
    body = f"{_greeting(user)}\n\nYour account is ready. Sign in at {app_url}\n"
    return "Welcome", body


# ---------------------------------------------------------------------------
# In-memory sender
# ---------------------------------------------------------------------------


@dataclass
class SentEmail:
    kind: str  # "password_reset", "verification", "welcome"
    to: str
    subject: str
    body: str
    data: dict = field(default_factory=dict)


class MemoryEmailSender:
    """Collects messages instead of delivering them.

    Set fail_with to an error string to make every send fail with it.
    """

    def __init__(self, app_url: str = "http://localhost:8000") -> None:
        self.app_url = app_url
        self.sent: list[SentEmail] = []
        self.fail_with: str | None = None

    def _record(self, kind: str, to: str, subject: str, body: str, **data) -> EmailResult:
        if self.fail_with:
            return EmailResult(success=False, error=self.fail_with)
        self.sent.append(SentEmail(kind=kind, to=to, subject=subject, body=body, data=data))
        return EmailResult(success=True)

    def last(self, kind: str | None = None) -> SentEmail | None:
        for message in reversed(self.sent):
            if kind is None or message.kind == kind:
                return message
        return None

    def send_password_reset_email(self, email: str, reset_token: str, reset_url: str, user: User) -> EmailResult:
        subject, body = _reset_message(user, reset_url)
        return self._record("password_reset", email, subject, body, token=reset_token, url=reset_url)

    def send_verification_email(
        self, email: str, verification_token: str, verification_url: str, user: User
    ) -> EmailResult:
        subject, body = _verification_message(user, verification_url)
        return self._record("verification", email, subject, body, token=verification_token, url=verification_url)

    def send_welcome_email(self, email: str, user: User) -> EmailResult:
        subject, body = _welcome_message(user, self.app_url)
        return self._record("welcome", email, subject, body)


# ---------------------------------------------------------------------------
# SMTP sender
# ---------------------------------------------------------------------------


class SmtpEmailSender:
    def __init__(self, settings: Settings | None = None) -> None:
        self._settings = settings or get_settings()

    def _send(self, to: str, subject: str, body: str) -> EmailResult:
        cfg = self._settings
        if not cfg.smtp_server:
            logger.warning("SMTP not configured; skipping %r email to %s", subject, mask_email(to))
            return EmailResult(success=False, error="Email delivery is not configured")

        msg = MIMEText(body, "plain")
        msg["Subject"] = subject
        msg["From"] = cfg.smtp_from
        msg["To"] = to
        try:
            with smtplib.SMTP(cfg.smtp_server, cfg.smtp_port, timeout=10) as server:
                server.ehlo()
                if cfg.smtp_use_tls:
                    server.starttls()
                    server.ehlo()
                if cfg.smtp_username:
                    server.login(cfg.smtp_username, cfg.smtp_password)
                server.sendmail(cfg.smtp_from, [to], msg.as_string())
        except (smtplib.SMTPException, OSError) as exc:
            logger.error("Failed to send %r email to %s: %s", subject, mask_email(to), exc)
            return EmailResult(success=False, error="Failed to send email")

        logger.info("Sent %r email to %s", subject, mask_email(to))
        return EmailResult(success=True)

    def send_password_reset_email(self, email: str, reset_token: str, reset_url: str, user: User) -> EmailResult:
        return self._send(email, *_reset_message(user, reset_url))

    def send_verification_email(
        self, email: str, verification_token: str, verification_url: str, user: User
    ) -> EmailResult:
        return self._send(email, *_verification_message(user, verification_url))

    def send_welcome_email(self, email: str, user: User) -> EmailResult:
        return self._send(email, *_welcome_message(user, self._settings.app_url))
