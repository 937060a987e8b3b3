"""
auth/audit.py -- Structured auth and security event logging.

Everything goes through the "authcore.audit" logger as one line of key=value
pairs, so a log shipper can index it without a JSON formatter. Personal data
is masked before it reaches the log:

    mask_email("john@example.com") -> "jo***@example.com"
    mask_ip("203.0.113.42")        -> "203.0.113.x"

Levels: successful auth events INFO, failed ones WARNING. Security events map
severity low -> INFO, medium -> WARNING, high/critical -> ERROR.
"""

from __future__ import annotations

import logging

logger = logging.getLogger("authcore.audit")

AUTH_EVENTS = {
    "login",
    "signup",
    "logout",
    "password_change",
    "password_reset",
    "email_verification",
    "oauth_login",
    "account_deleted",
    "session_revoked",
}

SECURITY_EVENTS = {"brute_force", "suspicious_session"}

_SEVERITY_LEVELS = {
    "low": logging.INFO,
    "medium": logging.WARNING,
    "high": logging.ERROR,
    "critical": logging.ERROR,
}


def mask_email(email: str | None) -> str | None:
    if not email:
        return None
    local, sep, domain = email.partition("@")
    if not sep:
        return "***"
    return f"{local[:2]}***@{domain}"


def mask_ip(ip: str | None) -> str | None:
    if not ip:
        return None
    parts = ip.split(".")
    if len(parts) == 4:
        return ".".join(parts[:3] + ["x"])
    if ":" in ip:
        # IPv6: keep the routing prefix only.
        return ":".join(ip.split(":")[:4]) + "::x"
    return ip


def _format(fields: dict) -> str:
    return " ".join(f"{k}={v}" for k, v in fields.items() if v is not None)


def log_auth_event(
    event: str,
    success: bool,
    email: str | None = None,
    user_id: str | None = None,
    ip_address: str | None = None,
    error: str | None = None,
    **extra,
) -> None:
    if event not in AUTH_EVENTS:
        raise ValueError(f"Unknown auth event: {event!r}")
    fields = {
        "event": event,
        "success": str(success).lower(),
        "user_id": user_id,
        "email": mask_email(email),
        "ip": mask_ip(ip_address),
        "error": f'"{error}"' if error else None,
        **extra,
    }
    logger.log(logging.INFO if success else logging.WARNING, "auth %s", _format(fields))


def log_security_event(
    event: str,
    severity: str,
    email: str | None = None,
    user_id: str | None = None,
    ip_address: str | None = None,
    action_taken: str | None = None,
    **details,
) -> None:
    if event not in SECURITY_EVENTS:
        raise ValueError(f"Unknown security event: {event!r}")
    fields = {
        "event": event,
        "severity": severity,
        "user_id": user_id,
        "email": mask_email(email),
        "ip": mask_ip(ip_address),
        "action_taken": action_taken,
        **details,
    }
    logger.log(_SEVERITY_LEVELS.get(severity, logging.WARNING), "security %s", _format(fields))
