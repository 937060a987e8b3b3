"""
api/limiter.py -- HTTP-level throttles.

Two layers, applied in this order on credential routes:

  limiter            slowapi, per client IP, in memory. A coarse cap
                     (settings.login_rate_limit) that stops one address from
                     hammering sign-in/sign-up with many different emails.
  enforce_rate_limit per (identifier, action) via ratelimit.RateLimiter,
                     persisted in the database, with lockout. This is the
                     policy that protects an individual account.

A single shared slowapi instance is imported by api/main.py (middleware) and
the routers (@limiter.limit()); separate instances would each keep their own
counters and never trigger.
"""

from __future__ import annotations

from fastapi import HTTPException, Request
from slowapi import Limiter
from slowapi.util import get_remote_address

from auth.audit import log_security_event
from core.config import get_settings
from ratelimit.limiter import RateLimiter
from ratelimit.models import RateLimitResult

limiter = Limiter(key_func=get_remote_address, storage_uri="memory://")

LOGIN_RATE_LIMIT = get_settings().login_rate_limit


def enforce_rate_limit(request: Request, identifier: str, action: str) -> RateLimitResult:
    """Consume one admission for (identifier, action) or raise HTTP 429.

    The limiter fails closed: a storage error propagates and the catch-all
    handler answers 500, so the protected action never runs unchecked.
    """
    rate_limiter: RateLimiter = request.app.state.rate_limiter
    client = request.client.host if request.client else None
    result = rate_limiter.check_rate_limit(identifier, action, client)
    if result.allowed:
        return result

    if result.locked:
        log_security_event(
            "brute_force",
            "high",
            email=identifier if "@" in identifier else None,
            ip_address=client,
            action_taken=f"{action}_locked",
        )
        message = "Too many attempts. Try again later."
        code = "locked"
    else:
        message = "Too many requests."
        code = "rate_limited"
    headers = {"Retry-After": str(result.retry_after)} if result.retry_after else None
    raise HTTPException(
        status_code=429,
        detail={
            "code": code,
            "message": message,
            "detail": result.reset_time.isoformat() if result.reset_time else None,
        },
        headers=headers,
    )


def api_quota(request: Request) -> None:
    """Router dependency: per-IP token bucket ("api" policy) for authenticated routes."""
    enforce_rate_limit(request, request.client.host if request.client else "unknown", "api")
