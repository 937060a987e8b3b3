"""
auth/dependencies.py -- FastAPI Depends() helpers for session authentication.

The session token is read from, in priority order:
  1. the session cookie (name from SessionConfig, default "auth_session"),
     set by sign-in / sign-up responses;
  2. an Authorization: Bearer <token> header, for non-browser clients.

Both carry the same opaque token and go through
AuthService.get_current_user() -> SessionManager.validate_session(), so
expiry, inactivity, IP policy and sliding refresh apply identically.

try_get_current_session() is the soft variant (returns None on failure).
get_current_session() / get_current_user() raise HTTP 401 instead.

Layer rule: this module may import from fastapi (it is part of the dependency
injection system) but not from api/ or ratelimit/.
"""

from __future__ import annotations

from dataclasses import dataclass

from fastapi import HTTPException, Request, Response

from auth.models import SessionAction, User


@dataclass
class CurrentSession:
    user: User
    token: str
    session_id: int
    ip_mismatch: bool = False


def client_ip(request: Request) -> str | None:
    return request.client.host if request.client else None


def session_token_from_request(request: Request) -> str | None:
    cookie_name = request.app.state.auth_service.sessions.config.cookie_name
    token = request.cookies.get(cookie_name)
    if not token:
        auth_header = request.headers.get("Authorization", "")
        if auth_header.startswith("Bearer "):
            token = auth_header[7:].strip()
    return token or None


def try_get_current_session(request: Request, response: Response | None = None) -> CurrentSession | None:
    """Validate the request's session token. Never raises for an invalid session."""
    token = session_token_from_request(request)
    if token is None:
        return None
    service = request.app.state.auth_service
    result = service.get_current_user(token, client_ip(request), request.headers.get("User-Agent"))
    if not result.valid:
        return None
    if response is not None and result.action is SessionAction.EXPIRING:
        # Lets clients prompt for re-authentication before the hard cutoff.
        response.headers["X-Session-Expires"] = result.expires.isoformat()
    return CurrentSession(user=result.user, token=token, session_id=result.session_id, ip_mismatch=result.ip_mismatch)


def get_current_session(request: Request, response: Response) -> CurrentSession:
    """Require a valid session. Raises HTTP 401 otherwise.

    Use as a FastAPI dependency:
        @router.get("/protected")
        def route(current: CurrentSession = Depends(get_current_session)): ...
    """
    current = try_get_current_session(request, response)
    if current is None:
        raise HTTPException(
            status_code=401,
            detail={"code": "unauthorized", "message": "Authentication required."},
        )
    return current


def get_current_user(request: Request, response: Response) -> User:
    return get_current_session(request, response).user
