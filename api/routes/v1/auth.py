"""
api/routes/v1/auth.py -- Account, session and OAuth REST endpoints.

Routes:
  POST   /api/v1/auth/signup                    -- create account; sets session cookie
  POST   /api/v1/auth/signin                    -- password sign-in; sets session cookie
  POST   /api/v1/auth/signout                   -- end current session; clears cookie
  GET    /api/v1/auth/me                        -- current user (requires auth)
  GET    /api/v1/auth/sessions                  -- active sessions (requires auth)
  DELETE /api/v1/auth/sessions                  -- sign out all other sessions (requires auth)
  POST   /api/v1/auth/password-reset/request    -- email a reset link (always 200)
  POST   /api/v1/auth/password-reset/complete   -- set new password with a reset token
  POST   /api/v1/auth/verify-email/request      -- email a verification link (requires auth)
  POST   /api/v1/auth/verify-email/complete     -- confirm email with a verification token
  PATCH  /api/v1/auth/profile                   -- update name / email (requires auth)
  POST   /api/v1/auth/password                  -- change password (requires auth)
  POST   /api/v1/auth/avatar                    -- upload avatar image (requires auth)
  DELETE /api/v1/auth/avatar                    -- remove avatar (requires auth)
  DELETE /api/v1/auth/account                   -- delete account; clears cookie (requires auth)
  GET    /api/v1/auth/providers                 -- enabled OAuth providers (public)
  GET    /api/v1/auth/oauth/{provider}          -- start OAuth flow
  GET    /api/v1/auth/oauth/{provider}/callback -- finish OAuth flow; sets cookie, redirects

Security:
  [H2] signin/signup carry the slowapi per-IP cap and the per-email policy
       ("login" / "signup") with lockout. Locked or exhausted -> 429 with
       Retry-After. A successful sign-in gives its login admission back, so
       only failed passwords count toward the lockout.
  [C1] Wrong email and wrong password produce the same 401 body.
  [M5] Cache-Control: no-store on every response that sets a session cookie.
  Password-reset request answers the same way for registered and unknown
  emails.
"""

from __future__ import annotations

import logging

from authlib.integrations.starlette_client import OAuthError
from fastapi import APIRouter, Depends, File, HTTPException, Request, UploadFile
from fastapi.responses import JSONResponse, RedirectResponse

from api.limiter import LOGIN_RATE_LIMIT, api_quota, enforce_rate_limit, limiter
from api.models import (
    AuthResponse,
    EmailRequest,
    MessageResponse,
    OAuthProviderInfo,
    PasswordChange,
    PasswordResetComplete,
    ProfilePatch,
    RevokedResponse,
    SessionInfo,
    SignInRequest,
    SignUpRequest,
    UserResponse,
    VerifyEmailComplete,
)
from auth.dependencies import (
    CurrentSession,
    client_ip,
    get_current_session,
    get_current_user,
    session_token_from_request,
)
from auth.models import ProfileUpdate, SignInResult, User
from auth.oauth import get_oauth_user_info
from auth.provider import EMAIL_EXISTS, EMAIL_IN_USE, USER_NOT_FOUND, WRONG_CURRENT_PASSWORD
from auth.service import (
    ALREADY_VERIFIED,
    EMAIL_REQUIRED,
    INVALID_RESET_TOKEN,
    INVALID_VERIFICATION_TOKEN,
    PASSWORD_REQUIRED,
    AuthService,
)
from auth.tokens import normalize_email
from auth.uploads import AvatarFile

logger = logging.getLogger("authcore.api")

# Auth policy:
# - signup, signin, signout, password-reset/*, verify-email/complete,
#   providers, oauth/*:                    public
# - everything else:                       requires a valid session
#                                          (get_current_session) + api quota
router = APIRouter()

_authenticated = [Depends(api_quota)]


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _service(request: Request) -> AuthService:
    return request.app.state.auth_service


def _error(status_code: int, code: str, message: str, headers: dict | None = None) -> HTTPException:
    return HTTPException(status_code=status_code, detail={"code": code, "message": message}, headers=headers)


def _profile_error(message: str) -> HTTPException:
    if message in (EMAIL_EXISTS, EMAIL_IN_USE):
        return _error(409, "conflict", message)
    if message == USER_NOT_FOUND:
        return _error(404, "not_found", message)
    return _error(400, "validation_error", message)


def _session_response(service: AuthService, result: SignInResult, status_code: int = 200) -> JSONResponse:
    payload = AuthResponse(
        user=UserResponse.from_user(result.user),
        expires_at=result.session.expires.isoformat(),
    )
    resp = JSONResponse(status_code=status_code, content=payload.model_dump())
    resp.headers.append(
        "set-cookie",
        service.sessions.create_cookie_string(result.session.session_token, result.session.expires),
    )
    resp.headers["Cache-Control"] = "no-store"  # [M5]
    return resp


def _cleared_cookie_response(service: AuthService, message: str) -> JSONResponse:
    resp = JSONResponse(content=MessageResponse(message=message).model_dump())
    resp.headers.append("set-cookie", service.sessions.create_clear_cookie_string())
    return resp


# ---------------------------------------------------------------------------
# Sign-up / sign-in / sign-out
# ---------------------------------------------------------------------------


@limiter.limit(LOGIN_RATE_LIMIT)  # [H2] must be ABOVE @router to preserve FastAPI introspection
@router.post("/auth/signup", response_model=AuthResponse, status_code=201)
def sign_up(request: Request, body: SignUpRequest) -> JSONResponse:
    """Create an account and sign it in."""
    service = _service(request)
    email = normalize_email(body.email)
    ip, agent = client_ip(request), request.headers.get("User-Agent")
    enforce_rate_limit(request, email, "signup")

    result = service.sign_up(body.email, body.password, body.name, ip, agent)
    request.app.state.rate_limiter.record_attempt(
        email, "signup", result.success, ip, agent, result.user.id if result.user else None
    )
    if not result.success:
        raise _profile_error(result.error)
    return _session_response(service, result, status_code=201)


@limiter.limit(LOGIN_RATE_LIMIT)  # [H2]
@router.post("/auth/signin", response_model=AuthResponse)
def sign_in(request: Request, body: SignInRequest) -> JSONResponse:
    """Password sign-in. One generic 401 for every credential failure [C1]."""
    service = _service(request)
    email = normalize_email(body.email)
    ip, agent = client_ip(request), request.headers.get("User-Agent")
    if email:
        enforce_rate_limit(request, email, "login")

    result = service.sign_in(body.email, body.password, ip, agent)
    if email:
        request.app.state.rate_limiter.record_attempt(
            email, "login", result.success, ip, agent, result.user.id if result.user else None
        )
        if result.success:
            request.app.state.rate_limiter.release(email, "login")
    if not result.success:
        if result.error in (EMAIL_REQUIRED, PASSWORD_REQUIRED):
            raise _error(400, "validation_error", result.error)
        raise _error(401, "invalid_credentials", result.error, headers={"Cache-Control": "no-store"})
    return _session_response(service, result)


@router.post("/auth/signout", response_model=MessageResponse)
def sign_out(request: Request) -> JSONResponse:
    """End the presented session (if any) and clear the cookie. Always 200."""
    service = _service(request)
    service.sign_out(session_token_from_request(request))
    return _cleared_cookie_response(service, "Signed out.")


# ---------------------------------------------------------------------------
# Current user and sessions
# ---------------------------------------------------------------------------


@router.get("/auth/me", response_model=UserResponse, dependencies=_authenticated)
def me(current_user: User = Depends(get_current_user)) -> UserResponse:
    return UserResponse.from_user(current_user)


@router.get("/auth/sessions", response_model=list[SessionInfo], dependencies=_authenticated)
def list_sessions(request: Request, current: CurrentSession = Depends(get_current_session)) -> list[SessionInfo]:
    """Active sessions of the current user, most recently used first."""
    sessions = _service(request).list_sessions(current.user.id)
    return [SessionInfo.from_session(s, current.session_id) for s in sessions]


@router.delete("/auth/sessions", response_model=RevokedResponse, dependencies=_authenticated)
def revoke_other_sessions(request: Request, current: CurrentSession = Depends(get_current_session)) -> RevokedResponse:
    """Sign out every other device; the calling session stays active."""
    revoked = _service(request).sign_out_everywhere(current.user.id, keep_session_token=current.token)
    return RevokedResponse(revoked=revoked)


# ---------------------------------------------------------------------------
# Password reset
# ---------------------------------------------------------------------------


@router.post("/auth/password-reset/request", response_model=MessageResponse)
def request_password_reset(request: Request, body: EmailRequest) -> MessageResponse:
    enforce_rate_limit(request, normalize_email(body.email), "password_reset")
    _service(request).request_password_reset(body.email)
    return MessageResponse(message="If an account exists for that email, a reset link has been sent.")


@limiter.limit(LOGIN_RATE_LIMIT)
@router.post("/auth/password-reset/complete", response_model=MessageResponse)
def complete_password_reset(request: Request, body: PasswordResetComplete) -> JSONResponse:
    """Set a new password. Every session of the account is ended, this browser's included."""
    service = _service(request)
    result = service.complete_password_reset(body.email, body.token, body.new_password)
    if not result.success:
        if result.error in (INVALID_RESET_TOKEN, USER_NOT_FOUND):
            raise _error(400, "invalid_token", INVALID_RESET_TOKEN)
        raise _error(400, "validation_error", result.error)
    return _cleared_cookie_response(service, "Password has been reset. Please sign in.")


# ---------------------------------------------------------------------------
# Email verification
# ---------------------------------------------------------------------------


@router.post("/auth/verify-email/request", response_model=MessageResponse, dependencies=_authenticated)
def request_email_verification(request: Request, current_user: User = Depends(get_current_user)) -> MessageResponse:
    enforce_rate_limit(request, current_user.email, "email_verification")
    result = _service(request).request_email_verification(current_user.email)
    if not result.success:
        if result.error == ALREADY_VERIFIED:
            raise _error(409, "already_verified", result.error)
        if result.error == USER_NOT_FOUND:
            raise _error(404, "not_found", result.error)
        raise _error(502, "email_failed", result.error)
    return MessageResponse(message="Verification email sent.")


@router.post("/auth/verify-email/complete", response_model=UserResponse)
def complete_email_verification(request: Request, body: VerifyEmailComplete) -> UserResponse:
    result = _service(request).complete_email_verification(body.email, body.token)
    if not result.success:
        raise _error(400, "invalid_token", INVALID_VERIFICATION_TOKEN)
    return UserResponse.from_user(result.user)


# ---------------------------------------------------------------------------
# Profile, password, avatar, account
# ---------------------------------------------------------------------------


@router.patch("/auth/profile", response_model=UserResponse, dependencies=_authenticated)
def update_profile(
    request: Request,
    body: ProfilePatch,
    current_user: User = Depends(get_current_user),
) -> UserResponse:
    """Change name and/or email. A new email must be verified again."""
    if body.name is None and body.email is None:
        raise _error(400, "no_changes", "No fields to update.")
    result = _service(request).update_profile(current_user.id, ProfileUpdate(name=body.name, email=body.email))
    if not result.success:
        raise _profile_error(result.error)
    return UserResponse.from_user(result.user)


@router.post("/auth/password", response_model=MessageResponse, dependencies=_authenticated)
def change_password(
    request: Request,
    body: PasswordChange,
    current: CurrentSession = Depends(get_current_session),
) -> MessageResponse:
    """Change password. Other sessions are signed out; this one stays."""
    result = _service(request).change_password(
        current.user.id, body.current_password, body.new_password, current_session_token=current.token
    )
    if not result.success:
        code = "invalid_password" if result.error == WRONG_CURRENT_PASSWORD else "validation_error"
        raise _error(400, code, result.error)
    return MessageResponse(message="Password changed.")


@router.post("/auth/avatar", response_model=UserResponse, dependencies=_authenticated)
async def upload_avatar(
    request: Request,
    file: UploadFile = File(...),
    current_user: User = Depends(get_current_user),
) -> UserResponse:
    """Upload a JPEG/PNG/GIF/WebP avatar, replacing any previous one."""
    enforce_rate_limit(request, current_user.id, "upload")
    service = _service(request)
    # Read one byte past the limit so oversize uploads are detected without buffering them whole.
    data = await file.read(request.app.state.settings.avatar_max_bytes + 1)
    avatar = AvatarFile(filename=file.filename or "", content_type=file.content_type or "", data=data)
    result = service.upload_avatar(current_user.id, avatar)
    if not result.success:
        status = 413 if result.error.startswith("File too large") else 400
        raise _error(status, "invalid_file", result.error)
    return UserResponse.from_user(result.user)


@router.delete("/auth/avatar", response_model=UserResponse, dependencies=_authenticated)
def delete_avatar(request: Request, current_user: User = Depends(get_current_user)) -> UserResponse:
    result = _service(request).delete_avatar(current_user.id)
    if not result.success:
        raise _profile_error(result.error)
    return UserResponse.from_user(result.user)


@router.delete("/auth/account", response_model=MessageResponse, dependencies=_authenticated)
def delete_account(request: Request, current_user: User = Depends(get_current_user)) -> JSONResponse:
    """Delete the account. All sessions end whether or not the delete succeeds."""
    service = _service(request)
    result = service.delete_account(current_user.id)
    if not result.success:
        raise _profile_error(result.error)
    return _cleared_cookie_response(service, "Account deleted.")


# ---------------------------------------------------------------------------
# OAuth
# ---------------------------------------------------------------------------


@router.get("/auth/providers", response_model=list[OAuthProviderInfo])
def list_providers(request: Request) -> list[OAuthProviderInfo]:
    """Configured OAuth providers, for rendering sign-in buttons. Empty when none are set."""
    return [OAuthProviderInfo(name=p.name, label=p.label) for p in _service(request).get_available_oauth_providers()]


@router.get("/auth/oauth/{provider}")
async def oauth_redirect(request: Request, provider: str):
    """Redirect the browser to the provider's authorization page.

    The provider name is checked against the enabled list first, so a crafted
    name cannot select an arbitrary client.
    """
    result = _service(request).sign_in_with_oauth(provider)
    if not result.success:
        raise _error(404, "oauth_not_configured", result.error)
    client = request.app.state.oauth.create_client(provider)
    redirect_uri = str(request.url_for("oauth_callback", provider=provider))
    return await client.authorize_redirect(request, redirect_uri)


@router.get("/auth/oauth/{provider}/callback", name="oauth_callback")
async def oauth_callback(request: Request, provider: str) -> RedirectResponse:
    """Finish the OAuth flow: exchange the code, resolve the user, start a session.

    Any failure redirects to {app_url}/login?error=oauth_failed; details go to
    the log only.
    """
    service = _service(request)
    base_url = request.app.state.settings.app_url.rstrip("/")
    failed = RedirectResponse(f"{base_url}/login?error=oauth_failed", status_code=302)

    if not service.sign_in_with_oauth(provider).success:
        return failed
    client = request.app.state.oauth.create_client(provider)
    try:
        token = await client.authorize_access_token(request)
    except OAuthError:
        logger.exception("OAuth token exchange failed for provider %r", provider)
        return failed

    # [H1] raises ValueError for unverified or missing email
    try:
        email, subject, name = await get_oauth_user_info(client, provider, token)
    except ValueError:
        logger.warning("OAuth sign-in rejected: unverified or missing email from %r", provider)
        return failed

    ip, agent = client_ip(request), request.headers.get("User-Agent")
    result = service.complete_oauth_sign_in(provider, email, subject, name, ip, agent)
    request.app.state.rate_limiter.record_attempt(
        normalize_email(email), "login", result.success, ip, agent, result.user.id if result.user else None
    )
    if not result.success:
        return failed

    resp = RedirectResponse(f"{base_url}/", status_code=302)
    resp.headers.append(
        "set-cookie",
        service.sessions.create_cookie_string(result.session.session_token, result.session.expires),
    )
    resp.headers["Cache-Control"] = "no-store"  # [M5]
    return resp
