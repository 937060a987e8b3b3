"""
api/main.py -- FastAPI application entry point for authcore.

Exposes the account, session and OAuth workflows of auth.service.AuthService
over HTTP, with per-identifier rate limiting from ratelimit/.

Run with:      uvicorn asgi:app --reload

Middleware stack (outermost to innermost):
  1. CORSMiddleware     -- adds CORS headers for allowed browser origins
  2. SlowAPIMiddleware  -- enforces per-route per-IP limits from api.limiter
  3. SessionMiddleware  -- signed cookie holding OAuth state between redirect
                           and callback (authlib CSRF protection)

Lifespan wires one SQLAlchemy engine into every store, builds the services,
and runs a periodic cleanup task; shutdown cancels the task and disposes the
engine.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import AsyncIterator, Callable
from contextlib import asynccontextmanager
from datetime import datetime
from types import SimpleNamespace

from fastapi import Depends, FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.openapi.docs import get_redoc_html, get_swagger_ui_html
from fastapi.responses import JSONResponse
from fastapi.staticfiles import StaticFiles
from slowapi.errors import RateLimitExceeded
from slowapi.middleware import SlowAPIMiddleware
from sqlalchemy import text
from sqlalchemy.engine import Engine
from starlette.middleware.sessions import SessionMiddleware

from api.limiter import limiter
from api.models import ErrorDetail, ErrorResponse, HealthResponse
from api.routes.v1.auth import router as auth_router
from auth.dependencies import get_current_user
from auth.mailer import EmailSender, SmtpEmailSender
from auth.models import User
from auth.oauth import build_oauth_registry
from auth.provider import create_provider
from auth.service import AuthService
from auth.sessions import SessionConfig, SessionManager
from auth.store import SessionStore, TokenStore, open_engine
from auth.tokens import utcnow
from auth.uploads import LocalUploadStore, UploadStore
from auth.verification import TokenService
from core.config import Settings, get_settings
from ratelimit.limiter import RateLimiter
from ratelimit.store import RateLimitStore

VERSION = "1.0.0"

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)-5s %(name)s %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger("authcore.api")

_settings = get_settings()

# ---------------------------------------------------------------------------
# Service wiring
# ---------------------------------------------------------------------------


def build_services(
    settings: Settings,
    engine: Engine | None = None,
    email_sender: EmailSender | None = None,
    uploads: UploadStore | None = None,
    clock: Callable[[], datetime] = utcnow,
) -> SimpleNamespace:
    """Assemble stores and services on one engine.

    Used by the lifespan, the admin CLI and tests (which pass an in-memory
    engine, a MemoryEmailSender and a MemoryUploadStore).
    """
    engine = engine if engine is not None else open_engine(settings.database_url)
    provider = create_provider(settings, engine=engine, clock=clock)
    sessions = SessionManager(
        SessionStore(engine),
        user_loader=lambda user_id: provider.get_user_by_id(user_id).user,
        config=SessionConfig.from_settings(settings),
        clock=clock,
        secret_key=settings.secret_key,
    )
    tokens = TokenService(TokenStore(engine), clock=clock, secret_key=settings.secret_key)
    service = AuthService(
        provider,
        sessions,
        tokens,
        email_sender if email_sender is not None else SmtpEmailSender(settings),
        uploads if uploads is not None else LocalUploadStore(settings.upload_dir, settings.upload_base_url),
        settings=settings,
    )
    rate_limiter = RateLimiter(RateLimitStore(engine), clock=clock)
    return SimpleNamespace(engine=engine, auth_service=service, rate_limiter=rate_limiter)


def install_services(app: FastAPI, settings: Settings, services: SimpleNamespace) -> None:
    app.state.settings = settings
    app.state.engine = services.engine
    app.state.auth_service = services.auth_service
    app.state.rate_limiter = services.rate_limiter


def run_cleanup(service: AuthService, rate_limiter: RateLimiter) -> dict[str, int]:
    """One sweep of every expiry cleanup. Idempotent; safe alongside live traffic."""
    counts = service.cleanup()
    counts["rate_limits"] = rate_limiter.cleanup_expired_state()
    return counts


# ---------------------------------------------------------------------------
# Background cleanup task
# ---------------------------------------------------------------------------


async def _cleanup_loop(app: FastAPI, interval: int) -> None:
    """Sweep expired tokens, sessions and rate-limit state every interval seconds.

    Store calls are blocking, so each sweep runs in a worker thread. A failed
    sweep is logged and retried next round; it never stops the loop.
    """
    while True:
        await asyncio.sleep(interval)
        try:
            counts = await asyncio.to_thread(run_cleanup, app.state.auth_service, app.state.rate_limiter)
            logger.info("Cleanup sweep: %s", counts)
        except Exception:
            logger.exception("Cleanup sweep failed")


# ---------------------------------------------------------------------------
# Lifespan -- modern startup / shutdown pattern (replaces @app.on_event)
# ---------------------------------------------------------------------------


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Manage application-level resources across the full server lifetime.

    Everything before yield runs on startup; everything after yield on
    shutdown. The cleanup task references app.state services, so it starts
    last.
    """
    logger.info("authcore API starting up (environment=%s)", _settings.environment)
    services = build_services(_settings)
    install_services(app, _settings, services)
    app.state.oauth = build_oauth_registry(_settings)
    logger.info(
        "Auth initialized (provider=%s, oauth=%s)",
        services.auth_service.get_configuration().provider,
        [p.name for p in services.auth_service.get_available_oauth_providers()] or "none",
    )
    app.state.cleanup_task = asyncio.create_task(_cleanup_loop(app, _settings.cleanup_interval_seconds))

    yield

    app.state.cleanup_task.cancel()
    services.engine.dispose()
    logger.info("authcore API shutdown complete")


# ---------------------------------------------------------------------------
# App instantiation
# ---------------------------------------------------------------------------

app = FastAPI(
    title="authcore API",
    description="Accounts, sessions, one-time tokens and rate limiting.",
    version=VERSION,
    lifespan=lifespan,
    # Built-in /docs and /redoc are replaced by session-protected routes below.
    docs_url=None,
    redoc_url=None,
)

# ---------------------------------------------------------------------------
# Middleware stack
#
# add_middleware() wraps the app, so the LAST one added is the outermost.
# Register innermost first: Session -> SlowAPI -> CORS.
# ---------------------------------------------------------------------------

# authlib stores the OAuth state value here between the authorization redirect
# and the callback; without it the callback cannot verify state.
app.add_middleware(SessionMiddleware, secret_key=_settings.secret_key, https_only=_settings.is_production)

app.add_middleware(SlowAPIMiddleware)

app.add_middleware(
    CORSMiddleware,
    allow_origins=[_settings.app_url],
    allow_credentials=True,
    allow_methods=["GET", "POST", "PATCH", "DELETE"],
    allow_headers=["Content-Type", "Authorization"],
    expose_headers=["Retry-After", "X-Session-Expires"],
    max_age=3600,
)

# SlowAPI looks for app.state.limiter by convention.
app.state.limiter = limiter


# ---------------------------------------------------------------------------
# Request logging middleware
#
# Every request passes through this coroutine before reaching any route
# handler; latency is measured around call_next.
# ---------------------------------------------------------------------------


@app.middleware("http")
async def log_requests(request: Request, call_next):
    start = time.perf_counter()
    response = await call_next(request)
    ms = (time.perf_counter() - start) * 1000
    logger.info(
        "%s %s %d %.1fms %s",
        request.method,
        request.url.path,
        response.status_code,
        ms,
        request.client.host if request.client else "unknown",
    )
    return response


# ---------------------------------------------------------------------------
# Router registration
# ---------------------------------------------------------------------------

app.include_router(auth_router, prefix="/api/v1", tags=["Auth"])

if _settings.upload_base_url.startswith("/"):
    # LocalUploadStore URLs are served straight from the upload directory.
    app.mount(_settings.upload_base_url, StaticFiles(directory=_settings.upload_dir, check_dir=False), name="uploads")


# ---------------------------------------------------------------------------
# Session-protected API documentation
# ---------------------------------------------------------------------------


@app.get("/docs", include_in_schema=False)
async def docs(user: User = Depends(get_current_user)):
    """Swagger UI -- requires a session."""
    return get_swagger_ui_html(openapi_url="/openapi.json", title="authcore API")


@app.get("/redoc", include_in_schema=False)
async def redoc(user: User = Depends(get_current_user)):
    """ReDoc UI -- requires a session."""
    return get_redoc_html(openapi_url="/openapi.json", title="authcore API")


# ---------------------------------------------------------------------------
# Exception handlers
#
# All handlers return the same ErrorResponse envelope so API clients can parse
# errors uniformly without inspecting status codes to choose a schema.
# ---------------------------------------------------------------------------


@app.exception_handler(RateLimitExceeded)
async def rate_limit_handler(request: Request, exc: RateLimitExceeded) -> JSONResponse:
    """Return 429 when the slowapi per-IP cap is exceeded."""
    retry_after = int(getattr(exc, "retry_after", 60))
    response = JSONResponse(
        status_code=429,
        content=ErrorResponse(
            error=ErrorDetail(
                code="rate_limited",
                message="Too many requests.",
                detail=str(exc),
            )
        ).model_dump(),
    )
    response.headers["Retry-After"] = str(retry_after)
    return response


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """Return 422 with structured error when request body or query params fail validation."""
    return JSONResponse(
        status_code=422,
        content=ErrorResponse(
            error=ErrorDetail(
                code="validation_error",
                message="Request validation failed.",
                detail=str(exc.errors()),
            )
        ).model_dump(),
    )


@app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    """Return a structured error for all FastAPI/Starlette HTTP exceptions.

    Route handlers raise HTTPException with a dict detail ({"code", "message"}),
    used directly as the error field. Headers on the exception (Retry-After on
    429, Cache-Control on 401) are carried over.
    """
    if isinstance(exc.detail, dict):
        content = {"error": ErrorDetail(**exc.detail).model_dump()}
    else:
        content = ErrorResponse(
            error=ErrorDetail(
                code=f"http_{exc.status_code}",
                message=str(exc.detail),
            )
        ).model_dump()
    return JSONResponse(status_code=exc.status_code, content=content, headers=exc.headers)


@app.exception_handler(Exception)
async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Catch-all handler for unexpected server errors.

    The raw exception goes to the log only, never to the response body.
    """
    logger.exception("Unhandled exception on %s %s", request.method, request.url.path)
    return JSONResponse(
        status_code=500,
        content=ErrorResponse(
            error=ErrorDetail(
                code="internal_error",
                message="An unexpected error occurred.",
            )
        ).model_dump(),
    )


# ---------------------------------------------------------------------------
# Health endpoint
#
# Defined directly in main.py so it is reachable regardless of router state.
# No rate limit: load balancers and monitors must not be throttled.
# ---------------------------------------------------------------------------


@app.get("/api/v1/health", include_in_schema=True, tags=["Health"])
def health(request: Request) -> HealthResponse:
    """Return liveness, version and a database round-trip check."""
    components = {"app": "ok"}
    try:
        with request.app.state.engine.connect() as conn:
            conn.execute(text("SELECT 1"))
        components["database"] = "ok"
    except Exception:
        logger.exception("Health check: database unreachable")
        components["database"] = "error"
    status = "healthy" if components["database"] == "ok" else "degraded"
    return HealthResponse(status=status, version=VERSION, components=components)
