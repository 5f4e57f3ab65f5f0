"""
api/main.py -- FastAPI application entry point for Community Poll Hub.

Exposes the account, session, email-change and authorization core over HTTP.

Run with:      uvicorn asgi:app --reload

Middleware stack (outermost to innermost):
  1. TrustedHostMiddleware -- rejects requests with unexpected Host headers
  2. CORSMiddleware        -- adds CORS headers for allowed browser origins
  3. SlowAPIMiddleware     -- enforces per-route rate limits from api.limiter

Lifespan handles startup (store, services, purge task) and shutdown (cancel
purge task, close DB connection) symmetrically.

Error mapping: the core raises PollHubError subclasses that know nothing about
HTTP. _STATUS_BY_CODE below is the single place that turns them into status
codes. InfrastructureError is always 503.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.trustedhost import TrustedHostMiddleware
from fastapi.responses import JSONResponse
from slowapi.errors import RateLimitExceeded
from slowapi.middleware import SlowAPIMiddleware

from api.limiter import limiter
from api.models import ErrorDetail, ErrorResponse, HealthResponse
from api.routes.v1.admin import router as admin_router
from api.routes.v1.auth import router as auth_router
from api.routes.v1.profile import router as profile_router
from api.routes.v1.users import router as users_router
from auth.accounts import AccountService
from auth.audit import LoggingAuditSink
from auth.email_change import EmailChangeWorkflow
from auth.mailer import build_notifier
from auth.policy import PolicyEngine
from auth.sessions import SessionManager
from auth.store import UserStore
from core.config import get_settings
from core.errors import InfrastructureError, PollHubError

API_VERSION = "0.1.0"

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)-5s %(name)s %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger("pollhub.api")

# ---------------------------------------------------------------------------
# Service wiring
# ---------------------------------------------------------------------------


def install_services(app: FastAPI, user_store: UserStore, notifier=None, audit=None) -> None:
    """Build the core services around user_store and attach them to app.state.

    Used by the real lifespan and by tests (which pass an in-memory store and
    recording fakes for notifier/audit).
    """
    settings = get_settings()
    audit = audit or LoggingAuditSink()
    notifier = notifier or build_notifier(settings)
    policy = PolicyEngine(audit)

    app.state.user_store = user_store
    app.state.audit = audit
    app.state.policy = policy
    app.state.sessions = SessionManager(user_store, audit, expire_seconds=settings.session_expire_seconds)
    app.state.email_change = EmailChangeWorkflow(
        user_store,
        notifier,
        audit,
        base_url=settings.base_url,
        ttl_hours=settings.email_token_ttl_hours,
    )
    app.state.accounts = AccountService(user_store, policy, audit)


# ---------------------------------------------------------------------------
# Background purge task
# ---------------------------------------------------------------------------


def purge_once(app: FastAPI) -> tuple[int, int]:
    """Delete expired sessions and stale pending email changes. Returns (sessions, email_changes)."""
    sessions = app.state.sessions.expire_sessions()
    email_changes = app.state.email_change.purge_expired()
    if sessions or email_changes:
        logger.info("Purged %d expired sessions, %d expired email changes", sessions, email_changes)
    return sessions, email_changes


async def _purge_loop(app: FastAPI, interval: int) -> None:
    """Run purge_once every `interval` seconds until cancelled at shutdown.

    The purge runs in a worker thread so blocking DB calls stay off the event
    loop. Any failure is logged and retried on the next tick; it must not kill
    the task.
    """
    while True:
        await asyncio.sleep(interval)
        try:
            await asyncio.to_thread(purge_once, app)
        except InfrastructureError:
            logger.warning("Purge skipped: repository unavailable")
        except Exception:
            logger.exception("Purge failed")


# ---------------------------------------------------------------------------
# Lifespan
# ---------------------------------------------------------------------------


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Manage application-level resources across the full server lifetime.

    Everything before yield runs on startup; everything after yield runs on
    shutdown. The store must exist before the services that wrap it, and the
    services before the purge task that calls them.
    """
    settings = get_settings()
    logger.info("Community Poll Hub API starting up")
    install_services(app, UserStore(db_url=settings.database_url))
    logger.info("Auth initialized (users=%d)", app.state.user_store.count_users())
    app.state.purge_task = asyncio.create_task(_purge_loop(app, settings.purge_interval_seconds))

    yield

    app.state.purge_task.cancel()
    app.state.user_store.close()
    logger.info("Community Poll Hub API shutdown complete")


# ---------------------------------------------------------------------------
# App instantiation
# ---------------------------------------------------------------------------

app = FastAPI(
    title="Community Poll Hub API",
    description="Accounts, sessions, role-based authorization and email-change confirmation.",
    version=API_VERSION,
    lifespan=lifespan,
)

# ---------------------------------------------------------------------------
# Middleware stack
#
# Register in the order you want the request to encounter them:
# TrustedHost -> CORS -> SlowAPI.
# ---------------------------------------------------------------------------

app.add_middleware(
    TrustedHostMiddleware,
    allowed_hosts=["localhost", "127.0.0.1", "*.localhost", "testserver"],
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["http://localhost", "http://localhost:3000", "http://127.0.0.1"],
    allow_methods=["GET", "POST", "PATCH", "DELETE"],
    allow_headers=["Content-Type", "Authorization"],
    max_age=3600,
)

app.add_middleware(SlowAPIMiddleware)

# SlowAPI looks for app.state.limiter by convention.
app.state.limiter = limiter

# ---------------------------------------------------------------------------
# Request logging middleware
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
app.include_router(profile_router, prefix="/api/v1", tags=["Profile"])
app.include_router(users_router, prefix="/api/v1", tags=["Users"])
app.include_router(admin_router, prefix="/api/v1", tags=["Admin"])


# ---------------------------------------------------------------------------
# Exception handlers
#
# All handlers return the same ErrorResponse envelope so API clients can parse
# errors uniformly without inspecting status codes to choose a schema.
# ---------------------------------------------------------------------------

_STATUS_BY_CODE: dict[str, int] = {
    "invalid_credentials": 401,
    "unauthenticated": 401,
    "forbidden": 403,
    "duplicate_email": 409,
    "invalid_email_format": 422,
    "validation_failed": 422,
    "token_not_found": 404,
    "token_expired": 410,
}


def _error_response(status_code: int, code: str, message: str, detail=None) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content=ErrorResponse(error=ErrorDetail(code=code, message=message, detail=detail)).model_dump(),
    )


@app.exception_handler(PollHubError)
async def pollhub_error_handler(request: Request, exc: PollHubError) -> JSONResponse:
    """Map a business-rule error to its status code.

    Forbidden does not tell the client which rule failed; the reason
    has already been written to the audit log.
    """
    status_code = _STATUS_BY_CODE.get(exc.code, 500)
    detail = getattr(exc, "field_errors", None)
    message = exc.message if exc.code == "forbidden" else str(exc)
    return _error_response(status_code, exc.code, message, detail)


@app.exception_handler(InfrastructureError)
async def infrastructure_error_handler(request: Request, exc: InfrastructureError) -> JSONResponse:
    logger.error("Infrastructure failure on %s %s: %s", request.method, request.url.path, exc)
    return _error_response(503, "service_unavailable", "Service temporarily unavailable.")


@app.exception_handler(RateLimitExceeded)
async def rate_limit_handler(request: Request, exc: RateLimitExceeded) -> JSONResponse:
    """Return 429 with a structured error when a rate limit is exceeded."""
    retry_after = int(getattr(exc, "retry_after", 60))
    response = _error_response(429, "rate_limited", "Too many requests.", str(exc))
    response.headers["Retry-After"] = str(retry_after)
    return response


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """Return 422 with structured error when request body or query params fail validation."""
    return _error_response(422, "validation_error", "Request validation failed.", str(exc.errors()))


@app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    """Return a structured error for all FastAPI/Starlette HTTP exceptions.

    Route handlers raise HTTPException with a {"code", "message"} dict as
    detail. When detail is already a structured dict, use it directly as the
    error field rather than stringifying it.
    """
    if isinstance(exc.detail, dict):
        return JSONResponse(status_code=exc.status_code, content={"error": exc.detail})
    return _error_response(exc.status_code, f"http_{exc.status_code}", str(exc.detail))


@app.exception_handler(Exception)
async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Catch-all handler for unexpected server errors.

    The raw exception is written to the log only, never to the response body.
    """
    logger.exception("Unhandled exception on %s %s", request.method, request.url.path)
    return _error_response(500, "internal_error", "An unexpected error occurred.")


# ---------------------------------------------------------------------------
# Health endpoint
#
# No rate limit applied -- health checks from load balancers and monitoring
# systems must not be throttled.
# ---------------------------------------------------------------------------


@app.get("/api/v1/health", include_in_schema=True, tags=["Health"])
async def health() -> HealthResponse:
    """Return API liveness and current version."""
    return HealthResponse(version=API_VERSION)
