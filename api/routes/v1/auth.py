"""
api/routes/v1/auth.py -- Login, logout, registration and identity endpoints.

Routes:
  POST /api/v1/auth/login     -- password login; sets session cookie
  POST /api/v1/auth/logout    -- ends the server-side session; clears cookie
  POST /api/v1/auth/register  -- self-registration as a voter
  GET  /api/v1/auth/me        -- current session identity (requires auth)

Security:
  POST /login is rate-limited per client address (LOGIN_RATE_LIMIT).
  SessionManager.login() runs a bcrypt check on every attempt -- use it,
  never inline a username lookup + verify_password().
  Cache-Control: no-store on login responses.
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse

from api.limiter import limiter, login_rate_limit
from api.models import LoginRequest, LoginResponse, MeResponse, MessageResponse, RegisterRequest, UserResponse
from auth.dependencies import get_current_user, request_context, try_get_current_session
from auth.models import User
from auth.tokens import clear_auth_cookie, set_auth_cookie
from core.config import get_settings
from core.errors import Forbidden

# Auth policy:
# - POST /api/v1/auth/login:     public -- login endpoint must be unauthenticated
# - POST /api/v1/auth/logout:    public -- logging out an anonymous client is a no-op
# - POST /api/v1/auth/register:  public, unless SELF_REGISTRATION_ENABLED=false
# - GET  /api/v1/auth/me:        requires auth (get_current_user)
router = APIRouter()


@limiter.limit(login_rate_limit)  # must be ABOVE @router to preserve FastAPI introspection
@router.post("/auth/login", response_model=LoginResponse)
def login(request: Request, body: LoginRequest) -> JSONResponse:
    """Authenticate with username and password; set the session cookie.

    Returns the same generic error for wrong username and wrong password
    (InvalidCredentials -> 401) so the response never reveals which one was
    wrong.
    """
    session = request.app.state.sessions.login(body.username, body.password, request_context(request))
    resp = JSONResponse(
        status_code=200,
        content=LoginResponse(
            access_token=session.token,
            token_type="bearer",  # noqa: S106 # nosec B106 -- OAuth token type, not a password
            expires_at=session.expires_at,
            username=session.username,
            role=session.role.label,
        ).model_dump(),
    )
    set_auth_cookie(resp, session.token)
    resp.headers["Cache-Control"] = "no-store"
    return resp


@router.post("/auth/logout", response_model=MessageResponse)
def logout(request: Request) -> JSONResponse:
    """Delete the server-side session and clear the cookie. Safe to call repeatedly."""
    request.app.state.sessions.logout(try_get_current_session(request), request_context(request))
    resp = JSONResponse(content=MessageResponse(message="Logged out.").model_dump())
    clear_auth_cookie(resp)
    return resp


@router.post("/auth/register", response_model=UserResponse, status_code=201)
def register(request: Request, body: RegisterRequest) -> UserResponse:
    """Create a voter account. Does not log the new user in -- call /auth/login next."""
    if not get_settings().self_registration_enabled:
        raise Forbidden("self-registration is disabled")
    user = request.app.state.accounts.register(
        body.username,
        body.email,
        body.password,
        body.password_confirmation,
        request_context(request),
    )
    return UserResponse.from_user(user)


@router.get("/auth/me", response_model=MeResponse)
def me(current_user: User = Depends(get_current_user)) -> MeResponse:
    """Return identity information for the current session."""
    return MeResponse(
        user_id=current_user.id,
        username=current_user.username,
        email=current_user.email,
        role=current_user.role.label,
        pending_email=current_user.new_email,
    )
