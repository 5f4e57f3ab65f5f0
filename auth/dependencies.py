"""
auth/dependencies.py -- FastAPI Depends() helpers for authentication and authorization.

The session token is read in priority order:
  1. "access_token" cookie -- set by the login endpoint.
  2. Authorization: Bearer <token> header -- API clients.

Both converge on the same server-side session lookup in SessionManager.

try_get_current_user() is the soft variant (returns None when anonymous).
get_current_user() wraps it and raises Unauthenticated.
require_admin() / require_organizer() / require_voter() add a role check and
raise Forbidden. None of the routes in api/ use them: users and the admin
dashboard are record-level decisions and go through the policy engine. They
are the guards for routes the surrounding application mounts (poll creation
is organizer-or-admin, answering poll invitations is voter-only).
authorize_request() derives the policy action from the HTTP method and path
and asks the policy engine.

Denials are audited here, before the exception leaves; api/main.py turns the
exceptions into 401/403 responses.

Layer rule: this module may import from fastapi because it is part of the
FastAPI dependency injection system. Nothing else in auth/ does.
"""

from __future__ import annotations

from typing import Any, TypeVar

from fastapi import Request

from auth.models import RequestContext, Session, User
from auth.policy import Deny, action_for_request
from auth.roles import is_admin, is_organizer_or_admin, is_voter
from auth.tokens import AUTH_COOKIE
from core.errors import Forbidden, Unauthenticated

T = TypeVar("T")


def request_context(request: Request) -> RequestContext:
    """Describe the request for the core: client address, method, path, raw session token."""
    token: str | None = request.cookies.get(AUTH_COOKIE)
    if not token:
        auth_header = request.headers.get("Authorization", "")
        if auth_header.startswith("Bearer "):
            token = auth_header[7:]
    return RequestContext(
        client_ip=request.client.host if request.client else None,
        method=request.method,
        path=request.url.path,
        session_token=token or None,
    )


def try_get_current_session(request: Request) -> Session | None:
    return request.app.state.sessions.current_session(request_context(request))


def try_get_current_user(request: Request) -> User | None:
    """Return the signed-in user (with the session's role snapshot) or None. Never raises."""
    sessions = request.app.state.sessions
    return sessions.actor_for(sessions.current_session(request_context(request)))


def get_current_user(request: Request) -> User:
    """Require authentication.

    Use as a FastAPI dependency:
        @router.get("/protected")
        async def route(user: User = Depends(get_current_user)): ...
    """
    user = try_get_current_user(request)
    if user is None:
        request.app.state.audit.record_event(
            "security",
            "unauthorized_access_attempt",
            {"path": request.url.path, "method": request.method},
        )
        raise Unauthenticated()
    return user


def _require_role(request: Request, allowed, event_name: str, reason: str) -> User:
    user = get_current_user(request)
    if not allowed(user):
        request.app.state.audit.record_event(
            "security",
            event_name,
            {"user": user.username, "path": request.url.path, "method": request.method},
        )
        raise Forbidden(reason)
    return user


def require_admin(request: Request) -> User:
    return _require_role(request, is_admin, "admin_access_denied", "admin role required")


def require_organizer(request: Request) -> User:
    """Organizer-or-admin check. Admin satisfies it; voters do not."""
    return _require_role(request, is_organizer_or_admin, "organizer_access_denied", "organizer role required")


def require_voter(request: Request) -> User:
    """Voter-only check. Roles are disjoint, so organizers and admins fail it."""
    return _require_role(request, is_voter, "voter_access_denied", "voter role required")


def authorize_request(request: Request, actor: User | None, target: T) -> T:
    """Authorize the current request against target; return target or raise Forbidden.

    The action comes from action_for_request(method, path), e.g. GET
    /users/3/edit -> edit, DELETE /users/3 -> destroy. The engine has already
    audited a denial by the time Forbidden is raised.
    """
    action = action_for_request(request.method, request.url.path)
    decision: Any = request.app.state.policy.authorize(actor, action, target)
    if isinstance(decision, Deny):
        raise Forbidden(decision.reason)
    return decision.target
