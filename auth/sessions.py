"""
auth/sessions.py -- Session manager: login, session resolution, logout.

A session lives in two places:
  - a row in the sessions table (source of truth: who, which role snapshot,
    until when), and
  - a signed JWT referencing that row, handed to the client as an httpOnly
    cookie or used as a Bearer token.

current_session() accepts a request only if the JWT signature is valid AND
the row still exists AND it has not expired. Deleting the row is therefore a
real logout, not just a cookie wipe.

The role snapshot is taken at login and never refreshed. A promoted or demoted
user keeps their old privileges until they log in again; actor_for() applies
the snapshot onto the live user record so the policy engine sees the session
role, not the current database role.

Layer rule: no imports from api/. The request is described by an explicit
RequestContext; nothing here reads ambient request state.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import replace
from datetime import datetime, timedelta, timezone

from auth.audit import AuditSink
from auth.models import RequestContext, Session, User
from auth.store import UserStore
from auth.tokens import authenticate_user, create_session_token, decode_session_token, new_session_id
from core.errors import InvalidCredentials

logger = logging.getLogger("pollhub.auth.sessions")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def to_iso(moment: datetime) -> str:
    """Fixed-width UTC ISO 8601 so stored timestamps also compare correctly as strings."""
    return moment.astimezone(timezone.utc).isoformat(timespec="microseconds")


class SessionManager:
    def __init__(
        self,
        store: UserStore,
        audit: AuditSink,
        expire_seconds: int = 3600,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.store = store
        self.audit = audit
        self.expire_seconds = expire_seconds
        self.clock = clock

    def login(self, username: str, password: str, context: RequestContext) -> Session:
        """Authenticate and open a session. Raises InvalidCredentials on any failure.

        The same error is raised for an unknown username and a wrong password,
        and both paths cost one bcrypt check (see authenticate_user).
        """
        user = authenticate_user(self.store, username, password)
        if user is None:
            self.audit.record_event("security", "login_failed", {"username": username, "ip": context.client_ip})
            raise InvalidCredentials()

        now = self.clock()
        expires = now + timedelta(seconds=self.expire_seconds)
        session_id = new_session_id()
        token = create_session_token(session_id, user.id, user.username, user.role.label, expires)
        session = Session(
            session_id=session_id,
            user_id=user.id,
            username=user.username,
            role=user.role,
            issued_at=to_iso(now),
            expires_at=to_iso(expires),
            token=token,
        )
        self.store.create_session(session)
        self.audit.record_event(
            "auth", "login_successful", {"username": user.username, "user_id": user.id, "ip": context.client_ip}
        )
        return session

    def current_session(self, context: RequestContext) -> Session | None:
        """Resolve the request's session. None means anonymous."""
        if not context.session_token:
            return None
        payload = decode_session_token(context.session_token)
        if payload is None:
            return None
        session = self.store.get_session(payload["jti"])
        if session is None or session.user_id != payload["user_id"]:
            return None
        if datetime.fromisoformat(session.expires_at) <= self.clock():
            self.store.delete_session(session.session_id)
            return None
        return session

    def actor_for(self, session: Session | None) -> User | None:
        """Load the session's user with the role snapshot applied.

        Returns None for an anonymous request or a user deleted since login.
        """
        if session is None:
            return None
        user = self.store.find(session.user_id)
        if user is None:
            return None
        return replace(user, role=session.role)

    def logout(self, session: Session | None, context: RequestContext) -> None:
        """Invalidate the session. Idempotent: repeated or anonymous logouts are no-ops."""
        if session is None:
            return
        if self.store.delete_session(session.session_id):
            self.audit.record_event(
                "auth", "logout", {"username": session.username, "user_id": session.user_id, "ip": context.client_ip}
            )

    def expire_sessions(self) -> int:
        """Delete expired session rows. Returns the number removed."""
        removed = self.store.purge_expired_sessions(to_iso(self.clock()))
        if removed:
            logger.info("Purged %d expired sessions", removed)
        return removed
