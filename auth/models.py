"""
auth/models.py -- Domain dataclasses for authentication entities.

Pattern: Data class (pure data container, zero logic). Dataclasses own domain
shape; stores, the session manager, the policy engine and the email-change
workflow do the work.

Layer rule: no imports from api/.
"""

from __future__ import annotations

from dataclasses import dataclass

from auth.roles import Role


@dataclass
class User:
    """A registered member of the poll hub.

    email is always the *verified* address. A requested change lives in
    new_email until the owner redeems the confirmation link; only then does it
    replace email.

    email_confirmation_token holds the HMAC digest of the token that was
    emailed, never the raw token. email_confirmation_sent_at is the UTC ISO
    8601 issue time; the token is valid for 24 hours from it.

    id is None before the record is written to the database.
    """

    username: str
    email: str
    role: Role = Role.VOTER
    id: int | None = None
    password_hash: str | None = None
    new_email: str | None = None
    email_confirmation_token: str | None = None
    email_confirmation_sent_at: str | None = None
    created_at: str | None = None


@dataclass(frozen=True)
class Session:
    """An authenticated session.

    role is a snapshot taken at login. Promoting or demoting the user later
    does not change it; the user must log in again to pick up the new role.

    token is the signed JWT handed to the client. It is only populated on the
    Session returned by login(); sessions resolved from a request carry None.
    """

    session_id: str
    user_id: int
    username: str
    role: Role
    issued_at: str
    expires_at: str
    token: str | None = None


@dataclass(frozen=True)
class PendingEmailChange:
    """Result of a successful email-change request. Never carries the raw token."""

    user_id: int
    new_email: str
    issued_at: str
    expires_at: str


@dataclass(frozen=True)
class RequestContext:
    """Per-request facts the core needs, passed explicitly into every call.

    client_ip feeds audit records. session_token is the raw JWT from the
    access_token cookie or the Authorization header, if any.
    """

    client_ip: str | None = None
    method: str = "GET"
    path: str = "/"
    session_token: str | None = None


@dataclass(frozen=True)
class AdminArea:
    """Marker target for admin-only pages that are not about a single record."""

    name: str = "dashboard"
