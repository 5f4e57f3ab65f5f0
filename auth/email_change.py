"""
auth/email_change.py -- Out-of-band email change confirmation.

State machine, per user:

    Stable --request_change--> PendingConfirmation --confirm--> Stable (email swapped)
                                        |
                                        +--24h pass--> Stable (token unusable)

There is no persisted "Expired" state: an expired token is simply rejected,
and purge_expired() clears stale pending fields in the background.

Ordering guarantees:
  request_change() persists (new_email, token digest, issued_at) with one
  UPDATE *before* anything is sent. If that write fails nothing is sent. If it
  succeeds the call succeeds, whatever the notifier does -- a DeliveryError is
  logged and audited, not raised, and the pending state is kept.

  confirm() swaps the email with a conditional UPDATE on (user id, token
  digest). Exactly one of two concurrent redemptions wins; the other -- and
  any later replay -- gets TokenNotFound.

The raw token exists only in memory during request_change() and in the
message handed to the notifier. It is never stored, logged, or audited.
"""

from __future__ import annotations

import logging
import re
from collections.abc import Callable
from datetime import datetime, timedelta

from sqlalchemy.exc import IntegrityError

from auth.audit import AuditSink
from auth.mailer import DeliveryError, Notifier, email_confirmation_message
from auth.models import PendingEmailChange, RequestContext, User
from auth.sessions import to_iso, utcnow
from auth.store import UserStore
from auth.tokens import generate_confirmation_token, hash_confirmation_token
from core.errors import DuplicateEmail, InvalidEmailFormat, TokenExpired, TokenNotFound, ValidationFailed

logger = logging.getLogger("pollhub.auth.email_change")

EMAIL_PATTERN = re.compile(r"[a-zA-Z0-9._%+-]+@[a-zA-Z0-9.-]+\.[a-zA-Z]{2,}")

CONFIRMATION_PATH = "/api/v1/confirm_email/"


def is_valid_email(address: str) -> bool:
    return EMAIL_PATTERN.fullmatch(address) is not None


class EmailChangeWorkflow:
    def __init__(
        self,
        store: UserStore,
        notifier: Notifier,
        audit: AuditSink,
        base_url: str,
        ttl_hours: int = 24,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.store = store
        self.notifier = notifier
        self.audit = audit
        self.base_url = base_url.rstrip("/")
        self.ttl = timedelta(hours=ttl_hours)
        self.clock = clock

    def request_change(self, user: User, new_email: str, context: RequestContext) -> PendingEmailChange:
        """Start an email change for user. Raises DuplicateEmail or InvalidEmailFormat.

        Another user's *verified* address is a duplicate; an address that is
        merely pending for someone else is not (only one of them can win the
        unique index at confirmation time).
        """
        new_email = (new_email or "").strip()
        if self.store.exists_where(self.store.c.email == new_email, self.store.c.id != user.id):
            self._rejected(user, new_email, "duplicate_email", context)
            raise DuplicateEmail()
        if not is_valid_email(new_email):
            self._rejected(user, new_email, "invalid_email_format", context)
            raise InvalidEmailFormat()

        raw_token = generate_confirmation_token()
        digest = hash_confirmation_token(raw_token)
        issued_at = self.clock()
        if not self.store.set_pending_email(user.id, new_email, digest, to_iso(issued_at)):
            raise ValidationFailed({"user": ["no longer exists"]})

        user.new_email = new_email
        user.email_confirmation_token = digest
        user.email_confirmation_sent_at = to_iso(issued_at)
        self.audit.record_event(
            "auth",
            "email_change_requested",
            {"user": user.username, "user_id": user.id, "new_email": new_email, "ip": context.client_ip},
        )
        self._notify(user, new_email, raw_token)
        return PendingEmailChange(
            user_id=user.id,
            new_email=new_email,
            issued_at=to_iso(issued_at),
            expires_at=to_iso(issued_at + self.ttl),
        )

    def confirm(self, token: str, context: RequestContext) -> User:
        """Redeem a confirmation token and return the updated user.

        Raises TokenNotFound (unknown, consumed, or replaced token),
        TokenExpired (older than the validity window) or DuplicateEmail (the
        address was verified by another account in the meantime).
        """
        digest = hash_confirmation_token(token or "")
        user = self.store.find_by("email_confirmation_token", digest)
        if user is None or user.new_email is None:
            self.audit.record_event("security", "invalid_email_confirmation_token", {"ip": context.client_ip})
            raise TokenNotFound()

        if self._is_expired(user.email_confirmation_sent_at):
            self.audit.record_event(
                "security",
                "expired_email_confirmation_token",
                {"user": user.username, "user_id": user.id, "new_email": user.new_email, "ip": context.client_ip},
            )
            raise TokenExpired()

        try:
            swapped = self.store.commit_email_change(user.id, digest)
        except IntegrityError as exc:
            self._rejected(user, user.new_email, "duplicate_email", context)
            raise DuplicateEmail() from exc
        if not swapped:
            self.audit.record_event(
                "security", "invalid_email_confirmation_token", {"user_id": user.id, "ip": context.client_ip}
            )
            raise TokenNotFound()

        confirmed = self.store.find(user.id)
        self.audit.record_event(
            "auth",
            "email_confirmed",
            {"user": user.username, "user_id": user.id, "new_email": user.new_email, "ip": context.client_ip},
        )
        return confirmed

    def purge_expired(self) -> int:
        """Clear pending changes whose token has expired. Returns the number cleared."""
        cleared = self.store.clear_expired_email_changes(to_iso(self.clock() - self.ttl))
        if cleared:
            logger.info("Cleared %d expired email change requests", cleared)
        return cleared

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _is_expired(self, issued_at: str | None) -> bool:
        if not issued_at:
            return True
        return self.clock() - datetime.fromisoformat(issued_at) > self.ttl

    def _notify(self, user: User, new_email: str, raw_token: str) -> None:
        url = f"{self.base_url}{CONFIRMATION_PATH}{raw_token}"
        subject, body = email_confirmation_message(user.username, new_email, url, int(self.ttl.total_seconds() // 3600))
        try:
            self.notifier.send(new_email, subject, body)
        except DeliveryError as exc:
            logger.warning("Confirmation email for user %s not delivered: %s", user.username, exc)
            self.audit.record_event(
                "auth",
                "email_notification_failed",
                {"user": user.username, "user_id": user.id, "new_email": new_email},
            )

    def _rejected(self, user: User, new_email: str, reason: str, context: RequestContext) -> None:
        self.audit.record_event(
            "auth",
            "email_change_rejected",
            {"user": user.username, "user_id": user.id, "new_email": new_email, "reason": reason, "ip": context.client_ip},
        )
