"""
auth/accounts.py -- Account lifecycle: registration, profile, password, admin edits.

Every method that changes someone else's record goes through the policy
engine first, so an unauthorized attempt is audited before Forbidden is
raised. Methods that act on the caller's own record (profile, password) are
reached only by an authenticated user, so they need no policy check.

Actors arrive with their session's role snapshot applied (see
SessionManager.actor_for). That snapshot must never be written back, so every
mutation reloads the target from the store and saves the fresh copy.

Layer rule: no imports from api/.
"""

from __future__ import annotations

import logging
import re
from typing import Any

from sqlalchemy.exc import IntegrityError

from auth.audit import AuditSink
from auth.email_change import is_valid_email
from auth.models import RequestContext, User
from auth.policy import Action, Deny, PolicyEngine, ResourceKind
from auth.roles import Role, is_admin
from auth.store import UserStore
from auth.tokens import hash_password, verify_password
from core.errors import Forbidden, InvalidCredentials, ValidationFailed

logger = logging.getLogger("pollhub.auth.accounts")

USERNAME_PATTERN = re.compile(r"[A-Za-z0-9_.-]{3,30}")
PASSWORD_MIN_LENGTH = 8
# bcrypt only looks at the first 72 bytes.
PASSWORD_MAX_BYTES = 72

_TAKEN = "has already been taken"


def password_errors(password: str | None, confirmation: str | None) -> dict[str, list[str]]:
    errors: dict[str, list[str]] = {}
    if not password or len(password) < PASSWORD_MIN_LENGTH:
        errors.setdefault("password", []).append(f"is too short (minimum is {PASSWORD_MIN_LENGTH} characters)")
    elif len(password.encode("utf-8")) > PASSWORD_MAX_BYTES:
        errors.setdefault("password", []).append(f"is too long (maximum is {PASSWORD_MAX_BYTES} bytes)")
    if confirmation is not None and password != confirmation:
        errors.setdefault("password_confirmation", []).append("doesn't match password")
    return errors


class AccountService:
    def __init__(self, store: UserStore, policy: PolicyEngine, audit: AuditSink) -> None:
        self.store = store
        self.policy = policy
        self.audit = audit

    # ------------------------------------------------------------------
    # Registration (unauthenticated)
    # ------------------------------------------------------------------

    def register(
        self,
        username: str,
        email: str,
        password: str,
        password_confirmation: str,
        context: RequestContext,
    ) -> User:
        """Create a voter account. Raises ValidationFailed with every field error at once."""
        username = (username or "").strip()
        email = (email or "").strip()
        errors = self._identity_errors(username, email, exclude_id=None)
        errors.update(password_errors(password, password_confirmation))
        if errors:
            self._registration_failed(username, email, errors, context)
            raise ValidationFailed(errors)

        user = User(username=username, email=email, role=Role.VOTER, password_hash=hash_password(password))
        try:
            self.store.save(user)
        except IntegrityError as exc:
            errors = self._conflict_errors(user)
            self._registration_failed(username, email, errors, context)
            raise ValidationFailed(errors) from exc
        self.audit.record_event(
            "auth", "registration_successful", {"username": username, "email": email, "ip": context.client_ip}
        )
        return user

    # ------------------------------------------------------------------
    # Self-service
    # ------------------------------------------------------------------

    def update_profile(self, user: User, username: str, context: RequestContext) -> User:
        """Change the caller's username."""
        record = self._reload(user)
        username = (username or "").strip()
        errors = self._username_errors(username, exclude_id=record.id)
        if errors:
            self.audit.record_event(
                "auth", "profile_update_failed", {"user": record.username, "errors": _flatten(errors)}
            )
            raise ValidationFailed(errors)
        previous = record.username
        record.username = username
        self._save(record)
        self.audit.record_event(
            "auth",
            "profile_updated",
            {"user": username, "previous_username": previous, "updated_fields": ["username"], "ip": context.client_ip},
        )
        return record

    def change_password(
        self,
        user: User,
        current_password: str,
        new_password: str,
        new_password_confirmation: str,
        context: RequestContext,
    ) -> User:
        """Change the caller's password after re-checking the current one."""
        record = self._reload(user)
        if not record.password_hash or not verify_password(current_password or "", record.password_hash):
            self.audit.record_event(
                "security",
                "password_change_failed",
                {"user": record.username, "reason": "current password incorrect", "ip": context.client_ip},
            )
            raise InvalidCredentials("Current password is incorrect.")
        errors = password_errors(new_password, new_password_confirmation)
        if errors:
            raise ValidationFailed(errors)
        record.password_hash = hash_password(new_password)
        self._save(record)
        self.audit.record_event("auth", "password_changed", {"user": record.username, "ip": context.client_ip})
        return record

    # ------------------------------------------------------------------
    # Policy-gated management
    # ------------------------------------------------------------------

    def list_users(self, actor: User | None) -> list[User]:
        """Users the actor may see: all for admins, only themselves otherwise."""
        return self.policy.scope(actor, ResourceKind.USER).filter(self.store.list_users())

    def admin_update(self, actor: User | None, target: User, changes: dict[str, Any], context: RequestContext) -> User:
        """Apply attribute changes to target on behalf of actor.

        Only attributes in UserPolicy.permitted_attributes() may be changed; a
        blank password means "leave unchanged". Raises Forbidden on denial,
        ValidationFailed on bad values.
        """
        self._require(actor, Action.UPDATE, target)
        changes = {k: v for k, v in changes.items() if v is not None}
        permitted = self.policy.policy(actor, target).permitted_attributes()
        refused = sorted(set(changes) - permitted)
        if refused:
            reason = f"cannot change: {', '.join(refused)}"
            self.audit.record_event(
                "security",
                "attribute_change_denied",
                {"user": actor.username, "target_user_id": target.id, "fields": refused},
            )
            raise Forbidden(reason)

        record = self._reload(target)
        errors: dict[str, list[str]] = {}
        if "username" in changes:
            record.username = str(changes["username"]).strip()
            errors.update(self._username_errors(record.username, exclude_id=record.id))
        if "email" in changes:
            record.email = str(changes["email"]).strip()
            errors.update(self._email_errors(record.email, exclude_id=record.id))
        role_changed = False
        if "role" in changes:
            new_role = Role.parse(changes["role"])
            role_changed = new_role != record.role
            record.role = new_role
        password_updated = False
        password = changes.get("password")
        if isinstance(password, str) and password.strip():
            problems = password_errors(password, None)
            if problems:
                errors.update(problems)
            else:
                record.password_hash = hash_password(password)
                password_updated = True
        if errors:
            self.audit.record_event(
                "admin", "admin_user_update_failed", {"target_user_id": target.id, "errors": _flatten(errors)}
            )
            raise ValidationFailed(errors)

        self._save(record)
        self.audit.record_event(
            "admin" if is_admin(actor) else "auth",
            "admin_user_updated" if is_admin(actor) else "profile_updated",
            {
                "user": actor.username,
                "target_user_id": record.id,
                "target_username": record.username,
                "updated_fields": sorted(changes),
                "role_changed": role_changed,
                "password_updated": password_updated,
            },
        )
        return record

    def delete_user(self, actor: User | None, target: User, context: RequestContext) -> None:
        """Delete target. Admins only, and never their own account."""
        self._require(actor, Action.DESTROY, target)
        self.store.delete(target)
        self.audit.record_event(
            "admin",
            "admin_user_deleted",
            {"target_user_id": target.id, "target_username": target.username, "deleted_by": actor.username},
        )

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _require(self, actor: User | None, action: Action, target: Any) -> None:
        decision = self.policy.authorize(actor, action, target)
        if isinstance(decision, Deny):
            raise Forbidden(decision.reason)

    def _reload(self, user: User) -> User:
        record = self.store.find(user.id) if user.id is not None else None
        if record is None:
            raise ValidationFailed({"user": ["no longer exists"]})
        return record

    def _save(self, record: User) -> None:
        try:
            self.store.save(record)
        except IntegrityError as exc:
            raise ValidationFailed(self._conflict_errors(record)) from exc

    def _conflict_errors(self, record: User) -> dict[str, list[str]]:
        """Name the field that lost a uniqueness race with another writer."""
        others = [self.store.c.id != record.id] if record.id is not None else []
        errors: dict[str, list[str]] = {}
        if self.store.exists_where(self.store.c.email == record.email, *others):
            errors["email"] = [_TAKEN]
        if self.store.exists_where(self.store.c.username == record.username, *others):
            errors["username"] = [_TAKEN]
        return errors or {"username": [_TAKEN]}

    def _identity_errors(self, username: str, email: str, exclude_id: int | None) -> dict[str, list[str]]:
        errors = self._username_errors(username, exclude_id)
        errors.update(self._email_errors(email, exclude_id))
        return errors

    def _username_errors(self, username: str, exclude_id: int | None) -> dict[str, list[str]]:
        if not USERNAME_PATTERN.fullmatch(username):
            return {"username": ["must be 3-30 letters, digits, '_', '.' or '-'"]}
        predicates = [self.store.c.username == username]
        if exclude_id is not None:
            predicates.append(self.store.c.id != exclude_id)
        if self.store.exists_where(*predicates):
            return {"username": [_TAKEN]}
        return {}

    def _email_errors(self, email: str, exclude_id: int | None) -> dict[str, list[str]]:
        if not is_valid_email(email):
            return {"email": ["is invalid"]}
        predicates = [self.store.c.email == email]
        if exclude_id is not None:
            predicates.append(self.store.c.id != exclude_id)
        if self.store.exists_where(*predicates):
            return {"email": [_TAKEN]}
        return {}

    def _registration_failed(
        self, username: str, email: str, errors: dict[str, list[str]], context: RequestContext
    ) -> None:
        self.audit.record_event(
            "auth",
            "registration_failed",
            {"username": username, "email": email, "errors": _flatten(errors), "ip": context.client_ip},
        )


def _flatten(errors: dict[str, list[str]]) -> list[str]:
    return [f"{field} {msg}" for field, msgs in errors.items() for msg in msgs]
