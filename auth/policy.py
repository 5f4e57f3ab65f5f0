"""
auth/policy.py -- Role-based policy engine.

Every protected action asks one question:

    engine.authorize(actor, action, target) -> Allow(target) | Deny(reason)

Pattern: Policy objects + closed registry.
  Each resource kind has exactly one policy class, listed in POLICIES. The
  kind of a target is read from its Python type through _KIND_BY_TYPE, so an
  unknown resource type is a TypeError at the call site rather than a silent
  lookup miss. Each policy lists its rules per Action explicitly; an action a
  policy does not list is denied.

Denials are observable (the Deny value) and auditable: the engine records a
"policy_authorization_denied" event before returning. The engine never builds
an HTTP response -- the caller chooses between 403, a redirect, or anything
else.

scope() is the list-view companion: it returns a predicate that admits only
the records the actor may see in a collection.

Layer rule: no imports from api/.
"""

from __future__ import annotations

from collections.abc import Callable, Iterable
from dataclasses import dataclass
from enum import Enum
from typing import Any, Generic, TypeVar, Union

from auth.audit import AuditSink
from auth.models import AdminArea, User
from auth.roles import is_admin

T = TypeVar("T")


class Action(str, Enum):
    INDEX = "index"
    SHOW = "show"
    NEW = "new"
    CREATE = "create"
    EDIT = "edit"
    UPDATE = "update"
    DESTROY = "destroy"


class ResourceKind(str, Enum):
    USER = "user"
    ADMIN_AREA = "admin_area"


def action_for_request(method: str, path: str) -> Action:
    """Derive the policy action from an HTTP method and path.

    GET maps to edit / new / show depending on the path; the other verbs map
    one-to-one. Unknown verbs fall back to show, the least destructive action.
    """
    method = method.upper()
    if method == "GET":
        if "edit" in path:
            return Action.EDIT
        if "new" in path:
            return Action.NEW
        return Action.SHOW
    if method == "POST":
        return Action.CREATE
    if method in ("PATCH", "PUT"):
        return Action.UPDATE
    if method == "DELETE":
        return Action.DESTROY
    return Action.SHOW


# ---------------------------------------------------------------------------
# Decisions
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class PolicyAuditRecord:
    """What gets written to the audit sink when a request is denied."""

    reason: str
    action: str
    resource_type: str
    actor_id: int | None
    actor_username: str | None
    target_id: Any = None

    def as_attributes(self) -> dict[str, Any]:
        return {
            "reason": self.reason,
            "action": self.action,
            "resource": self.resource_type,
            "user": self.actor_username,
            "user_id": self.actor_id,
            "target_id": self.target_id,
        }


@dataclass(frozen=True)
class Allow(Generic[T]):
    target: T

    @property
    def allowed(self) -> bool:
        return True


@dataclass(frozen=True)
class Deny:
    reason: str
    audit: PolicyAuditRecord

    @property
    def allowed(self) -> bool:
        return False


Decision = Union[Allow, Deny]


# ---------------------------------------------------------------------------
# Policies
# ---------------------------------------------------------------------------


def _same_user(a: User | None, b: Any) -> bool:
    return a is not None and isinstance(b, User) and a.id is not None and a.id == b.id


class Policy:
    """Base policy: instantiated per check with the actor and the target.

    Subclasses fill `rules` through rule_table(). Every rule returns None when
    it allows the action, or a short reason string when it denies.
    """

    def __init__(self, actor: User | None, target: Any) -> None:
        self.actor = actor
        self.target = target

    def rule_table(self) -> dict[Action, Callable[[], str | None]]:
        return {}

    def check(self, action: Action) -> str | None:
        rule = self.rule_table().get(action)
        if rule is None:
            return f"action '{action.value}' is not permitted on this resource"
        if self.actor is None:
            return "not signed in"
        return rule()


class UserPolicy(Policy):
    """Rules for user records.

    Users can view and edit their own record; admins can view and edit any.
    Only admins can delete users, and never themselves. Accounts are created
    through registration, which is outside this policy.
    """

    def rule_table(self) -> dict[Action, Callable[[], str | None]]:
        return {
            Action.INDEX: self._admin_only,
            Action.SHOW: self._self_or_admin,
            Action.NEW: self._never,
            Action.CREATE: self._never,
            Action.EDIT: self._self_or_admin,
            Action.UPDATE: self._self_or_admin,
            Action.DESTROY: self._admin_not_self,
        }

    def _admin_only(self) -> str | None:
        return None if is_admin(self.actor) else "admin role required"

    def _self_or_admin(self) -> str | None:
        if _same_user(self.actor, self.target) or is_admin(self.actor):
            return None
        return "only the account owner or an admin may do this"

    def _never(self) -> str | None:
        return "accounts are created through registration"

    def _admin_not_self(self) -> str | None:
        if not is_admin(self.actor):
            return "admin role required"
        if _same_user(self.actor, self.target):
            return "admins cannot delete their own account"
        return None

    def permitted_attributes(self) -> frozenset[str]:
        if is_admin(self.actor):
            return frozenset({"username", "email", "role", "password"})
        # Owners change email and password through the confirmation workflow
        # and the password-change flow, which re-verify them.
        if _same_user(self.actor, self.target):
            return frozenset({"username"})
        return frozenset()


class AdminPolicy(Policy):
    """Admin area (dashboard, user management, activity monitoring): admins only."""

    def rule_table(self) -> dict[Action, Callable[[], str | None]]:
        return {action: self._admin_only for action in Action}

    def _admin_only(self) -> str | None:
        return None if is_admin(self.actor) else "admin role required"


POLICIES: dict[ResourceKind, type[Policy]] = {
    ResourceKind.USER: UserPolicy,
    ResourceKind.ADMIN_AREA: AdminPolicy,
}

_KIND_BY_TYPE: dict[type, ResourceKind] = {
    User: ResourceKind.USER,
    AdminArea: ResourceKind.ADMIN_AREA,
}


def resource_kind(target: Any) -> ResourceKind:
    try:
        return _KIND_BY_TYPE[type(target)]
    except KeyError:
        raise TypeError(f"No policy registered for {type(target).__name__}") from None


def _target_id(target: Any) -> Any:
    return getattr(target, "id", None)


# ---------------------------------------------------------------------------
# Scopes
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ScopeFilter:
    """Predicate over a collection. mode is "all", "own" or "none"."""

    mode: str
    owner_id: int | None = None

    def __call__(self, record: Any) -> bool:
        if self.mode == "all":
            return True
        if self.mode == "own":
            return self.owner_id is not None and _target_id(record) == self.owner_id
        return False

    def filter(self, records: Iterable[T]) -> list[T]:
        return [r for r in records if self(r)]


# ---------------------------------------------------------------------------
# Engine
# ---------------------------------------------------------------------------


class PolicyEngine:
    """Evaluates policies and reports every denial to the audit sink."""

    def __init__(self, audit: AuditSink) -> None:
        self.audit = audit

    def policy(self, actor: User | None, target: Any) -> Policy:
        return POLICIES[resource_kind(target)](actor, target)

    def authorize(self, actor: User | None, action: Action, target: T) -> Decision:
        kind = resource_kind(target)
        reason = POLICIES[kind](actor, target).check(action)
        if reason is None:
            return Allow(target)
        record = PolicyAuditRecord(
            reason=reason,
            action=action.value,
            resource_type=kind.value,
            actor_id=actor.id if actor else None,
            actor_username=actor.username if actor else None,
            target_id=_target_id(target),
        )
        self.audit.record_event("security", "policy_authorization_denied", record.as_attributes())
        return Deny(reason=reason, audit=record)

    def scope(self, actor: User | None, kind: ResourceKind) -> ScopeFilter:
        if actor is None:
            return ScopeFilter("none")
        if is_admin(actor):
            return ScopeFilter("all")
        if kind is ResourceKind.USER:
            return ScopeFilter("own", owner_id=actor.id)
        return ScopeFilter("none")
