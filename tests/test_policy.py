"""Unit tests for auth/policy.py -- policy engine, rules, scopes.

Covers:
- action_for_request() maps HTTP method + path to an Action
- UserPolicy: owner-or-admin for show/edit/update, admin-not-self for destroy,
  admin-only index, never new/create
- AdminPolicy: every action is admin only
- Anonymous actors are always denied
- Denials are audited with a PolicyAuditRecord; allows are not
- permitted_attributes() per actor
- scope(): all for admins, own record for others, none for anonymous
- Unknown target types are a TypeError
"""

from __future__ import annotations

import pytest

from auth.models import AdminArea, User
from auth.policy import (
    Action,
    Allow,
    Deny,
    PolicyEngine,
    ResourceKind,
    ScopeFilter,
    action_for_request,
    resource_kind,
)
from auth.roles import Role


def _user(uid: int, role: Role = Role.VOTER) -> User:
    return User(username=f"user{uid}", email=f"user{uid}@example.com", role=role, id=uid)


@pytest.fixture
def engine(audit) -> PolicyEngine:
    return PolicyEngine(audit)


class TestActionForRequest:
    @pytest.mark.parametrize(
        "method,path,expected",
        [
            ("GET", "/api/v1/users", Action.SHOW),
            ("GET", "/api/v1/users/3", Action.SHOW),
            ("GET", "/api/v1/users/3/edit", Action.EDIT),
            ("GET", "/api/v1/users/new", Action.NEW),
            ("POST", "/api/v1/users", Action.CREATE),
            ("PATCH", "/api/v1/users/3", Action.UPDATE),
            ("PUT", "/api/v1/users/3", Action.UPDATE),
            ("DELETE", "/api/v1/users/3", Action.DESTROY),
            ("OPTIONS", "/api/v1/users", Action.SHOW),
            ("get", "/api/v1/users/3/edit", Action.EDIT),
        ],
    )
    def test_mapping(self, method: str, path: str, expected: Action) -> None:
        assert action_for_request(method, path) is expected


class TestUserPolicy:
    def test_admin_may_destroy_other(self, engine) -> None:
        admin, target = _user(1, Role.ADMIN), _user(2)
        decision = engine.authorize(admin, Action.DESTROY, target)
        assert isinstance(decision, Allow)
        assert decision.allowed
        assert decision.target is target

    def test_admin_may_not_destroy_self(self, engine) -> None:
        admin = _user(1, Role.ADMIN)
        decision = engine.authorize(admin, Action.DESTROY, admin)
        assert isinstance(decision, Deny)
        assert not decision.allowed

    @pytest.mark.parametrize("role", [Role.VOTER, Role.ORGANIZER])
    def test_non_admin_cannot_touch_other_user(self, engine, role: Role) -> None:
        actor, other = _user(1, role), _user(2)
        for action in (Action.SHOW, Action.EDIT, Action.UPDATE, Action.DESTROY):
            assert isinstance(engine.authorize(actor, action, other), Deny), action

    @pytest.mark.parametrize("role", list(Role))
    def test_owner_may_view_and_edit_self(self, engine, role: Role) -> None:
        me = _user(5, role)
        for action in (Action.SHOW, Action.EDIT, Action.UPDATE):
            assert isinstance(engine.authorize(me, action, me), Allow), action

    def test_ownership_is_by_id(self, engine) -> None:
        """A different object with the same id is the same record."""
        me = _user(5)
        assert isinstance(engine.authorize(me, Action.UPDATE, _user(5)), Allow)

    def test_index_admin_only(self, engine) -> None:
        assert isinstance(engine.authorize(_user(1, Role.ADMIN), Action.INDEX, _user(2)), Allow)
        assert isinstance(engine.authorize(_user(1, Role.ORGANIZER), Action.INDEX, _user(2)), Deny)

    @pytest.mark.parametrize("action", [Action.NEW, Action.CREATE])
    def test_creation_never_allowed(self, engine, action: Action) -> None:
        assert isinstance(engine.authorize(_user(1, Role.ADMIN), action, User("x", "x@example.com")), Deny)

    @pytest.mark.parametrize("action", list(Action))
    def test_anonymous_always_denied(self, engine, action: Action) -> None:
        decision = engine.authorize(None, action, _user(2))
        assert isinstance(decision, Deny)


class TestAdminPolicy:
    @pytest.mark.parametrize("action", list(Action))
    def test_admin_allowed_everything(self, engine, action: Action) -> None:
        assert isinstance(engine.authorize(_user(1, Role.ADMIN), action, AdminArea()), Allow)

    @pytest.mark.parametrize("role", [Role.VOTER, Role.ORGANIZER])
    def test_others_denied(self, engine, role: Role) -> None:
        decision = engine.authorize(_user(1, role), Action.SHOW, AdminArea())
        assert isinstance(decision, Deny)
        assert decision.reason == "admin role required"


class TestDenialAudit:
    def test_deny_is_audited(self, engine, audit) -> None:
        actor, other = _user(1), _user(2)
        decision = engine.authorize(actor, Action.UPDATE, other)
        assert isinstance(decision, Deny)
        assert decision.audit.action == "update"
        assert decision.audit.resource_type == "user"
        assert decision.audit.actor_id == 1
        assert decision.audit.target_id == 2

        [(category, name, attrs)] = audit.events
        assert (category, name) == ("security", "policy_authorization_denied")
        assert attrs["user"] == "user1"
        assert attrs["reason"] == decision.reason

    def test_allow_is_not_audited(self, engine, audit) -> None:
        me = _user(1)
        engine.authorize(me, Action.SHOW, me)
        assert audit.events == []


class TestPermittedAttributes:
    def test_admin(self, engine) -> None:
        policy = engine.policy(_user(1, Role.ADMIN), _user(2))
        assert policy.permitted_attributes() == {"username", "email", "role", "password"}

    def test_owner(self, engine) -> None:
        me = _user(3, Role.ORGANIZER)
        assert engine.policy(me, me).permitted_attributes() == {"username"}

    def test_other(self, engine) -> None:
        assert engine.policy(_user(1), _user(2)).permitted_attributes() == frozenset()


class TestScope:
    def test_admin_sees_all(self, engine) -> None:
        users = [_user(1), _user(2), _user(3, Role.ADMIN)]
        assert engine.scope(_user(3, Role.ADMIN), ResourceKind.USER).filter(users) == users

    @pytest.mark.parametrize("role", [Role.VOTER, Role.ORGANIZER])
    def test_others_see_only_themselves(self, engine, role: Role) -> None:
        users = [_user(1), _user(2, role), _user(3)]
        visible = engine.scope(_user(2, role), ResourceKind.USER).filter(users)
        assert [u.id for u in visible] == [2]

    def test_anonymous_sees_nothing(self, engine) -> None:
        assert engine.scope(None, ResourceKind.USER).filter([_user(1), _user(2)]) == []

    def test_non_admin_admin_area_scope_is_empty(self, engine) -> None:
        assert engine.scope(_user(1, Role.ORGANIZER), ResourceKind.ADMIN_AREA) == ScopeFilter("none")


class TestRegistry:
    def test_known_kinds(self) -> None:
        assert resource_kind(_user(1)) is ResourceKind.USER
        assert resource_kind(AdminArea()) is ResourceKind.ADMIN_AREA

    def test_unknown_type_raises(self, engine) -> None:
        with pytest.raises(TypeError):
            engine.authorize(_user(1, Role.ADMIN), Action.SHOW, object())
