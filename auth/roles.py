"""
auth/roles.py -- The closed role enumeration and its capability predicates.

Roles are stored as integers (voter=0, organizer=1, admin=2). The integer
order is a storage detail only: permission checks never compare roles with
< or >. The three roles have disjoint capability sets -- an organizer is not
a "super-voter" -- with a single exception: admin satisfies any
organizer-or-admin check.

Older databases stored the role as a free-form string. LEGACY_ROLE_MAP is the
one place that translates those strings; auth/store.py uses it when upgrading
a legacy users table. Unknown strings fall back to voter, the least
privileged role.

Layer rule: no imports from api/. Import from core/ is allowed.
"""

from __future__ import annotations

import logging
from enum import IntEnum
from typing import TYPE_CHECKING

from core.errors import ValidationFailed

if TYPE_CHECKING:
    from auth.models import User

logger = logging.getLogger("pollhub.auth.roles")


class Role(IntEnum):
    VOTER = 0
    ORGANIZER = 1
    ADMIN = 2

    @property
    def label(self) -> str:
        """Lowercase role name as shown to users ("voter", "organizer", "admin")."""
        return self.name.lower()

    @classmethod
    def parse(cls, value: Role | int | str) -> Role:
        """Coerce an API or CLI value into a Role.

        Accepts a Role, its integer value, or its name in any case. Anything
        else raises ValidationFailed -- this is input validation, not the
        lenient legacy migration (see migrate_legacy_role).
        """
        if isinstance(value, Role):
            return value
        if isinstance(value, int) and not isinstance(value, bool):
            try:
                return cls(value)
            except ValueError:
                pass
        if isinstance(value, str):
            name = value.strip().upper()
            if name in cls.__members__:
                return cls[name]
            if name.isdigit():
                return cls.parse(int(name))
        raise ValidationFailed({"role": [f"is not one of {', '.join(r.label for r in cls)}"]})


# ---------------------------------------------------------------------------
# Legacy string -> integer mapping
# ---------------------------------------------------------------------------

LEGACY_ROLE_MAP: dict[str, int] = {
    "voter": Role.VOTER.value,
    "organizer": Role.ORGANIZER.value,
    "admin": Role.ADMIN.value,
}


def migrate_legacy_role(value: str | None) -> Role:
    """Map a legacy role string to a Role. Unknown or missing values map to voter."""
    if value is not None and value in LEGACY_ROLE_MAP:
        return Role(LEGACY_ROLE_MAP[value])
    logger.warning("Unknown legacy role %r mapped to voter", value)
    return Role.VOTER


# ---------------------------------------------------------------------------
# Predicates -- accept None so callers can pass an anonymous actor directly
# ---------------------------------------------------------------------------


def is_admin(user: User | None) -> bool:
    return user is not None and user.role == Role.ADMIN


def is_organizer(user: User | None) -> bool:
    return user is not None and user.role == Role.ORGANIZER


def is_voter(user: User | None) -> bool:
    return user is not None and user.role == Role.VOTER


def is_organizer_or_admin(user: User | None) -> bool:
    return is_organizer(user) or is_admin(user)
