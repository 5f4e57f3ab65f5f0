"""
auth/store.py -- SQLAlchemy Core persistence layer for users and sessions.

Pattern: Repository + Data Mapper.
UserStore is the repository; _row_to_user / _row_to_session are the mappers.
The session manager, the email-change workflow and route code never touch SQL
directly.

Security:
  All queries use bound parameters. No f-strings in SQL.

  email_confirmation_token stores an HMAC digest, never the raw token.
  UNIQUE(email_confirmation_token) is safe on SQLite because NULLs are
  distinct in UNIQUE constraints -- every user without a pending change holds
  NULL.

Atomicity:
  Every public method runs in its own transaction (engine.begin()).
  set_pending_email() writes all three pending fields in one UPDATE, so two
  concurrent requests for the same user can only produce last-committed-wins,
  never a mix of fields. commit_email_change() is a conditional UPDATE keyed
  on (id, token digest); the affected row count tells the caller whether it
  won the redemption.

Errors:
  IntegrityError (duplicate username/email) propagates unchanged -- callers
  translate it into a business error. Every other SQLAlchemyError becomes
  RepositoryUnavailable so callers can tell "system unavailable" from a rule
  violation.

Schema migration notes:
  Legacy databases stored the role as a TEXT `role` column. On startup the
  store adds the integer role_integer column if it is missing and backfills it
  through auth.roles.migrate_legacy_role(). The email-confirmation columns are
  added the same way. Both use PRAGMA table_info (SQLite has no
  ALTER TABLE ... ADD COLUMN IF NOT EXISTS).

Layer rule: no imports from api/.
"""

from __future__ import annotations

import logging
from collections.abc import Iterator
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Any

from sqlalchemy import Column, Integer, MetaData, String, Table, Text, create_engine, event, func, select, text
from sqlalchemy.engine import Connection, Engine
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from auth.models import Session, User
from auth.roles import Role, migrate_legacy_role
from core.errors import RepositoryUnavailable

logger = logging.getLogger("pollhub.auth.store")

_DEFAULT_DB_URL = "sqlite:///community_poll_hub.db"

# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

_metadata = MetaData()

_users = Table(
    "users",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("username", String(255), nullable=False, unique=True),
    Column("email", String(255), nullable=False, unique=True),
    Column("password_digest", Text),
    Column("role_integer", Integer, nullable=False, server_default="0", index=True),
    Column("new_email", String(255)),
    Column("email_confirmation_token", String(64), unique=True),  # HMAC-SHA256 hex
    Column("email_confirmation_sent_at", String(32)),
    Column("created_at", String(32), nullable=False),
)

_sessions = Table(
    "sessions",
    _metadata,
    Column("session_id", String(64), primary_key=True),
    Column("user_id", Integer, nullable=False, index=True),
    Column("username", String(255), nullable=False),
    Column("role_integer", Integer, nullable=False),  # snapshot at login
    Column("issued_at", String(32), nullable=False),
    Column("expires_at", String(32), nullable=False),
)

# Columns find_by() accepts. Validated before any SQL is built so a field
# name can never come from raw user input.
_LOOKUP_FIELDS = frozenset({"id", "username", "email", "email_confirmation_token"})

# Columns added after the first release; (name, DDL type) for ALTER TABLE.
_UPGRADE_COLUMNS = (
    ("new_email", "VARCHAR(255)"),
    ("email_confirmation_token", "VARCHAR(64)"),
    ("email_confirmation_sent_at", "VARCHAR(32)"),
)


# ---------------------------------------------------------------------------
# WAL mode
# ---------------------------------------------------------------------------


def _set_wal_mode(dbapi_conn, connection_record) -> None:
    """Enable WAL journal mode for concurrent read safety.

    WAL (Write-Ahead Logging) allows readers to proceed without blocking
    during writes. Set per-connection because SQLite PRAGMAs are not
    inherited by new connections from the pool.
    """
    dbapi_conn.execute("PRAGMA journal_mode=WAL")


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


# ---------------------------------------------------------------------------
# Repository
# ---------------------------------------------------------------------------


class UserStore:
    """Repository for User and Session records.

    Usage:
        store = UserStore()
        store.save(User(username="alice", email="alice@example.com", password_hash=hash_password("secret")))
        user = store.find_by("username", "alice")
        store.close()
    """

    def __init__(self, db_url: str = _DEFAULT_DB_URL) -> None:
        connect_args: dict = {}
        if db_url.startswith("sqlite"):
            connect_args["check_same_thread"] = False
        self.engine: Engine = create_engine(db_url, connect_args=connect_args)
        if db_url.startswith("sqlite"):
            event.listen(self.engine, "connect", _set_wal_mode)
        _metadata.create_all(self.engine)
        if self.engine.dialect.name == "sqlite":
            self._upgrade_legacy_schema()

    @property
    def c(self):
        """Column collection of the users table, for building exists_where() predicates."""
        return _users.c

    @contextmanager
    def _begin(self) -> Iterator[Connection]:
        try:
            with self.engine.begin() as conn:
                yield conn
        except IntegrityError:
            raise
        except SQLAlchemyError as exc:
            logger.error("User store operation failed: %s", exc)
            raise RepositoryUnavailable("User store is unavailable.") from exc

    def _upgrade_legacy_schema(self) -> None:
        """Bring a pre-enum users table up to the current schema.

        Adds role_integer (backfilled from the legacy TEXT role column through
        the mapping table) and the email-confirmation columns when absent.
        Idempotent -- safe to call on every startup.
        """
        with self._begin() as conn:
            rows = conn.execute(text("PRAGMA table_info(users)")).fetchall()
            existing_cols = {row[1] for row in rows}
            if "role_integer" not in existing_cols:
                conn.execute(text("ALTER TABLE users ADD COLUMN role_integer INTEGER NOT NULL DEFAULT 0"))
                if "role" in existing_cols:
                    legacy = conn.execute(text("SELECT id, role FROM users")).fetchall()
                    for user_id, role in legacy:
                        conn.execute(
                            text("UPDATE users SET role_integer = :role WHERE id = :id"),
                            {"role": migrate_legacy_role(role).value, "id": user_id},
                        )
                    logger.info("Migrated %d legacy role values to role_integer", len(legacy))
                conn.execute(text("CREATE INDEX IF NOT EXISTS ix_users_role_integer ON users (role_integer)"))
            for name, ddl_type in _UPGRADE_COLUMNS:
                if name not in existing_cols:
                    conn.execute(text(f"ALTER TABLE users ADD COLUMN {name} {ddl_type}"))  # noqa: S608
            conn.execute(
                text(
                    "CREATE UNIQUE INDEX IF NOT EXISTS ix_users_email_confirmation_token "
                    "ON users (email_confirmation_token)"
                )
            )

    # ------------------------------------------------------------------
    # User queries
    # ------------------------------------------------------------------

    def count_users(self) -> int:
        with self._begin() as conn:
            result = conn.execute(select(func.count()).select_from(_users)).scalar()
        return result or 0

    def count_by_role(self) -> dict[Role, int]:
        """Return {Role: count} for every role, including roles with no users."""
        counts = {role: 0 for role in Role}
        with self._begin() as conn:
            rows = conn.execute(
                select(_users.c.role_integer, func.count()).group_by(_users.c.role_integer)
            ).fetchall()
        for role_value, count in rows:
            counts[Role(role_value)] = count
        return counts

    def find(self, user_id: int) -> User | None:
        """Look up a user by primary key. Returns None if not found."""
        return self.find_by("id", user_id)

    def find_by(self, field: str, value: Any) -> User | None:
        """Look up a single user by an indexed field (exact, case-sensitive match).

        Only fields in _LOOKUP_FIELDS are accepted; anything else raises
        ValueError rather than silently returning None.
        """
        if field not in _LOOKUP_FIELDS:
            raise ValueError(f"Unsupported lookup field: {field!r}")
        if value is None:
            return None
        with self._begin() as conn:
            row = conn.execute(_users.select().where(_users.c[field] == value)).fetchone()
        return _row_to_user(row) if row is not None else None

    def exists_where(self, *predicates) -> bool:
        """Return True if any user matches all predicates.

        Predicates are SQLAlchemy column expressions built from store.c, e.g.
            store.exists_where(store.c.email == "a@x.com", store.c.id != 3)
        """
        with self._begin() as conn:
            row = conn.execute(select(_users.c.id).where(*predicates).limit(1)).fetchone()
        return row is not None

    def list_users(self) -> list[User]:
        """Return all users ordered by username. Callers apply policy scope."""
        with self._begin() as conn:
            rows = conn.execute(_users.select().order_by(_users.c.username)).fetchall()
        return [_row_to_user(r) for r in rows]

    def save(self, user: User) -> int:
        """Insert (id is None) or update a user; return its database ID.

        On insert the assigned id and created_at are written back onto the
        dataclass. Raises sqlalchemy.exc.IntegrityError if the username or
        email is already taken.
        """
        values = {
            "username": user.username,
            "email": user.email,
            "password_digest": user.password_hash,
            "role_integer": int(user.role),
            "new_email": user.new_email,
            "email_confirmation_token": user.email_confirmation_token,
            "email_confirmation_sent_at": user.email_confirmation_sent_at,
        }
        with self._begin() as conn:
            if user.id is None:
                created_at = user.created_at or _now_iso()
                result = conn.execute(_users.insert().values(created_at=created_at, **values))
                user.id = result.inserted_primary_key[0]
                user.created_at = created_at
            else:
                conn.execute(_users.update().where(_users.c.id == user.id).values(**values))
        return user.id

    def delete(self, user: User) -> bool:
        """Delete a user and every session they own. Returns False if not found."""
        with self._begin() as conn:
            conn.execute(_sessions.delete().where(_sessions.c.user_id == user.id))
            result = conn.execute(_users.delete().where(_users.c.id == user.id))
        return result.rowcount > 0

    # ------------------------------------------------------------------
    # Email change primitives
    # ------------------------------------------------------------------

    def set_pending_email(self, user_id: int, new_email: str, token_digest: str, sent_at: str) -> bool:
        """Record a pending email change in a single UPDATE.

        Replaces any previous pending change for the user (last committed
        wins). Returns False if the user no longer exists.
        """
        with self._begin() as conn:
            result = conn.execute(
                _users.update()
                .where(_users.c.id == user_id)
                .values(
                    new_email=new_email,
                    email_confirmation_token=token_digest,
                    email_confirmation_sent_at=sent_at,
                )
            )
        return result.rowcount > 0

    def commit_email_change(self, user_id: int, token_digest: str) -> bool:
        """Swap email := new_email and clear the pending fields, if the token still matches.

        Returns True when this call performed the swap, False when the token
        was already consumed or replaced. Raises IntegrityError if the pending
        address now belongs to another user.
        """
        with self._begin() as conn:
            result = conn.execute(
                _users.update()
                .where(
                    (_users.c.id == user_id)
                    & (_users.c.email_confirmation_token == token_digest)
                    & (_users.c.new_email.is_not(None))
                )
                .values(
                    email=_users.c.new_email,
                    new_email=None,
                    email_confirmation_token=None,
                    email_confirmation_sent_at=None,
                )
            )
        return result.rowcount > 0

    def clear_expired_email_changes(self, issued_before: str) -> int:
        """Clear pending changes issued before the given ISO timestamp. Returns rows cleared."""
        with self._begin() as conn:
            result = conn.execute(
                _users.update()
                .where(
                    _users.c.email_confirmation_sent_at.is_not(None)
                    & (_users.c.email_confirmation_sent_at < issued_before)
                )
                .values(new_email=None, email_confirmation_token=None, email_confirmation_sent_at=None)
            )
        return result.rowcount

    # ------------------------------------------------------------------
    # Sessions
    # ------------------------------------------------------------------

    def create_session(self, session: Session) -> None:
        with self._begin() as conn:
            conn.execute(
                _sessions.insert().values(
                    session_id=session.session_id,
                    user_id=session.user_id,
                    username=session.username,
                    role_integer=int(session.role),
                    issued_at=session.issued_at,
                    expires_at=session.expires_at,
                )
            )

    def get_session(self, session_id: str) -> Session | None:
        with self._begin() as conn:
            row = conn.execute(_sessions.select().where(_sessions.c.session_id == session_id)).fetchone()
        return _row_to_session(row) if row is not None else None

    def delete_session(self, session_id: str) -> bool:
        """Remove a session. Returns False if it was already gone."""
        with self._begin() as conn:
            result = conn.execute(_sessions.delete().where(_sessions.c.session_id == session_id))
        return result.rowcount > 0

    def purge_expired_sessions(self, now_iso: str) -> int:
        """Delete sessions whose expires_at is at or before now. Returns rows removed."""
        with self._begin() as conn:
            result = conn.execute(_sessions.delete().where(_sessions.c.expires_at <= now_iso))
        return result.rowcount

    def close(self) -> None:
        self.engine.dispose()


# ---------------------------------------------------------------------------
# Row mappers (Data Mapper pattern)
# ---------------------------------------------------------------------------


def _row_to_user(row) -> User:
    return User(
        id=row.id,
        username=row.username,
        email=row.email,
        password_hash=row.password_digest,
        role=Role(row.role_integer),
        new_email=row.new_email,
        email_confirmation_token=row.email_confirmation_token,
        email_confirmation_sent_at=row.email_confirmation_sent_at,
        created_at=row.created_at,
    )


def _row_to_session(row) -> Session:
    return Session(
        session_id=row.session_id,
        user_id=row.user_id,
        username=row.username,
        role=Role(row.role_integer),
        issued_at=row.issued_at,
        expires_at=row.expires_at,
    )
