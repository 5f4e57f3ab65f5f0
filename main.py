#!/usr/bin/env python3
"""
Community Poll Hub -- account administration from the command line.

Usage:
  python main.py create-user alice alice@example.com --role admin
  python main.py set-role alice organizer
  python main.py purge
  python main.py --db-url sqlite:///other.db purge

create-user prompts for the password (twice) unless --password-stdin is given.
Role changes apply to existing sessions at the user's next login.

Environment variables:
  DATABASE_URL   SQLAlchemy URL of the user database (overridden by --db-url)
  SECRET_KEY     Required unless DEBUG=true (used for token digests)
"""

import argparse
import getpass
import sys
from typing import Optional

from auth.accounts import AccountService, password_errors
from auth.audit import LoggingAuditSink
from auth.email_change import EmailChangeWorkflow
from auth.mailer import LogNotifier
from auth.models import RequestContext
from auth.policy import PolicyEngine
from auth.roles import Role
from auth.sessions import SessionManager
from auth.store import UserStore
from auth.tokens import hash_password
from core.config import get_settings
from core.errors import PollHubError

_CLI_CONTEXT = RequestContext(client_ip="cli", method="CLI", path="main.py")


def _read_password(from_stdin: bool) -> Optional[str]:
    """Return the new password, or None when the two prompts disagree."""
    if from_stdin:
        return sys.stdin.readline().rstrip("\n")
    first = getpass.getpass("Password: ")
    second = getpass.getpass("Confirm password: ")
    if first != second:
        return None
    return first


def cmd_create_user(store: UserStore, args: argparse.Namespace) -> int:
    password = _read_password(args.password_stdin)
    if password is None:
        print("  [!] Passwords do not match.")
        return 1
    audit = LoggingAuditSink()
    accounts = AccountService(store, PolicyEngine(audit), audit)
    try:
        user = accounts.register(args.username, args.email, password, password, _CLI_CONTEXT)
        role = Role.parse(args.role)
    except PollHubError as exc:
        print(f"  [!] {exc}")
        return 1
    if role != user.role:
        user.role = role
        store.save(user)
    print(f"  Created {user.username} <{user.email}> as {user.role.label} (id={user.id}).")
    return 0


def cmd_set_role(store: UserStore, args: argparse.Namespace) -> int:
    user = store.find_by("username", args.username)
    if user is None:
        print(f"  [!] No user named '{args.username}'.")
        return 1
    try:
        role = Role.parse(args.role)
    except PollHubError as exc:
        print(f"  [!] {exc}")
        return 1
    user.role = role
    store.save(user)
    LoggingAuditSink().record_event(
        "admin", "role_changed", {"target_username": user.username, "role": role.label, "via": "cli"}
    )
    print(f"  {user.username} is now {role.label}. Existing sessions keep their old role until re-login.")
    return 0


def cmd_reset_password(store: UserStore, args: argparse.Namespace) -> int:
    user = store.find_by("username", args.username)
    if user is None:
        print(f"  [!] No user named '{args.username}'.")
        return 1
    password = _read_password(args.password_stdin)
    if password is None:
        print("  [!] Passwords do not match.")
        return 1
    errors = password_errors(password, None)
    if errors:
        for field, messages in errors.items():
            for message in messages:
                print(f"  [!] {field} {message}")
        return 1
    user.password_hash = hash_password(password)
    store.save(user)
    print(f"  Password updated for {user.username}.")
    return 0


def cmd_purge(store: UserStore, args: argparse.Namespace) -> int:
    settings = get_settings()
    audit = LoggingAuditSink()
    sessions = SessionManager(store, audit, expire_seconds=settings.session_expire_seconds)
    workflow = EmailChangeWorkflow(
        store, LogNotifier(), audit, base_url=settings.base_url, ttl_hours=settings.email_token_ttl_hours
    )
    expired_sessions = sessions.expire_sessions()
    expired_changes = workflow.purge_expired()
    print(f"  Removed {expired_sessions} expired session(s) and {expired_changes} expired email change(s).")
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="poll-hub",
        description="Community Poll Hub account administration.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python main.py create-user alice alice@example.com --role admin
  echo 's3cret-pass' | python main.py create-user bob bob@example.com --password-stdin
  python main.py set-role bob organizer
  python main.py reset-password bob
  python main.py purge
        """,
    )
    parser.add_argument(
        "--db-url",
        metavar="URL",
        default=None,
        help="SQLAlchemy database URL (default: DATABASE_URL setting)",
    )
    sub = parser.add_subparsers(dest="command", metavar="COMMAND")

    create = sub.add_parser("create-user", help="Create an account (prompts for the password)")
    create.add_argument("username")
    create.add_argument("email")
    create.add_argument(
        "--role",
        choices=[r.label for r in Role],
        default=Role.VOTER.label,
        help="Role for the new account (default: voter)",
    )
    create.add_argument("--password-stdin", action="store_true", help="Read the password from stdin")
    create.set_defaults(func=cmd_create_user)

    set_role = sub.add_parser("set-role", help="Change a user's role")
    set_role.add_argument("username")
    set_role.add_argument("role", choices=[r.label for r in Role])
    set_role.set_defaults(func=cmd_set_role)

    reset = sub.add_parser("reset-password", help="Set a new password for a user")
    reset.add_argument("username")
    reset.add_argument("--password-stdin", action="store_true", help="Read the password from stdin")
    reset.set_defaults(func=cmd_reset_password)

    purge = sub.add_parser("purge", help="Delete expired sessions and stale pending email changes")
    purge.set_defaults(func=cmd_purge)
    return parser


def main(argv: Optional[list[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    if not getattr(args, "func", None):
        parser.print_help()
        return 0

    store = UserStore(db_url=args.db_url or get_settings().database_url)
    try:
        return args.func(store, args)
    finally:
        store.close()


if __name__ == "__main__":
    sys.exit(main())
