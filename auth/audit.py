"""
auth/audit.py -- Audit sink used by the session manager, policy engine and workflows.

The core reports security-relevant outcomes through a single call:

    sink.record_event(category, event_name, attributes)

category groups events the way operators read them:
  "auth"     -- logins, logouts, registration, password and email changes
  "security" -- failed logins, policy denials, bad confirmation tokens
  "admin"    -- changes an admin makes to other accounts

LoggingAuditSink writes each event to the "pollhub.audit.<category>" logger
as one line of sorted key=value pairs, so ordinary log shipping doubles as the
audit trail. Any attribute whose key looks like a secret is replaced with
"[FILTERED]" before it is written -- passwords and confirmation tokens must
never reach a log, whatever a caller passes in.
"""

from __future__ import annotations

import logging
from typing import Any, Protocol

SECURITY_WARNING_EVENTS = frozenset(
    {
        "login_failed",
        "policy_authorization_denied",
        "invalid_email_confirmation_token",
        "expired_email_confirmation_token",
    }
)

_FILTERED = "[FILTERED]"
_SECRET_MARKERS = ("password", "token", "secret")


class AuditSink(Protocol):
    def record_event(self, category: str, event_name: str, attributes: dict[str, Any]) -> None: ...


def scrub(attributes: dict[str, Any]) -> dict[str, Any]:
    """Return a copy of attributes with secret-looking values replaced.

    Boolean flags such as password_updated=True are kept -- they say that
    something changed, not what it changed to.
    """
    clean: dict[str, Any] = {}
    for key, value in attributes.items():
        if any(marker in key.lower() for marker in _SECRET_MARKERS) and not isinstance(value, bool):
            clean[key] = _FILTERED
        else:
            clean[key] = value
    return clean


class LoggingAuditSink:
    """Audit sink backed by the standard logging module."""

    def __init__(self, prefix: str = "pollhub.audit") -> None:
        self.prefix = prefix

    def record_event(self, category: str, event_name: str, attributes: dict[str, Any]) -> None:
        clean = scrub(attributes)
        level = logging.WARNING if event_name in SECURITY_WARNING_EVENTS else logging.INFO
        rendered = " ".join(f"{k}={clean[k]!r}" for k in sorted(clean))
        logging.getLogger(f"{self.prefix}.{category}").log(level, "%s %s", event_name, rendered)
