"""
core/errors.py -- Error taxonomy shared by auth/ and api/.

Two unrelated families, so callers can tell them apart:

  PollHubError      -- business-rule outcomes (bad credentials, policy denial,
                       duplicate email, expired token, ...). All recoverable;
                       the caller chooses the user-facing message.
  InfrastructureError -- the system itself is unavailable (e.g. the database
                       cannot be reached). Never raised for a rule violation.

Every PollHubError carries a stable machine-readable `code`. api/main.py maps
codes to HTTP status codes; the core never knows about HTTP.
"""

from __future__ import annotations


class PollHubError(Exception):
    """Base class for recoverable business-rule errors."""

    code = "error"
    message = "Request could not be completed."

    def __init__(self, message: str | None = None) -> None:
        super().__init__(message or self.message)


class InvalidCredentials(PollHubError):
    code = "invalid_credentials"
    message = "Invalid username or password."


class Unauthenticated(PollHubError):
    code = "unauthenticated"
    message = "Authentication required."


class Forbidden(PollHubError):
    """Policy denial. `reason` is safe to audit; it names the failed rule."""

    code = "forbidden"
    message = "Not authorized."

    def __init__(self, reason: str) -> None:
        self.reason = reason
        super().__init__(f"Not authorized: {reason}")


class DuplicateEmail(PollHubError):
    code = "duplicate_email"
    message = "Email address is already in use."


class InvalidEmailFormat(PollHubError):
    code = "invalid_email_format"
    message = "Invalid email format."


class TokenNotFound(PollHubError):
    code = "token_not_found"
    message = "Invalid or expired confirmation link."


class TokenExpired(PollHubError):
    code = "token_expired"
    message = "Invalid or expired confirmation link."


class ValidationFailed(PollHubError):
    """One or more fields failed validation.

    field_errors maps field name -> list of human-readable messages, e.g.
    {"username": ["has already been taken"]}.
    """

    code = "validation_failed"
    message = "Validation failed."

    def __init__(self, field_errors: dict[str, list[str]]) -> None:
        self.field_errors = field_errors
        summary = ", ".join(f"{field} {msg}" for field, msgs in field_errors.items() for msg in msgs)
        super().__init__(summary or self.message)


class InfrastructureError(Exception):
    """Base class for "system unavailable" failures (not a PollHubError)."""


class RepositoryUnavailable(InfrastructureError):
    """The record repository could not complete an operation."""
