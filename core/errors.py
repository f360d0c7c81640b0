"""
core/errors.py -- Typed error taxonomy shared by auth/, events/, and api/.

Every expected failure of an operation is one of the AppError subclasses
below. Services raise them; the API layer turns them into the ErrorResponse
envelope in a single exception handler (api/main.py). Callers branch on the
class (or on `reason` where a class has several causes), never on message
strings.

Anything that is not an AppError is an infrastructure fault and ends up in
the generic 500 handler without detail.

Layer rule: core/ is the kernel. No imports from api/, auth/, or events/.
"""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum


class AuthFailure(str, Enum):
    """Causes carried by AuthenticationError."""

    invalid_credentials = "invalid_credentials"
    not_found = "not_found"
    expired = "expired"
    attempts_exhausted = "attempts_exhausted"
    mismatch = "mismatch"
    session_invalid = "session_invalid"
    session_expired = "session_expired"


class InviteFailure(str, Enum):
    """Causes carried by InviteError."""

    already_invited = "already_invited"
    self_invite = "self_invite"


class AppError(Exception):
    """Base class for expected, typed operation failures."""

    status_code: int = 400
    code: str = "error"
    message: str = "Request failed."

    def __init__(self, message: str | None = None, detail: str | None = None) -> None:
        self.message = message or self.message
        self.detail = detail
        super().__init__(self.message)


class ValidationError(AppError):
    """Malformed input: title length, email syntax, date ordering, password policy."""

    status_code = 422
    code = "validation_error"
    message = "Request validation failed."

    def __init__(
        self,
        message: str | None = None,
        field: str | None = None,
        detail: str | None = None,
        code: str | None = None,
    ) -> None:
        super().__init__(message, detail)
        self.field = field
        if code:
            self.code = code


class DuplicateError(AppError):
    status_code = 409
    code = "duplicate"
    message = "An account with that email already exists."


class AuthenticationError(AppError):
    """Bad credentials, unusable one-time code, or unusable session token.

    `reason` keeps the specific cause for the caller. The API deliberately
    collapses the code-related reasons into one public code so a client
    cannot tell "no such account" from "wrong code".
    """

    status_code = 401
    code = "unauthenticated"
    message = "Authentication failed."

    def __init__(self, reason: AuthFailure, message: str | None = None) -> None:
        super().__init__(message)
        self.reason = reason


class LockedError(AppError):
    """Login refused while the account is locked. Carries the retry time."""

    status_code = 423
    code = "account_locked"
    message = "Account temporarily locked after repeated failed logins."

    def __init__(self, lock_expires_at: datetime) -> None:
        super().__init__()
        self.lock_expires_at = lock_expires_at

    @property
    def retry_after(self) -> int:
        """Whole seconds until the lock expires (never negative)."""
        remaining = (self.lock_expires_at - datetime.now(timezone.utc)).total_seconds()
        return max(0, int(remaining + 0.999))


class AuthorizationError(AppError):
    status_code = 403
    code = "forbidden"
    message = "You do not have permission to perform this action."


class InviteError(AppError):
    status_code = 409

    def __init__(self, reason: InviteFailure, email: str) -> None:
        messages = {
            InviteFailure.already_invited: f"{email} is already invited to this event.",
            InviteFailure.self_invite: "The event creator cannot be invited as a participant.",
        }
        super().__init__(messages[reason], detail=email)
        self.reason = reason
        self.email = email
        self.code = reason.value


class NotFoundError(AppError):
    status_code = 404
    code = "not_found"
    message = "Not found."


class CapacityError(AppError):
    status_code = 409
    code = "capacity_exceeded"
    message = "The event has reached its participant limit."


class ConflictError(Exception):
    """A compare-and-swap update lost a race against a concurrent writer.

    Not an AppError: services retry once, and a second loss is an
    infrastructure-level fault.
    """
