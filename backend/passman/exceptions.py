"""
PassMan Error Taxonomy

Expected failures (bad input, missing resources, denials, bad credentials,
conflicts, store timeouts) are carried back to callers inside an
``OperationResult``. The exception classes below double as the error
payload, so callers that prefer exceptions can ``unwrap()`` and let the
top-level handler map them to a response.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Generic, Optional, TypeVar

T = TypeVar("T")


class ErrorKind(str, Enum):
    """Category of a core error, used for transport mapping"""

    VALIDATION = "validation"
    NOT_FOUND = "not_found"
    FORBIDDEN = "forbidden"
    AUTHENTICATION = "authentication"
    CONFLICT = "conflict"
    TRANSIENT = "transient"


class AuthFailureReason(str, Enum):
    """Why an authentication attempt was rejected"""

    INVALID_CREDENTIALS = "invalid_credentials"
    ACCOUNT_LOCKED = "account_locked"
    EMAIL_UNCONFIRMED = "email_unconfirmed"
    MFA_REQUIRED = "mfa_required"
    INVALID_MFA_CODE = "invalid_mfa_code"
    TOKEN_INVALID = "token_invalid"
    TOKEN_EXPIRED = "token_expired"
    TOKEN_REVOKED = "token_revoked"
    MISSING_CREDENTIALS = "missing_credentials"


class PassmanError(Exception):
    """Base class for all expected core failures.

    Attributes:
        message: Human readable description, safe to show to the caller
        field: Offending input field for validation and conflict errors
    """

    kind: ErrorKind = ErrorKind.VALIDATION

    def __init__(self, message: str, field: Optional[str] = None):
        self.message = message
        self.field = field
        super().__init__(message)

    def to_dict(self) -> dict:
        payload = {"kind": self.kind.value, "message": self.message}
        if self.field:
            payload["field"] = self.field
        return payload


class ValidationError(PassmanError):
    """Malformed input such as an empty vault name or an invalid email."""

    kind = ErrorKind.VALIDATION

    @classmethod
    def from_pydantic(cls, exc) -> "ValidationError":
        """Build from the first error of a pydantic ValidationError"""
        errors = exc.errors()
        if not errors:
            return cls("Invalid request data")
        first = errors[0]
        loc = first.get("loc") or ()
        field = str(loc[0]) if loc else None
        message = first.get("msg", "Invalid value").removeprefix("Value error, ")
        return cls(message, field=field)


class NotFoundError(PassmanError):
    """The referenced resource does not exist or is soft-deleted."""

    kind = ErrorKind.NOT_FOUND


class ForbiddenError(PassmanError):
    """The authorization resolver denied the action."""

    kind = ErrorKind.FORBIDDEN

    def __init__(self, message: str = "Access denied", field: Optional[str] = None):
        super().__init__(message, field)


class AuthenticationError(PassmanError):
    """Bad credentials, a rejected token or a missing second factor.

    Example:
        if user.locked_until and user.locked_until > now:
            raise AuthenticationError(
                "Account is temporarily locked",
                reason=AuthFailureReason.ACCOUNT_LOCKED,
            )
    """

    kind = ErrorKind.AUTHENTICATION

    def __init__(
        self,
        message: str = "Invalid credentials",
        reason: AuthFailureReason = AuthFailureReason.INVALID_CREDENTIALS,
        field: Optional[str] = None,
    ):
        self.reason = reason
        super().__init__(message, field)

    def to_dict(self) -> dict:
        payload = super().to_dict()
        payload["reason"] = self.reason.value
        return payload


class ConflictError(PassmanError):
    """Duplicate email, user name or tag name."""

    kind = ErrorKind.CONFLICT


class TransientError(PassmanError):
    """The backing store timed out or refused the write; safe to retry."""

    kind = ErrorKind.TRANSIENT


@dataclass
class OperationResult(Generic[T]):
    """Typed outcome of a core operation"""

    success: bool
    data: Optional[T] = None
    error: Optional[PassmanError] = None

    @classmethod
    def ok(cls, data: Optional[T] = None) -> "OperationResult[T]":
        return cls(success=True, data=data)

    @classmethod
    def fail(cls, error: PassmanError) -> "OperationResult[T]":
        return cls(success=False, error=error)

    @property
    def error_kind(self) -> Optional[ErrorKind]:
        return self.error.kind if self.error else None

    def unwrap(self) -> T:
        """Return the data or raise the carried error."""
        if not self.success:
            raise self.error
        return self.data
