from __future__ import annotations

from enum import Enum
from typing import Dict, NoReturn, Optional, Type


class AuthErrorKind(str, Enum):
    """Failure kinds returned by the authentication core.

    Every verification failure is normalized to one of these before it leaves
    the service layer; callers branch on the kind, never on exception types
    raised by hashing, signing or storage libraries.
    """

    INVALID_CREDENTIALS = "invalid_credentials"
    ACCOUNT_LOCKED = "account_locked"
    ACCOUNT_INACTIVE = "account_inactive"
    TOKEN_INVALID = "token_invalid"
    TOKEN_REVOKED = "token_revoked"
    TWO_FACTOR_REQUIRED = "two_factor_required"
    TWO_FACTOR_INVALID = "two_factor_invalid"
    TWO_FACTOR_LOCKED = "two_factor_locked"


class ServiceError(Exception):
    """Base class for service-layer exceptions that map to HTTP responses.

    Each subclass carries an HTTP ``status_code`` and a stable ``error_code``:
    - unauthorized (401)
    - forbidden (403)
    - not_found (404)
    - account_locked (423)
    - rate_limited (429)
    - validation_error (400)
    """

    status_code: int = 400
    error_code: str = "validation_error"

    def __init__(
        self,
        message: str,
        *,
        status_code: Optional[int] = None,
        detail: Optional[dict] = None,
        error_code: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        if error_code is not None:
            self.error_code = error_code
        self.detail = detail or {}


class ValidationError(ServiceError):
    """Request validation failed (400)."""
    status_code = 400
    error_code = "validation_error"


class BadRequestError(ValidationError):
    """Request is malformed or not valid in the current state."""
    pass


class AuthenticationError(ServiceError):
    """Authentication failed or missing (401)."""
    status_code = 401
    error_code = "unauthorized"


class ForbiddenError(ServiceError):
    """Access denied (403)."""
    status_code = 403
    error_code = "forbidden"


class NotFoundError(ServiceError):
    """Requested resource not found (404)."""
    status_code = 404
    error_code = "not_found"


class AccountLockedError(ServiceError):
    """Account blocked after repeated failed logins (423)."""
    status_code = 423
    error_code = "account_locked"


class RateLimitedError(ServiceError):
    """Too many attempts (429)."""
    status_code = 429
    error_code = "rate_limited"


_ERROR_MAP: Dict[AuthErrorKind, tuple[Type[ServiceError], str]] = {
    AuthErrorKind.INVALID_CREDENTIALS: (AuthenticationError, "Invalid credentials"),
    AuthErrorKind.ACCOUNT_LOCKED: (
        AccountLockedError,
        "Account locked after too many failed login attempts",
    ),
    AuthErrorKind.ACCOUNT_INACTIVE: (ForbiddenError, "Account inactive"),
    AuthErrorKind.TOKEN_INVALID: (AuthenticationError, "Invalid or expired token"),
    AuthErrorKind.TOKEN_REVOKED: (AuthenticationError, "Token revoked"),
    AuthErrorKind.TWO_FACTOR_REQUIRED: (
        AuthenticationError,
        "Two-factor verification required",
    ),
    AuthErrorKind.TWO_FACTOR_INVALID: (AuthenticationError, "Invalid verification code"),
    AuthErrorKind.TWO_FACTOR_LOCKED: (
        RateLimitedError,
        "Two-factor verification temporarily locked",
    ),
}


def error_for(kind: AuthErrorKind, *, detail: Optional[dict] = None) -> ServiceError:
    """Build the ServiceError matching an error kind; error_code is the kind value."""
    exc_cls, message = _ERROR_MAP[AuthErrorKind(kind)]
    return exc_cls(message, detail=detail, error_code=AuthErrorKind(kind).value)


def raise_for_error(kind: AuthErrorKind, *, detail: Optional[dict] = None) -> NoReturn:
    raise error_for(kind, detail=detail)


__all__ = [
    "AuthErrorKind",
    "ServiceError",
    "ValidationError",
    "BadRequestError",
    "AuthenticationError",
    "ForbiddenError",
    "NotFoundError",
    "AccountLockedError",
    "RateLimitedError",
    "error_for",
    "raise_for_error",
]
