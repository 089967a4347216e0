"""Error kind to ServiceError mapping."""

import pytest

from gatekeep.service.errors import (
    AccountLockedError,
    AuthenticationError,
    AuthErrorKind,
    ForbiddenError,
    RateLimitedError,
    ServiceError,
    error_for,
    raise_for_error,
)


@pytest.mark.parametrize(
    "kind,exc_cls,status",
    [
        (AuthErrorKind.INVALID_CREDENTIALS, AuthenticationError, 401),
        (AuthErrorKind.ACCOUNT_LOCKED, AccountLockedError, 423),
        (AuthErrorKind.ACCOUNT_INACTIVE, ForbiddenError, 403),
        (AuthErrorKind.TOKEN_INVALID, AuthenticationError, 401),
        (AuthErrorKind.TOKEN_REVOKED, AuthenticationError, 401),
        (AuthErrorKind.TWO_FACTOR_REQUIRED, AuthenticationError, 401),
        (AuthErrorKind.TWO_FACTOR_INVALID, AuthenticationError, 401),
        (AuthErrorKind.TWO_FACTOR_LOCKED, RateLimitedError, 429),
    ],
)
def test_every_kind_maps_to_a_service_error(kind, exc_cls, status):
    exc = error_for(kind)
    assert isinstance(exc, exc_cls)
    assert exc.status_code == status
    assert exc.error_code == kind.value


def test_raise_for_error_carries_detail():
    with pytest.raises(ServiceError) as excinfo:
        raise_for_error("account_locked", detail={"remaining_attempts": 0})
    assert excinfo.value.detail == {"remaining_attempts": 0}
    assert excinfo.value.message


def test_token_failures_share_one_message():
    # Signature, expiry and type problems are indistinguishable to callers
    assert error_for(AuthErrorKind.TOKEN_INVALID).message == "Invalid or expired token"
