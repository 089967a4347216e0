"""Tests for typed token issuance and verification."""

import base64
import json
from datetime import timedelta

import pytest

from gatekeep.config import Settings
from gatekeep.service.errors import AuthErrorKind
from gatekeep.service.tokens import TokenService, TokenType, access_claims_for


def _b64(data: dict) -> str:
    raw = json.dumps(data, separators=(",", ":")).encode()
    return base64.urlsafe_b64encode(raw).decode().rstrip("=")


def _payload(token: str) -> dict:
    segment = token.split(".")[1]
    return json.loads(base64.urlsafe_b64decode(segment + "=" * (-len(segment) % 4)))


@pytest.fixture
def user(store):
    return store.create_user(
        "a@x.com",
        "Alice",
        tenant_id="acme",
        roles=["admin", "user"],
        permissions={"billing": ["read"]},
    )


def test_pair_round_trip_preserves_claims(tokens, user):
    pair = tokens.issue_pair(user)
    assert pair.token_type == "bearer"
    assert pair.access_expires_in == 15 * 60
    assert pair.refresh_expires_in == 7 * 24 * 60 * 60

    result = tokens.verify(pair.access_token, TokenType.ACCESS)
    assert result
    assert result.claims.subject == user.id
    assert result.claims.token_type == TokenType.ACCESS
    assert result.claims.claims == access_claims_for(user)

    refresh = tokens.verify(pair.refresh_token, TokenType.REFRESH)
    assert refresh and refresh.claims.subject == user.id


def test_tokens_are_unique_within_the_same_second(tokens, user):
    first = tokens.issue(user.id, TokenType.REFRESH)
    second = tokens.issue(user.id, TokenType.REFRESH)
    assert first.token != second.token
    assert first.jti != second.jti


@pytest.mark.parametrize(
    "issued_as,checked_as",
    [
        (TokenType.REFRESH, TokenType.ACCESS),
        (TokenType.ACCESS, TokenType.REFRESH),
        (TokenType.TEMP_2FA, TokenType.ACCESS),
        (TokenType.PASSWORD_RESET, TokenType.EMAIL_VERIFICATION),
    ],
)
def test_type_confusion_is_rejected(tokens, user, issued_as, checked_as):
    token = tokens.issue(user.id, issued_as).token
    result = tokens.verify(token, checked_as)
    assert not result
    assert result.error == AuthErrorKind.TOKEN_INVALID


def test_retyped_payload_fails_signature(tokens, user):
    token = tokens.issue(user.id, TokenType.REFRESH).token
    header, _, signature = token.split(".")
    payload = _payload(token)
    payload["typ"] = "access"
    forged = f"{header}.{_b64(payload)}.{signature}"
    assert not tokens.verify(forged, TokenType.ACCESS)


def test_tampered_claims_fail(tokens, user):
    token = tokens.issue_pair(user).access_token
    header, _, signature = token.split(".")
    payload = _payload(token)
    payload["roles"] = ["superadmin"]
    assert not tokens.verify(f"{header}.{_b64(payload)}.{signature}", TokenType.ACCESS)


def test_unsigned_algorithm_is_rejected(tokens, user):
    token = tokens.issue_pair(user).access_token
    _, payload, _ = token.split(".")
    forged = f"{_b64({'alg': 'none', 'typ': 'JWT'})}.{payload}."
    assert not tokens.verify(forged, TokenType.ACCESS)


@pytest.mark.parametrize("garbage", ["", "abc", "a.b", "a.b.c.d", "!!!.???.***", None, 42])
def test_malformed_tokens_collapse_to_token_invalid(tokens, garbage):
    result = tokens.verify(garbage, TokenType.ACCESS)
    assert not result
    assert result.error == AuthErrorKind.TOKEN_INVALID
    assert tokens.expiry_of(garbage) is None


def test_expired_token_is_rejected(tokens, user, clock):
    token = tokens.issue_pair(user).access_token
    clock.advance(minutes=14, seconds=59)
    assert tokens.verify(token, TokenType.ACCESS)
    clock.advance(seconds=1)
    assert not tokens.verify(token, TokenType.ACCESS)


def test_leeway_extends_expiry(user, clock):
    settings = Settings(jwt_secret="leeway-secret-" + "x" * 32, jwt_leeway_seconds=30)
    service = TokenService(settings, clock=clock)
    token = service.issue_pair(user).access_token
    clock.advance(minutes=15, seconds=29)
    assert service.verify(token, TokenType.ACCESS)
    assert service.remaining_lifetime(token) == timedelta(seconds=1)
    clock.advance(seconds=1)
    assert not service.verify(token, TokenType.ACCESS)


def test_issuer_and_audience_must_match(settings, user, clock):
    token = TokenService(settings, clock=clock).issue_pair(user).access_token
    other_issuer = settings.model_copy(update={"jwt_issuer": "someone-else"})
    other_audience = settings.model_copy(update={"jwt_audience": "other-clients"})
    assert not TokenService(other_issuer, clock=clock).verify(token, TokenType.ACCESS)
    assert not TokenService(other_audience, clock=clock).verify(token, TokenType.ACCESS)


def test_different_secret_rejects(settings, user, clock):
    token = TokenService(settings, clock=clock).issue_pair(user).access_token
    rotated = settings.model_copy(update={"jwt_secret": "another-secret-" + "y" * 32})
    assert not TokenService(rotated, clock=clock).verify(token, TokenType.ACCESS)


def test_expiry_of_ignores_expiration_but_checks_signature(tokens, user, clock):
    issued = tokens.issue(user.id, TokenType.ACCESS)
    clock.advance(hours=1)
    assert tokens.expiry_of(issued.token) == issued.expires_at
    assert tokens.remaining_lifetime(issued.token) == timedelta(0)

    header, payload, _ = issued.token.split(".")
    assert tokens.expiry_of(f"{header}.{payload}.forged") is None


def test_remaining_lifetime_counts_down(tokens, user, clock):
    token = tokens.issue(user.id, TokenType.REFRESH).token
    clock.advance(days=1)
    assert tokens.remaining_lifetime(token) == timedelta(days=6)


def test_reserved_claims_cannot_be_overridden(tokens, user):
    with pytest.raises(ValueError):
        tokens.issue(user.id, TokenType.ACCESS, {"sub": "someone-else"})


def test_custom_ttl(tokens, user, clock):
    issued = tokens.issue(user.id, TokenType.ACCESS, ttl=timedelta(seconds=5))
    assert issued.expires_in == 5
    clock.advance(seconds=5)
    assert not tokens.verify(issued.token, TokenType.ACCESS)


def test_zero_ttl_is_not_replaced_by_default(tokens, user):
    issued = tokens.issue(user.id, TokenType.ACCESS, ttl=timedelta(0))
    assert issued.expires_in == 0
    assert not tokens.verify(issued.token, TokenType.ACCESS)


def test_special_purpose_tokens(tokens, user):
    temp = tokens.issue_temp_2fa(user, ["totp", "backup", "totp"])
    claims = tokens.verify(temp.token, TokenType.TEMP_2FA).claims
    assert claims.claims["methods"] == ["backup", "totp"]
    assert temp.expires_in == 10 * 60

    reset = tokens.issue_password_reset(user.id)
    assert tokens.verify(reset.token, TokenType.PASSWORD_RESET)
    assert reset.expires_in == 60 * 60

    verification = tokens.issue_email_verification(user.id, user.email)
    claims = tokens.verify(verification.token, TokenType.EMAIL_VERIFICATION).claims
    assert claims.claims["email"] == "a@x.com"
    assert verification.expires_in == 24 * 60 * 60


def test_token_pair_as_dict(tokens, user):
    body = tokens.issue_pair(user).as_dict()
    assert set(body) == {
        "access_token",
        "refresh_token",
        "expires_in",
        "refresh_expires_in",
        "token_type",
    }
