from __future__ import annotations

import base64
import binascii
import hashlib
import hmac
import json
import secrets
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Dict, Iterable, Mapping, Optional

from gatekeep.config import Settings
from gatekeep.logging import get_logger
from gatekeep.service.clock import Clock, utcnow
from gatekeep.service.errors import AuthErrorKind
from gatekeep.storage.models import User

logger = get_logger(__name__)


class TokenType(str, Enum):
    ACCESS = "access"
    REFRESH = "refresh"
    TEMP_2FA = "temp_2fa"
    PASSWORD_RESET = "password_reset"
    EMAIL_VERIFICATION = "email_verification"


RESERVED_CLAIMS = frozenset({"iss", "aud", "sub", "typ", "iat", "exp", "jti"})


def ttl_from_settings(settings: Settings) -> Dict[TokenType, timedelta]:
    return {
        TokenType.ACCESS: timedelta(minutes=settings.access_token_ttl_minutes),
        TokenType.REFRESH: timedelta(minutes=settings.refresh_token_ttl_minutes),
        TokenType.TEMP_2FA: timedelta(minutes=settings.temp_2fa_token_ttl_minutes),
        TokenType.PASSWORD_RESET: timedelta(
            minutes=settings.password_reset_token_ttl_minutes
        ),
        TokenType.EMAIL_VERIFICATION: timedelta(
            minutes=settings.email_verification_token_ttl_minutes
        ),
    }


def access_claims_for(user: User) -> Dict[str, Any]:
    """Authorization snapshot embedded in access tokens at issuance."""
    return {
        "email": user.email,
        "name": user.name,
        "tenant_id": user.tenant_id,
        "roles": list(user.roles),
        "permissions": dict(user.permissions),
    }


@dataclass
class IssuedToken:
    token: str
    token_type: TokenType
    jti: str
    expires_at: datetime
    expires_in: int


@dataclass
class TokenPair:
    access_token: str
    refresh_token: str
    access_expires_in: int
    refresh_expires_in: int
    token_type: str = "bearer"

    def as_dict(self) -> Dict[str, Any]:
        return {
            "access_token": self.access_token,
            "refresh_token": self.refresh_token,
            "expires_in": self.access_expires_in,
            "refresh_expires_in": self.refresh_expires_in,
            "token_type": self.token_type,
        }


@dataclass
class TokenClaims:
    subject: str
    token_type: TokenType
    jti: str
    issued_at: datetime
    expires_at: datetime
    claims: Dict[str, Any] = field(default_factory=dict)


@dataclass
class TokenResult:
    ok: bool
    claims: Optional[TokenClaims] = None
    error: Optional[AuthErrorKind] = None

    def __bool__(self) -> bool:
        return self.ok

    @classmethod
    def invalid(cls) -> "TokenResult":
        return cls(ok=False, error=AuthErrorKind.TOKEN_INVALID)


def _encode_segment(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")


def _decode_segment(segment: str) -> bytes:
    padding = "=" * ((4 - len(segment) % 4) % 4)
    return base64.urlsafe_b64decode(segment + padding)


def _from_timestamp(value: int) -> datetime:
    return datetime.fromtimestamp(value, tz=timezone.utc)


class TokenService:
    """Issues and validates HS256 signed, typed, expiring tokens.

    Signing keys are derived per token type from the master secret, so a
    refresh token cannot pass as an access token even before the ``typ``
    claim is compared.
    """

    def __init__(
        self,
        settings: Settings,
        *,
        clock: Optional[Clock] = None,
        ttls: Optional[Mapping[TokenType, timedelta]] = None,
    ) -> None:
        self.issuer = settings.jwt_issuer
        self.audience = settings.jwt_audience
        self.leeway = timedelta(seconds=settings.jwt_leeway_seconds)
        self._clock = clock or utcnow
        self.ttls: Dict[TokenType, timedelta] = dict(ttl_from_settings(settings))
        if ttls:
            self.ttls.update(ttls)
        missing = set(TokenType) - set(self.ttls)
        if missing:
            raise ValueError(f"no TTL configured for token types: {sorted(t.value for t in missing)}")
        master = settings.jwt_secret.encode()
        self._keys: Dict[TokenType, bytes] = {
            token_type: hmac.new(
                master, f"gatekeep-token:{token_type.value}".encode(), hashlib.sha256
            ).digest()
            for token_type in TokenType
        }

    # issuance
    def _sign(self, signing_input: str, token_type: TokenType) -> str:
        signature = hmac.new(
            self._keys[token_type], signing_input.encode(), hashlib.sha256
        ).digest()
        return _encode_segment(signature)

    def issue(
        self,
        subject: str,
        token_type: TokenType,
        claims: Optional[Mapping[str, Any]] = None,
        *,
        ttl: Optional[timedelta] = None,
    ) -> IssuedToken:
        token_type = TokenType(token_type)
        extra = dict(claims or {})
        clash = RESERVED_CLAIMS.intersection(extra)
        if clash:
            raise ValueError(f"reserved claims cannot be overridden: {sorted(clash)}")
        lifetime = ttl if ttl is not None else self.ttls[token_type]
        now = self._clock()
        issued_at = int(now.timestamp())
        expires_in = int(lifetime.total_seconds())
        jti = str(uuid.uuid4())
        payload = {
            **extra,
            "iss": self.issuer,
            "aud": self.audience,
            "sub": subject,
            "typ": token_type.value,
            "iat": issued_at,
            "exp": issued_at + expires_in,
            "jti": jti,
        }
        header = {"alg": "HS256", "typ": "JWT"}
        header_enc = _encode_segment(json.dumps(header, separators=(",", ":")).encode())
        payload_enc = _encode_segment(json.dumps(payload, separators=(",", ":")).encode())
        signing_input = f"{header_enc}.{payload_enc}"
        token = f"{signing_input}.{self._sign(signing_input, token_type)}"
        return IssuedToken(
            token=token,
            token_type=token_type,
            jti=jti,
            expires_at=_from_timestamp(issued_at + expires_in),
            expires_in=expires_in,
        )

    def issue_pair(self, user: User) -> TokenPair:
        access = self.issue(user.id, TokenType.ACCESS, access_claims_for(user))
        refresh = self.issue(user.id, TokenType.REFRESH)
        return TokenPair(
            access_token=access.token,
            refresh_token=refresh.token,
            access_expires_in=access.expires_in,
            refresh_expires_in=refresh.expires_in,
        )

    def issue_temp_2fa(self, user: User, methods: Iterable[str]) -> IssuedToken:
        return self.issue(
            user.id,
            TokenType.TEMP_2FA,
            {"email": user.email, "methods": sorted(set(methods))},
        )

    def issue_password_reset(self, user_id: str) -> IssuedToken:
        return self.issue(
            user_id, TokenType.PASSWORD_RESET, {"nonce": secrets.token_hex(16)}
        )

    def issue_email_verification(self, user_id: str, email: str) -> IssuedToken:
        return self.issue(
            user_id,
            TokenType.EMAIL_VERIFICATION,
            {"email": email, "nonce": secrets.token_hex(16)},
        )

    # verification
    def _decode(
        self, token: str, key_type: Optional[TokenType] = None
    ) -> Optional[Dict[str, Any]]:
        """Check structure, algorithm, signature, issuer and audience.

        With ``key_type`` unset the signature is checked against the key of
        the type the token itself declares.
        """
        if not isinstance(token, str):
            return None
        try:
            header_b64, payload_b64, sig_b64 = token.split(".")
        except ValueError:
            return None
        try:
            header = json.loads(_decode_segment(header_b64))
            payload = json.loads(_decode_segment(payload_b64))
        except (binascii.Error, UnicodeDecodeError, ValueError):
            logger.debug("token_rejected", reason="malformed")
            return None
        if not isinstance(header, dict) or header.get("alg") != "HS256":
            logger.debug("token_rejected", reason="algorithm")
            return None
        if not isinstance(payload, dict):
            return None
        try:
            declared = TokenType(payload.get("typ"))
        except ValueError:
            logger.debug("token_rejected", reason="type")
            return None
        signing_type = key_type or declared
        expected_sig = self._sign(f"{header_b64}.{payload_b64}", signing_type)
        if not hmac.compare_digest(expected_sig.encode(), sig_b64.encode()):
            logger.debug("token_rejected", reason="signature")
            return None
        if payload.get("iss") != self.issuer:
            logger.debug("token_rejected", reason="issuer")
            return None
        aud = payload.get("aud")
        if isinstance(aud, list):
            valid_aud = self.audience in aud
        else:
            valid_aud = aud == self.audience
        if not valid_aud:
            logger.debug("token_rejected", reason="audience")
            return None
        if not isinstance(payload.get("exp"), int) or not isinstance(payload.get("sub"), str):
            return None
        return payload

    def verify(self, token: str, expected_type: TokenType) -> TokenResult:
        expected_type = TokenType(expected_type)
        payload = self._decode(token, expected_type)
        if payload is None or payload.get("typ") != expected_type.value:
            return TokenResult.invalid()
        expires_at = _from_timestamp(payload["exp"])
        if expires_at + self.leeway <= self._clock():
            logger.debug("token_rejected", reason="expired")
            return TokenResult.invalid()
        iat = payload.get("iat")
        claims = {k: v for k, v in payload.items() if k not in RESERVED_CLAIMS}
        return TokenResult(
            ok=True,
            claims=TokenClaims(
                subject=payload["sub"],
                token_type=expected_type,
                jti=str(payload.get("jti", "")),
                issued_at=_from_timestamp(iat) if isinstance(iat, int) else expires_at,
                expires_at=expires_at,
                claims=claims,
            ),
        )

    def verify_access_token(self, token: str) -> TokenResult:
        return self.verify(token, TokenType.ACCESS)

    def verify_refresh_token(self, token: str) -> TokenResult:
        return self.verify(token, TokenType.REFRESH)

    def expiry_of(self, token: str) -> Optional[datetime]:
        """Signature-checked expiry of any token type, ignoring whether it expired."""
        payload = self._decode(token)
        if payload is None:
            return None
        return _from_timestamp(payload["exp"])

    def remaining_lifetime(self, token: str) -> timedelta:
        """Time until the token stops verifying, including leeway; zero when unknown."""
        expires_at = self.expiry_of(token)
        if expires_at is None:
            return timedelta(0)
        return max(timedelta(0), expires_at + self.leeway - self._clock())
