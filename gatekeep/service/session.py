from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import List, Optional, Protocol, Tuple, Union

from gatekeep.logging import get_logger, log_security_event
from gatekeep.service.errors import AuthErrorKind, raise_for_error
from gatekeep.service.lockout import LockoutPolicy
from gatekeep.service.passwords import CredentialVerifier
from gatekeep.service.revocation import RevocationStore
from gatekeep.service.tokens import TokenPair, TokenResult, TokenService, TokenType
from gatekeep.service.two_factor import EmailCodeDispatch, TwoFactorEngine
from gatekeep.storage.models import TwoFactorType, User

logger = get_logger(__name__)


class UserDirectory(Protocol):
    def get_user(self, user_id: str) -> Optional[User]: ...

    def get_user_by_email(self, email: str) -> Optional[User]: ...


class LoginStatus(str, Enum):
    AUTHENTICATED = "authenticated"
    CHALLENGE_2FA = "challenge_2fa"
    ACCOUNT_LOCKED = "account_locked"
    INVALID_CREDENTIALS = "invalid_credentials"
    ACCOUNT_INACTIVE = "account_inactive"
    # Only produced by complete_two_factor
    TWO_FACTOR_FAILED = "two_factor_failed"
    TOKEN_REJECTED = "token_rejected"


@dataclass
class LoginOutcome:
    status: LoginStatus
    user: Optional[User] = None
    tokens: Optional[TokenPair] = None
    temp_token: Optional[str] = None
    methods: List[str] = field(default_factory=list)
    remaining_attempts: Optional[int] = None
    locked_until: Optional[datetime] = None
    error: Optional[AuthErrorKind] = None

    @property
    def ok(self) -> bool:
        return self.status == LoginStatus.AUTHENTICATED

    def __bool__(self) -> bool:
        return self.ok

    def raise_for_status(self) -> None:
        """Raise the matching ServiceError unless the user is fully authenticated."""
        if self.error is not None:
            detail = {}
            if self.remaining_attempts is not None:
                detail["remaining_attempts"] = self.remaining_attempts
            if self.locked_until is not None:
                detail["locked_until"] = self.locked_until.isoformat()
            raise_for_error(self.error, detail=detail)


@dataclass
class RefreshOutcome:
    ok: bool
    tokens: Optional[TokenPair] = None
    user: Optional[User] = None
    error: Optional[AuthErrorKind] = None

    def __bool__(self) -> bool:
        return self.ok


class SessionOrchestrator:
    """Login, second-factor completion, refresh rotation and logout.

    Login checks run in a fixed order: account lock, password, account
    status, second factor. Refresh tokens are single use: each successful
    refresh revokes the presented token before issuing a new pair.
    """

    def __init__(
        self,
        store: UserDirectory,
        *,
        credentials: CredentialVerifier,
        lockout: LockoutPolicy,
        tokens: TokenService,
        revocation: RevocationStore,
        two_factor: TwoFactorEngine,
    ) -> None:
        self.store = store
        self.credentials = credentials
        self.lockout = lockout
        self.tokens = tokens
        self.revocation = revocation
        self.two_factor = two_factor

    # revocation helpers
    async def _is_revoked(self, token: str) -> bool:
        try:
            return await self.revocation.is_revoked(token)
        except Exception as exc:
            # Unknown revocation state is treated as revoked
            logger.error(
                "revocation_check_failed",
                error_type=type(exc).__name__,
                error=str(exc),
            )
            return True

    async def _add_revocation(self, token: str) -> Optional[bool]:
        """Whether this call created the entry; None when nothing was recorded."""
        ttl = self.tokens.remaining_lifetime(token)
        if ttl.total_seconds() <= 0:
            return None
        try:
            return await self.revocation.add(token, ttl)
        except Exception as exc:
            logger.error(
                "token_revocation_failed",
                error_type=type(exc).__name__,
                error=str(exc),
            )
            return None

    async def _revoke(self, token: str) -> bool:
        return await self._add_revocation(token) is not None

    async def _claim(self, token: str) -> Optional[AuthErrorKind]:
        """Spend a single-use token; returns the error when this caller lost."""
        created = await self._add_revocation(token)
        if created is None:
            return AuthErrorKind.TOKEN_INVALID
        if not created:
            return AuthErrorKind.TOKEN_REVOKED
        return None

    # login
    async def authenticate(self, email: str, password: str) -> LoginOutcome:
        """Password check with lockout accounting; no tokens are issued."""
        normalized = (email or "").strip().lower()
        user = self.store.get_user_by_email(normalized) if normalized else None
        if user and self.lockout.is_locked(user.id):
            log_security_event("login_rejected_locked", user_id=user.id)
            return LoginOutcome(
                status=LoginStatus.ACCOUNT_LOCKED, error=AuthErrorKind.ACCOUNT_LOCKED
            )

        result = self.credentials.verify(normalized, password, include_inactive=True)
        if not result:
            if user is None:
                return LoginOutcome(
                    status=LoginStatus.INVALID_CREDENTIALS,
                    error=AuthErrorKind.INVALID_CREDENTIALS,
                )
            state = self.lockout.record_failure(user.id)
            if state is not None and state.is_blocked_login_attempts:
                return LoginOutcome(
                    status=LoginStatus.ACCOUNT_LOCKED,
                    error=AuthErrorKind.ACCOUNT_LOCKED,
                    remaining_attempts=0,
                )
            return LoginOutcome(
                status=LoginStatus.INVALID_CREDENTIALS,
                error=AuthErrorKind.INVALID_CREDENTIALS,
                remaining_attempts=self.lockout.remaining_attempts(state) if state else None,
            )

        self.lockout.record_success(result.user.id)
        user = self.store.get_user(result.user.id) or result.user
        if not user.is_active:
            logger.info("login_rejected_inactive", user_id=user.id)
            return LoginOutcome(
                status=LoginStatus.ACCOUNT_INACTIVE,
                user=user,
                error=AuthErrorKind.ACCOUNT_INACTIVE,
            )
        return LoginOutcome(status=LoginStatus.AUTHENTICATED, user=user)

    async def login(self, email: str, password: str) -> LoginOutcome:
        outcome = await self.authenticate(email, password)
        if not outcome:
            return outcome
        user = outcome.user
        if self.two_factor.has_active_two_factor(user.id):
            methods = self.two_factor.active_methods(user.id)
            temp = self.tokens.issue_temp_2fa(user, methods)
            logger.info("login_two_factor_challenge", user_id=user.id, methods=methods)
            return LoginOutcome(
                status=LoginStatus.CHALLENGE_2FA,
                user=user,
                temp_token=temp.token,
                methods=methods,
                error=AuthErrorKind.TWO_FACTOR_REQUIRED,
            )
        outcome.tokens = self.tokens.issue_pair(user)
        logger.info("login_succeeded", user_id=user.id)
        return outcome

    async def _challenge_user(
        self, temp_token: str
    ) -> Union[Tuple[User, List[str]], LoginOutcome]:
        if await self._is_revoked(temp_token):
            return LoginOutcome(
                status=LoginStatus.TOKEN_REJECTED, error=AuthErrorKind.TOKEN_REVOKED
            )
        verified = self.tokens.verify(temp_token, TokenType.TEMP_2FA)
        user = self.store.get_user(verified.claims.subject) if verified else None
        if user is None:
            return LoginOutcome(
                status=LoginStatus.TOKEN_REJECTED, error=AuthErrorKind.TOKEN_INVALID
            )
        if user.is_blocked_login_attempts:
            return LoginOutcome(
                status=LoginStatus.ACCOUNT_LOCKED, error=AuthErrorKind.ACCOUNT_LOCKED
            )
        if not user.is_active:
            return LoginOutcome(
                status=LoginStatus.ACCOUNT_INACTIVE, error=AuthErrorKind.ACCOUNT_INACTIVE
            )
        return user, list(verified.claims.claims.get("methods") or [])

    async def complete_two_factor(
        self, temp_token: str, method: Union[TwoFactorType, str], code: str
    ) -> LoginOutcome:
        challenged = await self._challenge_user(temp_token)
        if isinstance(challenged, LoginOutcome):
            return challenged
        user, offered = challenged
        method_value = method.value if isinstance(method, TwoFactorType) else str(method)
        if method_value not in offered:
            return LoginOutcome(
                status=LoginStatus.TWO_FACTOR_FAILED, error=AuthErrorKind.TWO_FACTOR_INVALID
            )
        result = await self.two_factor.verify(user.id, method_value, code)
        if not result:
            return LoginOutcome(
                status=LoginStatus.TWO_FACTOR_FAILED,
                error=result.error,
                locked_until=result.locked_until,
            )
        claim_error = await self._claim(temp_token)
        if claim_error is not None:
            logger.warning("two_factor_challenge_already_spent", user_id=user.id)
            return LoginOutcome(status=LoginStatus.TOKEN_REJECTED, error=claim_error)
        tokens = self.tokens.issue_pair(user)
        logger.info("login_succeeded", user_id=user.id, second_factor=method_value)
        return LoginOutcome(status=LoginStatus.AUTHENTICATED, user=user, tokens=tokens)

    async def send_login_email_code(self, temp_token: str) -> EmailCodeDispatch:
        """Email a one-time code to a user holding a pending two-factor challenge."""
        challenged = await self._challenge_user(temp_token)
        if isinstance(challenged, LoginOutcome):
            return EmailCodeDispatch(ok=False, error=challenged.error)
        user, offered = challenged
        if TwoFactorType.EMAIL.value not in offered:
            return EmailCodeDispatch(ok=False, error=AuthErrorKind.TWO_FACTOR_INVALID)
        return await self.two_factor.send_email_code(user.id)

    # tokens
    def issue_token_pair(self, user: User) -> TokenPair:
        return self.tokens.issue_pair(user)

    async def verify_access_token(self, token: str) -> TokenResult:
        if await self._is_revoked(token):
            return TokenResult(ok=False, error=AuthErrorKind.TOKEN_REVOKED)
        return self.tokens.verify(token, TokenType.ACCESS)

    async def verify_refresh_token(self, token: str) -> TokenResult:
        if await self._is_revoked(token):
            return TokenResult(ok=False, error=AuthErrorKind.TOKEN_REVOKED)
        return self.tokens.verify(token, TokenType.REFRESH)

    async def blacklist_token(self, token: str) -> bool:
        revoked = await self._revoke(token)
        if revoked:
            log_security_event("token_revoked", level="info")
        return revoked

    async def refresh(self, refresh_token: str) -> RefreshOutcome:
        verified = await self.verify_refresh_token(refresh_token)
        if not verified:
            if verified.error == AuthErrorKind.TOKEN_REVOKED:
                log_security_event("refresh_token_reuse")
            return RefreshOutcome(ok=False, error=verified.error)
        user = self.store.get_user(verified.claims.subject)
        if user is None:
            return RefreshOutcome(ok=False, error=AuthErrorKind.TOKEN_INVALID)
        if user.is_blocked_login_attempts:
            return RefreshOutcome(ok=False, error=AuthErrorKind.ACCOUNT_LOCKED)
        if not user.is_active:
            return RefreshOutcome(ok=False, error=AuthErrorKind.ACCOUNT_INACTIVE)
        claim_error = await self._claim(refresh_token)
        if claim_error == AuthErrorKind.TOKEN_REVOKED:
            # Another refresh of the same token won the rotation
            log_security_event("refresh_token_reuse", user_id=user.id)
            return RefreshOutcome(ok=False, error=claim_error)
        if claim_error is not None:
            # Without a recorded revocation the old token would stay usable
            logger.error("refresh_rotation_aborted", user_id=user.id)
            return RefreshOutcome(ok=False, error=claim_error)
        tokens = self.tokens.issue_pair(user)
        logger.info("tokens_refreshed", user_id=user.id)
        return RefreshOutcome(ok=True, tokens=tokens, user=user)

    async def logout(self, access_token: str, refresh_token: Optional[str] = None) -> bool:
        """Revoke the presented tokens; never raises."""
        revoked = True
        for token in (access_token, refresh_token):
            if not token:
                continue
            try:
                revoked = await self._revoke(token) and revoked
            except Exception as exc:
                logger.error(
                    "logout_revocation_failed",
                    error_type=type(exc).__name__,
                    error=str(exc),
                )
                revoked = False
        log_security_event("logout", level="info", revoked=revoked)
        return revoked
