from __future__ import annotations

import hashlib
import secrets
import string
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Iterable, List, Optional, Protocol, Union

from gatekeep.logging import get_logger, log_security_event
from gatekeep.service import totp
from gatekeep.service.clock import Clock, utcnow
from gatekeep.service.errors import AuthErrorKind, BadRequestError, NotFoundError
from gatekeep.service.notifications import NotificationSender, redact_email
from gatekeep.storage.errors import ConstraintViolation
from gatekeep.storage.models import TwoFactorMethod, TwoFactorType

logger = get_logger(__name__)

BACKUP_CODE_LENGTH = 8
EMAIL_CODE_DIGITS = 6
LOW_BACKUP_CODE_WARNING = 2


class TwoFactorStore(Protocol):
    def get_two_factor(
        self, user_id: str, method_type: TwoFactorType
    ) -> Optional[TwoFactorMethod]: ...

    def list_two_factor(self, user_id: str) -> List[TwoFactorMethod]: ...

    def save_two_factor(self, method: TwoFactorMethod) -> TwoFactorMethod: ...

    def record_two_factor_failure(
        self,
        user_id: str,
        method_type: TwoFactorType,
        at: datetime,
        *,
        max_attempts: int,
        lockout: timedelta,
    ) -> Optional[TwoFactorMethod]: ...

    def record_two_factor_success(
        self,
        user_id: str,
        method_type: TwoFactorType,
        at: datetime,
        *,
        step: Optional[int] = None,
    ) -> bool: ...

    def consume_backup_code(self, user_id: str, code_hash: str, at: datetime) -> bool: ...

    def replace_backup_codes(self, user_id: str, code_hashes: Iterable[str]) -> bool: ...

    def set_email_challenge(self, user_id: str, code: str, expires_at: datetime) -> bool: ...

    def consume_email_challenge(self, user_id: str, code: str, at: datetime) -> bool: ...


@dataclass
class TwoFactorResult:
    ok: bool
    error: Optional[AuthErrorKind] = None
    locked_until: Optional[datetime] = None
    method: Optional[TwoFactorType] = None
    backup_codes: List[str] = field(default_factory=list)

    def __bool__(self) -> bool:
        return self.ok


@dataclass
class TotpEnrollment:
    secret: str
    provisioning_uri: str


@dataclass
class EmailCodeDispatch:
    ok: bool
    expires_at: Optional[datetime] = None
    delivered: bool = False
    error: Optional[AuthErrorKind] = None
    locked_until: Optional[datetime] = None

    def __bool__(self) -> bool:
        return self.ok


@dataclass
class MethodSummary:
    type: TwoFactorType
    is_active: bool
    is_verified: bool
    email: Optional[str] = None
    backup_codes_remaining: int = 0
    locked_until: Optional[datetime] = None
    last_used_at: Optional[datetime] = None


def normalize_backup_code(code: object) -> Optional[str]:
    if not isinstance(code, str):
        return None
    cleaned = code.strip().replace("-", "").replace(" ", "").upper()
    if len(cleaned) != BACKUP_CODE_LENGTH or not all(c in string.hexdigits for c in cleaned):
        return None
    return cleaned


def hash_backup_code(code: str) -> str:
    return hashlib.sha256(code.encode()).hexdigest()


def generate_backup_codes(count: int) -> List[str]:
    return [secrets.token_hex(BACKUP_CODE_LENGTH // 2).upper() for _ in range(count)]


def generate_email_code() -> str:
    return str(secrets.randbelow(10**EMAIL_CODE_DIGITS)).zfill(EMAIL_CODE_DIGITS)


def _is_usable(method: Optional[TwoFactorMethod]) -> bool:
    return bool(method and method.is_active and method.is_verified)


class TwoFactorEngine:
    """Second-factor enrollment and verification.

    Methods: TOTP (RFC 6238), emailed one-time codes and single-use backup
    codes attached to the TOTP enrollment. Each method keeps its own failure
    counter; ``max_attempts`` consecutive failures lock it for
    ``lockout_minutes``, during which verification fails fast without
    comparing the submitted code. Backup code failures count against the
    TOTP method.
    """

    def __init__(
        self,
        store: TwoFactorStore,
        *,
        notifier: Optional[NotificationSender] = None,
        clock: Optional[Clock] = None,
        issuer: str = "Gatekeep",
        window: int = 2,
        max_attempts: int = 5,
        lockout_minutes: int = 30,
        email_code_ttl_minutes: int = 10,
        backup_code_count: int = 10,
    ) -> None:
        self.store = store
        self.notifier = notifier
        self._clock = clock or utcnow
        self.issuer = issuer
        self.window = window
        self.max_attempts = max_attempts
        self.lockout = timedelta(minutes=lockout_minutes)
        self.email_code_ttl = timedelta(minutes=email_code_ttl_minutes)
        self.backup_code_count = backup_code_count

    # shared bookkeeping
    def _locked(self, method: TwoFactorMethod, now: datetime) -> Optional[TwoFactorResult]:
        if method.is_locked(now):
            logger.warning(
                "two_factor_locked_out", user_id=method.user_id, method=method.type.value
            )
            return TwoFactorResult(
                ok=False,
                error=AuthErrorKind.TWO_FACTOR_LOCKED,
                locked_until=method.locked_until,
                method=method.type,
            )
        return None

    def _fail(self, user_id: str, method_type: TwoFactorType, now: datetime) -> TwoFactorResult:
        updated = self.store.record_two_factor_failure(
            user_id,
            method_type,
            now,
            max_attempts=self.max_attempts,
            lockout=self.lockout,
        )
        if updated is None:
            return TwoFactorResult(
                ok=False, error=AuthErrorKind.TWO_FACTOR_INVALID, method=method_type
            )
        if updated.is_locked(now):
            log_security_event(
                "two_factor_locked",
                user_id=user_id,
                method=method_type.value,
                failed_attempts=updated.failed_attempts,
                locked_until=updated.locked_until.isoformat(),
            )
            return TwoFactorResult(
                ok=False,
                error=AuthErrorKind.TWO_FACTOR_LOCKED,
                locked_until=updated.locked_until,
                method=method_type,
            )
        logger.info(
            "two_factor_failure_recorded",
            user_id=user_id,
            method=method_type.value,
            failed_attempts=updated.failed_attempts,
        )
        return TwoFactorResult(
            ok=False, error=AuthErrorKind.TWO_FACTOR_INVALID, method=method_type
        )

    def _issue_backup_codes(self, user_id: str) -> List[str]:
        codes = generate_backup_codes(self.backup_code_count)
        self.store.replace_backup_codes(user_id, [hash_backup_code(c) for c in codes])
        return codes

    # TOTP
    async def enroll_totp(self, user_id: str, email: str) -> TotpEnrollment:
        existing = self.store.get_two_factor(user_id, TwoFactorType.TOTP)
        if _is_usable(existing):
            raise BadRequestError("authenticator app already enabled")
        secret = totp.generate_secret()
        try:
            self.store.save_two_factor(
                TwoFactorMethod(
                    user_id=user_id,
                    type=TwoFactorType.TOTP,
                    secret=secret,
                    email=email,
                    created_at=self._clock(),
                )
            )
        except ConstraintViolation as exc:
            raise NotFoundError("user not found", detail=exc.detail) from exc
        logger.info("totp_enrollment_started", user_id=user_id)
        return TotpEnrollment(
            secret=secret,
            provisioning_uri=totp.provisioning_uri(secret, email, self.issuer),
        )

    async def activate_totp(self, user_id: str, code: str) -> TwoFactorResult:
        """Confirm enrollment with a first code; returns the one-time backup codes."""
        method = self.store.get_two_factor(user_id, TwoFactorType.TOTP)
        if not method or not method.secret:
            raise NotFoundError("authenticator app not enrolled", detail={"user_id": user_id})
        if _is_usable(method):
            raise BadRequestError("authenticator app already enabled")
        now = self._clock()
        locked = self._locked(method, now)
        if locked is not None:
            return locked
        step = totp.match_step(method.secret, code, now, window=self.window)
        if step is None or not self.store.record_two_factor_success(
            user_id, TwoFactorType.TOTP, now, step=step
        ):
            return self._fail(user_id, TwoFactorType.TOTP, now)
        current = self.store.get_two_factor(user_id, TwoFactorType.TOTP)
        current.is_active = True
        current.is_verified = True
        current.setup_completed_at = now
        self.store.save_two_factor(current)
        codes = self._issue_backup_codes(user_id)
        log_security_event("two_factor_enabled", level="info", user_id=user_id, method="totp")
        return TwoFactorResult(ok=True, method=TwoFactorType.TOTP, backup_codes=codes)

    async def verify_totp(self, user_id: str, code: str) -> TwoFactorResult:
        method = self.store.get_two_factor(user_id, TwoFactorType.TOTP)
        if not _is_usable(method) or not method.secret:
            return TwoFactorResult(
                ok=False, error=AuthErrorKind.TWO_FACTOR_INVALID, method=TwoFactorType.TOTP
            )
        now = self._clock()
        locked = self._locked(method, now)
        if locked is not None:
            return locked
        step = totp.match_step(method.secret, code, now, window=self.window)
        if step is None:
            return self._fail(user_id, TwoFactorType.TOTP, now)
        if not self.store.record_two_factor_success(
            user_id, TwoFactorType.TOTP, now, step=step
        ):
            logger.warning("totp_replay_rejected", user_id=user_id, step=step)
            return self._fail(user_id, TwoFactorType.TOTP, now)
        return TwoFactorResult(ok=True, method=TwoFactorType.TOTP)

    # email one-time codes
    async def enroll_email(self, user_id: str, email: str) -> TwoFactorResult:
        now = self._clock()
        try:
            self.store.save_two_factor(
                TwoFactorMethod(
                    user_id=user_id,
                    type=TwoFactorType.EMAIL,
                    email=email.strip().lower(),
                    is_active=True,
                    is_verified=True,
                    setup_completed_at=now,
                    created_at=now,
                )
            )
        except ConstraintViolation as exc:
            raise NotFoundError("user not found", detail=exc.detail) from exc
        log_security_event("two_factor_enabled", level="info", user_id=user_id, method="email")
        return TwoFactorResult(ok=True, method=TwoFactorType.EMAIL)

    async def send_email_code(self, user_id: str) -> EmailCodeDispatch:
        method = self.store.get_two_factor(user_id, TwoFactorType.EMAIL)
        if not _is_usable(method) or not method.email:
            raise NotFoundError("email verification not enabled", detail={"user_id": user_id})
        now = self._clock()
        if method.is_locked(now):
            return EmailCodeDispatch(
                ok=False,
                error=AuthErrorKind.TWO_FACTOR_LOCKED,
                locked_until=method.locked_until,
            )
        code = generate_email_code()
        expires_at = now + self.email_code_ttl
        self.store.set_email_challenge(user_id, code, expires_at)
        delivered = False
        if self.notifier is None:
            logger.warning("two_factor_code_not_sent", user_id=user_id, reason="no_notifier")
        else:
            try:
                delivered = bool(
                    self.notifier.send_two_factor_code(method.email, code, expires_at)
                )
            except Exception as exc:
                logger.warning(
                    "two_factor_code_delivery_failed",
                    user_id=user_id,
                    to=redact_email(method.email),
                    error_type=type(exc).__name__,
                    error=str(exc),
                )
            else:
                if not delivered:
                    logger.warning(
                        "two_factor_code_delivery_failed",
                        user_id=user_id,
                        to=redact_email(method.email),
                    )
        return EmailCodeDispatch(ok=True, expires_at=expires_at, delivered=delivered)

    async def verify_email_code(self, user_id: str, code: str) -> TwoFactorResult:
        method = self.store.get_two_factor(user_id, TwoFactorType.EMAIL)
        if not _is_usable(method):
            return TwoFactorResult(
                ok=False, error=AuthErrorKind.TWO_FACTOR_INVALID, method=TwoFactorType.EMAIL
            )
        now = self._clock()
        locked = self._locked(method, now)
        if locked is not None:
            return locked
        if not totp.is_well_formed(code, digits=EMAIL_CODE_DIGITS):
            return self._fail(user_id, TwoFactorType.EMAIL, now)
        if not self.store.consume_email_challenge(user_id, code, now):
            return self._fail(user_id, TwoFactorType.EMAIL, now)
        self.store.record_two_factor_success(user_id, TwoFactorType.EMAIL, now)
        return TwoFactorResult(ok=True, method=TwoFactorType.EMAIL)

    # backup codes
    async def verify_backup_code(self, user_id: str, code: str) -> TwoFactorResult:
        method = self.store.get_two_factor(user_id, TwoFactorType.TOTP)
        if not _is_usable(method):
            return TwoFactorResult(
                ok=False, error=AuthErrorKind.TWO_FACTOR_INVALID, method=TwoFactorType.BACKUP
            )
        now = self._clock()
        locked = self._locked(method, now)
        if locked is not None:
            locked.method = TwoFactorType.BACKUP
            return locked
        normalized = normalize_backup_code(code)
        if normalized is None or not self.store.consume_backup_code(
            user_id, hash_backup_code(normalized), now
        ):
            result = self._fail(user_id, TwoFactorType.TOTP, now)
            result.method = TwoFactorType.BACKUP
            return result
        self.store.record_two_factor_success(user_id, TwoFactorType.TOTP, now)
        remaining = method.remaining_backup_codes() - 1
        log_security_event(
            "backup_code_used", level="info", user_id=user_id, remaining=remaining
        )
        if remaining <= LOW_BACKUP_CODE_WARNING:
            logger.warning("backup_codes_low", user_id=user_id, remaining=remaining)
        return TwoFactorResult(ok=True, method=TwoFactorType.BACKUP)

    async def regenerate_backup_codes(self, user_id: str, code: str) -> TwoFactorResult:
        """Replace all backup codes; requires a current authenticator code."""
        result = await self.verify_totp(user_id, code)
        if not result:
            return result
        codes = self._issue_backup_codes(user_id)
        log_security_event("backup_codes_regenerated", level="info", user_id=user_id)
        return TwoFactorResult(ok=True, method=TwoFactorType.TOTP, backup_codes=codes)

    # management
    async def disable(self, user_id: str, method: Union[TwoFactorType, str]) -> bool:
        try:
            method_type = TwoFactorType(method)
        except ValueError as exc:
            raise BadRequestError("unknown two-factor method", detail={"method": method}) from exc
        if method_type == TwoFactorType.BACKUP:
            raise BadRequestError("backup codes are disabled with the authenticator app")
        record = self.store.get_two_factor(user_id, method_type)
        if not record:
            return False
        was_active = record.is_active
        record.is_active = False
        record.is_verified = False
        record.secret = None
        record.backup_codes = []
        record.challenge = None
        record.failed_attempts = 0
        record.locked_until = None
        record.last_used_step = None
        self.store.save_two_factor(record)
        if was_active:
            log_security_event("two_factor_disabled", user_id=user_id, method=method_type.value)
        return was_active

    def list_methods(self, user_id: str) -> List[MethodSummary]:
        return [
            MethodSummary(
                type=record.type,
                is_active=record.is_active,
                is_verified=record.is_verified,
                email=record.email,
                backup_codes_remaining=record.remaining_backup_codes(),
                locked_until=record.locked_until,
                last_used_at=record.last_used_at,
            )
            for record in self.store.list_two_factor(user_id)
        ]

    def active_methods(self, user_id: str) -> List[str]:
        methods: List[str] = []
        for record in self.store.list_two_factor(user_id):
            if not _is_usable(record):
                continue
            methods.append(record.type.value)
            if record.type == TwoFactorType.TOTP and record.remaining_backup_codes():
                methods.append(TwoFactorType.BACKUP.value)
        return sorted(methods)

    def has_active_two_factor(self, user_id: str) -> bool:
        return any(_is_usable(record) for record in self.store.list_two_factor(user_id))

    async def verify(
        self, user_id: str, method: Union[TwoFactorType, str], code: str
    ) -> TwoFactorResult:
        try:
            method_type = TwoFactorType(method)
        except ValueError:
            return TwoFactorResult(ok=False, error=AuthErrorKind.TWO_FACTOR_INVALID)
        if method_type == TwoFactorType.TOTP:
            return await self.verify_totp(user_id, code)
        if method_type == TwoFactorType.EMAIL:
            return await self.verify_email_code(user_id, code)
        return await self.verify_backup_code(user_id, code)
