from __future__ import annotations

import base64
import copy
import hashlib
import hmac
import os
import secrets
import threading
import uuid
from datetime import datetime, timedelta
from typing import Dict, Iterable, List, Optional, Tuple

from cryptography.fernet import Fernet, InvalidToken

from gatekeep.logging import get_logger
from gatekeep.storage.errors import ConstraintViolation
from gatekeep.storage.models import (
    BackupCode,
    EmailChallenge,
    LoginAttemptState,
    TwoFactorMethod,
    TwoFactorType,
    User,
)


def normalize_email(email: str) -> str:
    return (email or "").strip().lower()


class MemoryStore:
    """In-process user directory and two-factor store.

    Every read-modify-write runs under one re-entrant lock, which gives the
    counter increments, flag flips and backup-code consumption the same
    atomicity a conditional UPDATE would give in a database.
    """

    def __init__(self, *, mfa_encryption_key: str | None = None) -> None:
        self.logger = get_logger(__name__)
        self.users: Dict[str, User] = {}
        self.credentials: Dict[str, Tuple[str, str]] = {}
        self.two_factor: Dict[Tuple[str, TwoFactorType], TwoFactorMethod] = {}
        self._data_lock = threading.RLock()
        self._mfa_cipher = self._build_mfa_cipher(mfa_encryption_key)

    @staticmethod
    def _derive_cipher_key(key_material: str) -> bytes:
        return base64.urlsafe_b64encode(hashlib.sha256(key_material.encode()).digest())

    def _build_mfa_cipher(self, key_material: str | None) -> Fernet:
        material = (
            key_material or os.getenv("MFA_SECRET_KEY") or os.getenv("JWT_SECRET")
        )
        if not material:
            # Nothing outlives the process here, so an ephemeral key is enough
            material = secrets.token_urlsafe(64)
        return Fernet(self._derive_cipher_key(material))

    def _encrypt_secret(self, secret: Optional[str]) -> Optional[str]:
        if not secret:
            return secret
        return self._mfa_cipher.encrypt(secret.encode()).decode()

    def _decrypt_secret(self, secret: Optional[str]) -> Optional[str]:
        if not secret:
            return secret
        try:
            return self._mfa_cipher.decrypt(secret.encode()).decode()
        except InvalidToken:
            self.logger.warning("mfa_secret_decrypt_failed")
            return None

    # users
    def create_user(
        self,
        email: str,
        name: Optional[str] = None,
        *,
        tenant_id: str = "public",
        roles: Optional[Iterable[str]] = None,
        permissions: Optional[Dict] = None,
        is_active: bool = True,
    ) -> User:
        normalized = normalize_email(email)
        with self._data_lock:
            if any(existing.email == normalized for existing in self.users.values()):
                raise ConstraintViolation("email already exists", {"field": "email"})
            user = User(
                id=str(uuid.uuid4()),
                email=normalized,
                name=name,
                tenant_id=tenant_id,
                roles=list(roles) if roles is not None else ["user"],
                permissions=dict(permissions or {}),
                is_active=is_active,
            )
            self.users[user.id] = user
            return copy.deepcopy(user)

    def get_user(self, user_id: str) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            return copy.deepcopy(user) if user else None

    def get_user_by_email(self, email: str) -> Optional[User]:
        normalized = normalize_email(email)
        with self._data_lock:
            user = next((u for u in self.users.values() if u.email == normalized), None)
            return copy.deepcopy(user) if user else None

    def get_active_user_by_email(self, email: str) -> Optional[User]:
        user = self.get_user_by_email(email)
        if user and user.is_active:
            return user
        return None

    def set_user_active(self, user_id: str, is_active: bool) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            user.is_active = is_active
            return copy.deepcopy(user)

    def update_user_claims(
        self,
        user_id: str,
        *,
        roles: Optional[Iterable[str]] = None,
        permissions: Optional[Dict] = None,
    ) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            if roles is not None:
                user.roles = list(roles)
            if permissions is not None:
                user.permissions = dict(permissions)
            return copy.deepcopy(user)

    def mark_email_verified(self, user_id: str) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            user.email_verified = True
            return copy.deepcopy(user)

    # credentials
    def save_password(self, user_id: str, password_hash: str, password_algo: str) -> None:
        with self._data_lock:
            if user_id not in self.users:
                raise ConstraintViolation(
                    "user not found for credentials", {"user_id": user_id}
                )
            self.credentials[user_id] = (password_hash, password_algo)

    def get_password_record(self, user_id: str) -> Optional[Tuple[str, str]]:
        with self._data_lock:
            return self.credentials.get(user_id)

    # login attempts
    def increment_failed_attempts(
        self, user_id: str, at: datetime
    ) -> Optional[LoginAttemptState]:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            user.failed_login_attempts += 1
            user.last_failed_login_at = at
            return LoginAttemptState(
                failed_login_attempts=user.failed_login_attempts,
                is_blocked_login_attempts=user.is_blocked_login_attempts,
                last_failed_login_at=at,
            )

    def set_blocked(self, user_id: str, blocked: bool) -> bool:
        """Set the block flag, returning True only when the flag changed."""
        with self._data_lock:
            user = self.users.get(user_id)
            if not user or user.is_blocked_login_attempts == blocked:
                return False
            user.is_blocked_login_attempts = blocked
            return True

    def reset_failed_attempts(self, user_id: str) -> Optional[LoginAttemptState]:
        """Zero the counters and return the state they held before the reset."""
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            previous = LoginAttemptState(
                failed_login_attempts=user.failed_login_attempts,
                is_blocked_login_attempts=user.is_blocked_login_attempts,
                last_failed_login_at=user.last_failed_login_at,
            )
            user.failed_login_attempts = 0
            user.is_blocked_login_attempts = False
            return previous

    # two-factor
    def _export_method(self, record: TwoFactorMethod) -> TwoFactorMethod:
        exported = copy.deepcopy(record)
        exported.secret = self._decrypt_secret(record.secret)
        return exported

    def get_two_factor(
        self, user_id: str, method_type: TwoFactorType
    ) -> Optional[TwoFactorMethod]:
        with self._data_lock:
            record = self.two_factor.get((user_id, TwoFactorType(method_type)))
            return self._export_method(record) if record else None

    def list_two_factor(self, user_id: str) -> List[TwoFactorMethod]:
        with self._data_lock:
            return [
                self._export_method(record)
                for (owner, _), record in sorted(
                    self.two_factor.items(), key=lambda item: item[0][1].value
                )
                if owner == user_id
            ]

    def save_two_factor(self, method: TwoFactorMethod) -> TwoFactorMethod:
        """Insert or replace the single record for ``(user_id, type)``."""
        with self._data_lock:
            if method.user_id not in self.users:
                raise ConstraintViolation(
                    "user not found for two-factor", {"user_id": method.user_id}
                )
            record = copy.deepcopy(method)
            record.type = TwoFactorType(method.type)
            record.secret = self._encrypt_secret(method.secret)
            self.two_factor[(record.user_id, record.type)] = record
            return self._export_method(record)

    def record_two_factor_failure(
        self,
        user_id: str,
        method_type: TwoFactorType,
        at: datetime,
        *,
        max_attempts: int,
        lockout: timedelta,
    ) -> Optional[TwoFactorMethod]:
        with self._data_lock:
            record = self.two_factor.get((user_id, TwoFactorType(method_type)))
            if not record:
                return None
            if record.locked_until is not None and record.locked_until <= at:
                # An expired lock starts a fresh counting window
                record.failed_attempts = 0
                record.locked_until = None
            record.failed_attempts += 1
            if record.failed_attempts >= max_attempts:
                record.locked_until = at + lockout
            return self._export_method(record)

    def record_two_factor_success(
        self,
        user_id: str,
        method_type: TwoFactorType,
        at: datetime,
        *,
        step: Optional[int] = None,
    ) -> bool:
        """Reset failures and stamp usage.

        When ``step`` is given it must be newer than the last accepted TOTP
        step; an older or equal step is a replay and nothing is updated.
        """
        with self._data_lock:
            record = self.two_factor.get((user_id, TwoFactorType(method_type)))
            if not record:
                return False
            if step is not None:
                if record.last_used_step is not None and step <= record.last_used_step:
                    return False
                record.last_used_step = step
            record.failed_attempts = 0
            record.locked_until = None
            record.last_used_at = at
            return True

    def consume_backup_code(self, user_id: str, code_hash: str, at: datetime) -> bool:
        """Mark a matching unused backup code as used; test-and-set under the lock."""
        with self._data_lock:
            record = self.two_factor.get((user_id, TwoFactorType.TOTP))
            if not record or not record.is_active:
                return False
            for backup in record.backup_codes:
                if not backup.used and hmac.compare_digest(backup.code_hash, code_hash):
                    backup.used = True
                    backup.used_at = at
                    record.last_used_at = at
                    return True
            return False

    def replace_backup_codes(self, user_id: str, code_hashes: Iterable[str]) -> bool:
        with self._data_lock:
            record = self.two_factor.get((user_id, TwoFactorType.TOTP))
            if not record:
                return False
            record.backup_codes = [BackupCode(code_hash=h) for h in code_hashes]
            return True

    def set_email_challenge(self, user_id: str, code: str, expires_at: datetime) -> bool:
        with self._data_lock:
            record = self.two_factor.get((user_id, TwoFactorType.EMAIL))
            if not record:
                return False
            record.challenge = EmailChallenge(code=code, expires_at=expires_at)
            return True

    def consume_email_challenge(self, user_id: str, code: str, at: datetime) -> bool:
        """Compare-and-clear the pending email code.

        Expired challenges are cleared on read. A mismatch leaves the
        challenge in place so the user can retry until the lock kicks in.
        """
        with self._data_lock:
            record = self.two_factor.get((user_id, TwoFactorType.EMAIL))
            if not record or not record.challenge:
                return False
            challenge = record.challenge
            if challenge.expires_at <= at:
                record.challenge = None
                return False
            if not hmac.compare_digest(challenge.code, code):
                return False
            record.challenge = None
            return True
