from __future__ import annotations

from dataclasses import dataclass
from typing import Optional, Protocol, Tuple

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerificationError, VerifyMismatchError

from gatekeep.logging import get_logger
from gatekeep.service.errors import AuthErrorKind, BadRequestError, NotFoundError
from gatekeep.storage.models import User

logger = get_logger(__name__)

PASSWORD_ALGO = "argon2id"
MIN_PASSWORD_LENGTH = 6


class CredentialStore(Protocol):
    def get_user_by_email(self, email: str) -> Optional[User]: ...

    def get_active_user_by_email(self, email: str) -> Optional[User]: ...

    def get_user(self, user_id: str) -> Optional[User]: ...

    def save_password(
        self, user_id: str, password_hash: str, password_algo: str
    ) -> None: ...

    def get_password_record(self, user_id: str) -> Optional[tuple[str, str]]: ...


@dataclass
class CredentialResult:
    ok: bool
    user: Optional[User] = None
    error: Optional[AuthErrorKind] = None

    def __bool__(self) -> bool:
        return self.ok


class CredentialVerifier:
    """Email + password verification against an argon2id hash.

    Attempt counting is not done here; see ``LockoutPolicy``.
    """

    def __init__(self, store: CredentialStore, *, hasher: Optional[PasswordHasher] = None) -> None:
        self.store = store
        self._pwd_hasher = hasher or PasswordHasher(type=Type.ID)
        # Verified when the account or its hash is missing so timing stays flat
        self._dummy_hash = self._pwd_hasher.hash("gatekeep-timing-equalizer")

    def hash_password(self, password: str) -> Tuple[str, str]:
        return self._pwd_hasher.hash(password), PASSWORD_ALGO

    def set_password(self, user_id: str, password: str) -> None:
        """Hash and save a new password for a user."""
        if not self.store.get_user(user_id):
            raise NotFoundError("user not found", detail={"user_id": user_id})
        pwd_hash, algo = self.hash_password(password)
        self.store.save_password(user_id, pwd_hash, algo)
        logger.info("password_changed", user_id=user_id)

    def change_password(self, user_id: str, current_password: str, new_password: str) -> None:
        """Replace the password after re-checking the current one."""
        if not current_password or not new_password:
            raise BadRequestError("current and new password are required")
        if len(new_password) < MIN_PASSWORD_LENGTH:
            raise BadRequestError(
                "new password is too short", detail={"min_length": MIN_PASSWORD_LENGTH}
            )
        if not self.store.get_user(user_id):
            raise NotFoundError("user not found", detail={"user_id": user_id})
        if not self.check_password(user_id, current_password):
            logger.info("password_change_rejected", user_id=user_id)
            raise BadRequestError("current password is incorrect")
        self.set_password(user_id, new_password)

    def _burn(self, password: str) -> None:
        try:
            self._pwd_hasher.verify(self._dummy_hash, password)
        except VerificationError:
            pass

    def check_password(self, user_id: str, password: str) -> bool:
        record = self.store.get_password_record(user_id)
        if not record:
            logger.warning("password_record_missing", user_id=user_id)
            self._burn(password)
            return False
        stored_hash, algo = record
        if algo != PASSWORD_ALGO:
            logger.warning("password_algo_mismatch", user_id=user_id, algo=algo)
            self._burn(password)
            return False
        try:
            self._pwd_hasher.verify(stored_hash, password)
        except (InvalidHash, VerifyMismatchError, VerificationError):
            return False
        if self._pwd_hasher.check_needs_rehash(stored_hash):
            new_hash, new_algo = self.hash_password(password)
            self.store.save_password(user_id, new_hash, new_algo)
            logger.info("password_rehashed", user_id=user_id)
        return True

    def verify(
        self, email: str, password: str, *, include_inactive: bool = False
    ) -> CredentialResult:
        normalized = (email or "").strip().lower()
        if include_inactive:
            user = self.store.get_user_by_email(normalized)
        else:
            user = self.store.get_active_user_by_email(normalized)
        if not user:
            self._burn(password or "")
            return CredentialResult(ok=False, error=AuthErrorKind.INVALID_CREDENTIALS)
        if not password or not self.check_password(user.id, password):
            return CredentialResult(ok=False, error=AuthErrorKind.INVALID_CREDENTIALS)
        return CredentialResult(ok=True, user=user)
