from __future__ import annotations

from typing import Optional, Protocol

from gatekeep.logging import get_logger, log_security_event
from gatekeep.service.clock import Clock, utcnow
from gatekeep.storage.models import LoginAttemptState, User

logger = get_logger(__name__)

DEFAULT_MAX_LOGIN_ATTEMPTS = 5


class LoginAttemptStore(Protocol):
    def get_user(self, user_id: str) -> Optional[User]: ...

    def increment_failed_attempts(self, user_id, at) -> Optional[LoginAttemptState]: ...

    def reset_failed_attempts(self, user_id: str) -> Optional[LoginAttemptState]: ...

    def set_blocked(self, user_id: str, blocked: bool) -> bool: ...


class LockoutPolicy:
    """Consecutive failed-login counting with a hard block at the threshold.

    A blocked account stays blocked until a successful login (which cannot
    happen while blocked, since the check runs before password comparison) or
    an admin unblock.
    """

    def __init__(
        self,
        store: LoginAttemptStore,
        *,
        max_attempts: int = DEFAULT_MAX_LOGIN_ATTEMPTS,
        clock: Optional[Clock] = None,
    ) -> None:
        self.store = store
        self.max_attempts = max_attempts
        self._clock = clock or utcnow

    def is_locked(self, user_id: str) -> bool:
        user = self.store.get_user(user_id)
        return bool(user and user.is_blocked_login_attempts)

    def remaining_attempts(self, state: LoginAttemptState) -> int:
        return max(0, self.max_attempts - state.failed_login_attempts)

    def record_failure(self, user_id: str) -> Optional[LoginAttemptState]:
        state = self.store.increment_failed_attempts(user_id, self._clock())
        if state is None:
            return None
        if state.failed_login_attempts >= self.max_attempts:
            if self.store.set_blocked(user_id, True):
                log_security_event(
                    "account_locked",
                    user_id=user_id,
                    failed_attempts=state.failed_login_attempts,
                )
            state.is_blocked_login_attempts = True
        else:
            logger.info(
                "login_failure_recorded",
                user_id=user_id,
                failed_attempts=state.failed_login_attempts,
                remaining=self.remaining_attempts(state),
            )
        return state

    def record_success(self, user_id: str) -> bool:
        """Reset counters; returns True when an actual block was lifted."""
        user = self.store.get_user(user_id)
        if not user:
            return False
        if not user.failed_login_attempts and not user.is_blocked_login_attempts:
            return False
        previous = self.store.reset_failed_attempts(user_id)
        if previous and previous.is_blocked_login_attempts:
            log_security_event("account_unlocked", user_id=user_id, reason="login_success")
            return True
        return False

    def unblock(self, user_id: str) -> bool:
        """Admin unblock: clears the counters and the block flag."""
        previous = self.store.reset_failed_attempts(user_id)
        if previous is None:
            return False
        if previous.is_blocked_login_attempts:
            log_security_event("account_unlocked", user_id=user_id, reason="admin_unblock")
            return True
        return False
