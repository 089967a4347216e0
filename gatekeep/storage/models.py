from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Dict, List, Optional


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class TwoFactorType(str, Enum):
    """Second-factor methods a user can enroll."""

    TOTP = "totp"
    EMAIL = "email"
    BACKUP = "backup"


@dataclass
class User:
    id: str
    email: str
    name: Optional[str] = None
    tenant_id: str = "public"
    roles: List[str] = field(default_factory=lambda: ["user"])
    permissions: Dict = field(default_factory=dict)
    is_active: bool = True
    email_verified: bool = False
    failed_login_attempts: int = 0
    last_failed_login_at: Optional[datetime] = None
    is_blocked_login_attempts: bool = False
    created_at: datetime = field(default_factory=_utcnow)


@dataclass
class LoginAttemptState:
    """Snapshot of a user's login counters after an update."""

    failed_login_attempts: int
    is_blocked_login_attempts: bool
    last_failed_login_at: Optional[datetime] = None


@dataclass
class BackupCode:
    code_hash: str
    used: bool = False
    used_at: Optional[datetime] = None


@dataclass
class EmailChallenge:
    code: str
    expires_at: datetime


@dataclass
class TwoFactorMethod:
    user_id: str
    type: TwoFactorType
    secret: Optional[str] = None
    email: Optional[str] = None
    is_active: bool = False
    is_verified: bool = False
    failed_attempts: int = 0
    locked_until: Optional[datetime] = None
    last_used_at: Optional[datetime] = None
    last_used_step: Optional[int] = None
    setup_completed_at: Optional[datetime] = None
    backup_codes: List[BackupCode] = field(default_factory=list)
    challenge: Optional[EmailChallenge] = None
    created_at: datetime = field(default_factory=_utcnow)

    def is_locked(self, now: datetime) -> bool:
        return self.locked_until is not None and self.locked_until > now

    def remaining_backup_codes(self) -> int:
        return sum(1 for code in self.backup_codes if not code.used)
