from __future__ import annotations

from datetime import datetime, timezone
from typing import Callable

# Injected time source; services never call datetime.now directly
Clock = Callable[[], datetime]


def utcnow() -> datetime:
    """Timezone-aware UTC helper to avoid naive datetime usage."""

    return datetime.now(timezone.utc)
