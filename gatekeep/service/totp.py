from __future__ import annotations

import base64
import binascii
import hashlib
import hmac
import os
from datetime import datetime
from typing import Optional
from urllib.parse import quote, urlencode

from gatekeep.logging import get_logger

logger = get_logger(__name__)

TOTP_INTERVAL = 30
TOTP_DIGITS = 6
SECRET_BYTES = 20


def generate_secret() -> str:
    """160-bit random secret, base32 without padding."""
    return base64.b32encode(os.urandom(SECRET_BYTES)).decode("utf-8").rstrip("=")


def provisioning_uri(secret: str, account: str, issuer: str) -> str:
    label = quote(f"{issuer}:{account}")
    query = urlencode({"secret": secret, "issuer": issuer})
    return f"otpauth://totp/{label}?{query}"


def time_step(moment: datetime, *, interval: int = TOTP_INTERVAL) -> int:
    return int(moment.timestamp() // interval)


def _secret_key(secret: str) -> Optional[bytes]:
    padded = secret.upper() + "=" * ((8 - len(secret) % 8) % 8)
    try:
        return base64.b32decode(padded, True)
    except (binascii.Error, ValueError):
        logger.warning("totp_secret_invalid")
        return None


def code_for_step(secret: str, step: int, *, digits: int = TOTP_DIGITS) -> str:
    key = _secret_key(secret)
    if key is None or step < 0:
        return ""
    counter = step.to_bytes(8, "big")
    digest = hmac.new(key, counter, hashlib.sha1).digest()
    offset = digest[-1] & 0x0F
    code_int = (int.from_bytes(digest[offset : offset + 4], "big") & 0x7FFFFFFF) % (
        10**digits
    )
    return str(code_int).zfill(digits)


def generate_code(secret: str, moment: datetime, *, interval: int = TOTP_INTERVAL) -> str:
    return code_for_step(secret, time_step(moment, interval=interval))


def is_well_formed(code: object, *, digits: int = TOTP_DIGITS) -> bool:
    return (
        isinstance(code, str)
        and len(code) == digits
        and code.isascii()
        and code.isdigit()
    )


def match_step(
    secret: str,
    code: str,
    moment: datetime,
    *,
    window: int = 2,
    interval: int = TOTP_INTERVAL,
) -> Optional[int]:
    """Return the time step the code belongs to, or None.

    Every step in ``[-window, +window]`` around ``moment`` is compared so the
    amount of work does not depend on which step matched.
    """
    if not is_well_formed(code):
        return None
    current = time_step(moment, interval=interval)
    matched: Optional[int] = None
    for offset in range(-window, window + 1):
        step = current + offset
        generated = code_for_step(secret, step)
        if generated and hmac.compare_digest(generated, code) and matched is None:
            matched = step
    return matched
