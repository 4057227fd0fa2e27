"""
One-time code rules for pickup / delivery proof.

Codes are fixed-length, digits only, drawn from ``secrets`` and compared in
constant time.  Expiry is a data check at verification time; nothing runs on
a timer.
"""

import secrets
from datetime import datetime, timedelta

from .clock import as_utc


def generate_code(length: int = 6) -> str:
    return "".join(secrets.choice("0123456789") for _ in range(length))


def codes_match(expected: str, supplied: str) -> bool:
    return secrets.compare_digest(expected.encode(), supplied.strip().encode())


def expiry_for(issued_at: datetime, ttl_minutes: int) -> datetime:
    return as_utc(issued_at) + timedelta(minutes=ttl_minutes)


def is_expired(expires_at: datetime, now: datetime) -> bool:
    return as_utc(now) > as_utc(expires_at)
