"""
Time helpers.

All timestamps are stored as naive UTC so that values round-trip
unchanged through SQLite and PostgreSQL ``timestamp`` columns.
"""
from datetime import datetime, timezone
from typing import Callable

Clock = Callable[[], datetime]


def utcnow() -> datetime:
    """Current UTC time without tzinfo."""
    return datetime.now(timezone.utc).replace(tzinfo=None)
