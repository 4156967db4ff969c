"""
Shared utility functions for the formdesk backend.
"""

import secrets
import uuid
from datetime import datetime, timezone

from dateutil import parser as dateutil_parser


def to_iso(value: datetime | None) -> str | None:
    return value.isoformat() if value is not None else None


def parse_datetime(value: str | None) -> datetime | None:
    """Parse a stored timestamp, returning an aware UTC datetime.

    Naive values are assumed to be UTC. Returns None if the value
    cannot be parsed.
    """
    if not value or not isinstance(value, str):
        return None

    try:
        parsed = dateutil_parser.parse(value)
    except (ValueError, TypeError, OverflowError):
        return None

    if parsed.tzinfo is None:
        return parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def now_utc() -> datetime:
    return datetime.now(timezone.utc)


def new_id() -> str:
    return uuid.uuid4().hex


def generate_field_key(existing: set[str]) -> str:
    """Return a field key not present in `existing`."""
    while True:
        candidate = f"f_{secrets.token_hex(4)}"
        if candidate not in existing:
            return candidate
