"""
Utility functions for the account automation engine.

Includes:
- UTC datetime helpers
- Lock holder id generation
"""

import secrets
import time
from datetime import datetime, timezone
from typing import Optional


def utc_now() -> datetime:
    """
    Get the current UTC datetime.

    Returns:
        Current datetime in UTC timezone
    """
    return datetime.now(timezone.utc)


def ensure_utc(value: Optional[datetime]) -> Optional[datetime]:
    """
    Attach UTC to naive datetimes read back from SQLite.

    PostgreSQL returns aware values for ``timestamptz`` columns, SQLite
    returns naive ones; both represent UTC in this schema.
    """
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def isoformat(value: Optional[datetime]) -> Optional[str]:
    """ISO-8601 string for an optional datetime."""
    value = ensure_utc(value)
    return value.isoformat() if value else None


def generate_holder_id() -> str:
    """
    Generate a lock holder identifier for this process/call.

    Returns:
        Identifier of the form ``wf_<epoch_ms>_<random>``
    """
    return f"wf_{int(time.time() * 1000)}_{secrets.token_hex(4)}"
