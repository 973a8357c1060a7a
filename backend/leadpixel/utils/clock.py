"""Clock helpers.

Timestamps are stored as naive UTC datetimes across the schema, so every
writer goes through `utcnow()` instead of calling `datetime.now()` directly.
"""

from datetime import datetime, timezone


def utcnow() -> datetime:
    """Return the current UTC time as a naive datetime."""
    return datetime.now(timezone.utc).replace(tzinfo=None)
