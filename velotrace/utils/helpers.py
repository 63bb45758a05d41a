"""Shared utility functions for blueprints and services.

utcnow / as_utc:  timezone handling for DateTime columns
parse_bool:       lenient boolean parsing for query strings and JSON bodies
"""
from datetime import datetime, timezone


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value):
    """Attach UTC to naive datetimes read back from SQLite.

    DateTime columns are timezone-aware and written as UTC. PostgreSQL
    hands them back aware; SQLite has no zone storage and returns them
    naive. Aware values pass through unchanged.
    """
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def parse_bool(value, default=False):
    """Interpret query-string / JSON booleans ("1", "true", "yes", True)."""
    if value is None:
        return default
    if isinstance(value, bool):
        return value
    return str(value).strip().lower() in ("1", "true", "yes", "on")
