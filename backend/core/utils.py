"""
Utility functions for the playbook engine.

Includes:
- Slug generation
- UTC datetime helpers
"""

import re
from datetime import datetime, timezone
from typing import Optional


def generate_slug(name: str) -> str:
    """
    Generate a URL-friendly slug from a string.

    Converts to lowercase, replaces spaces with hyphens, removes special characters.

    Args:
        name: String to convert to slug

    Returns:
        URL-friendly slug
    """
    slug = name.lower()
    slug = re.sub(r"[\s_]+", "-", slug)
    slug = re.sub(r"[^a-z0-9\-]", "", slug)
    slug = re.sub(r"-+", "-", slug)
    return slug.strip("-")


def utc_now() -> datetime:
    """
    Get the current UTC datetime as a naive value.

    Stored timestamps are naive UTC (SQLite drops tzinfo on round-trip), so
    everything the engine writes or compares goes through this helper.
    """
    return datetime.now(timezone.utc).replace(tzinfo=None)


def as_naive_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Normalize an aware or naive datetime to naive UTC."""
    if value is None or value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)


def elapsed_ms(start: Optional[datetime], end: Optional[datetime] = None) -> int:
    """Milliseconds between two timestamps (end defaults to now). 0 if start is unset."""
    if start is None:
        return 0
    end = as_naive_utc(end) if end is not None else utc_now()
    return max(0, int((end - as_naive_utc(start)).total_seconds() * 1000))

