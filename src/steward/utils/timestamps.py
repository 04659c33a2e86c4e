"""
Timestamp helpers.

All persisted timestamps use the same ISO 8601 shape with millisecond
precision and a ``Z`` suffix (e.g. ``2026-02-27T00:00:00.000Z``), so that
string ordering matches chronological ordering for values written here.
"""

from __future__ import annotations

from datetime import datetime, timezone


def to_iso(value: datetime) -> str:
    """Format a datetime as a UTC ISO string with millisecond precision."""
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    value = value.astimezone(timezone.utc)
    return value.strftime("%Y-%m-%dT%H:%M:%S.") + f"{value.microsecond // 1000:03d}Z"


def now_iso() -> str:
    """Current time as a UTC ISO string."""
    return to_iso(datetime.now(timezone.utc))


def parse_iso(value: str | None) -> datetime | None:
    """
    Parse an ISO 8601 timestamp into an aware UTC datetime.

    Accepts a trailing ``Z``. Naive values are treated as UTC.

    Returns:
        Parsed datetime, or None if the value is empty or not a timestamp
    """
    if not value or not value.strip():
        return None

    candidate = value.strip()
    if candidate.endswith(("Z", "z")):
        candidate = candidate[:-1] + "+00:00"

    try:
        parsed = datetime.fromisoformat(candidate)
    except ValueError:
        return None

    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def normalize_iso_or_now(value: str | None) -> str:
    """Return ``value`` re-formatted as a UTC ISO string, or now if it doesn't parse."""
    parsed = parse_iso(value)
    if parsed is None:
        return now_iso()
    return to_iso(parsed)


def compare_timestamps(a: str | None, b: str | None) -> int:
    """
    Compare two ISO timestamps.

    Missing values sort before present ones. When both parse and denote
    different instants they are compared chronologically; otherwise the raw
    strings are compared.

    Returns:
        -1, 0 or 1
    """
    if a == b:
        return 0
    if not a and not b:
        return 0
    if not a:
        return -1
    if not b:
        return 1

    a_time = parse_iso(a)
    b_time = parse_iso(b)
    if a_time is not None and b_time is not None and a_time != b_time:
        return 1 if a_time > b_time else -1

    if a == b:
        return 0
    return 1 if a > b else -1
