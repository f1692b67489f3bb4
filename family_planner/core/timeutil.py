"""Datetime helpers shared by the checker, gateway and lifecycle."""

from __future__ import annotations

from datetime import date, datetime, time, timezone
from zoneinfo import ZoneInfo


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def ensure_aware(dt: datetime, tz_name: str) -> datetime:
    """Attach the local timezone to naive datetimes; leave aware ones alone."""
    if dt.tzinfo is None:
        return dt.replace(tzinfo=ZoneInfo(tz_name))
    return dt


def parse_datetime(value: str, tz_name: str) -> tuple[datetime, bool]:
    """Parse an ISO datetime or date string.

    Returns (datetime, is_date_only). Date-only values map to local midnight.
    """
    value = value.strip()
    if "T" not in value and len(value) == 10:
        d = date.fromisoformat(value)
        return datetime.combine(d, time.min, tzinfo=ZoneInfo(tz_name)), True
    if value.endswith("Z"):
        value = value[:-1] + "+00:00"
    return ensure_aware(datetime.fromisoformat(value), tz_name), False


def to_iso(dt: datetime | None) -> str | None:
    return dt.isoformat() if dt is not None else None


def from_iso(value: str | None) -> datetime | None:
    return datetime.fromisoformat(value) if value else None
