from __future__ import annotations

from datetime import datetime, timezone
from typing import Any


def truthy(v: Any) -> bool:
    """
    Normalize common truthy inputs from env/config/sqlite.
    Accepts bools, ints, or strings like: '1', 'true', 'yes', 'on'.
    """
    if isinstance(v, bool):
        return v
    if v is None:
        return False
    if isinstance(v, (int, float)):
        return v != 0
    s = str(v).strip().lower()
    return s in {"1", "true", "yes", "on", "y", "t"}


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def now_iso() -> str:
    """
    UTC ISO-8601 timestamp with 'Z' suffix.
    """
    return to_iso(utc_now())


def to_iso(dt: datetime) -> str:
    # Fixed microsecond precision keeps stored timestamps sortable as text.
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc).isoformat(timespec="microseconds").replace("+00:00", "Z")


def from_iso(value: str | datetime | None) -> datetime | None:
    """
    Parse an ISO-8601 string (with 'Z' or offset) into an aware UTC datetime.
    Naive values are taken as UTC.
    """
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        dt = value
    else:
        dt = datetime.fromisoformat(str(value).strip().replace("Z", "+00:00"))
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def opt_str(v: Any) -> str | None:
    """Blank/None -> None, everything else -> stripped string."""
    if v is None:
        return None
    s = str(v).strip()
    return s or None
