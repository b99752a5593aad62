from datetime import datetime, timedelta, timezone
from typing import Any

# Timestamps are stored as naive UTC (SQLite drops tzinfo; Postgres columns are
# "timestamp without time zone"), so every helper here returns naive UTC.

def utcnow() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)

def from_unix(ts: Any) -> datetime | None:
    """Stripe epoch seconds -> naive UTC datetime; None for missing/garbage."""
    if ts in (None, ""):
        return None
    try:
        return datetime.fromtimestamp(int(ts), timezone.utc).replace(tzinfo=None)
    except (TypeError, ValueError, OverflowError, OSError):
        return None

def days_from_now(days: int) -> datetime:
    return utcnow() + timedelta(days=days)

def normalize_email(val: str | None) -> str | None:
    if not val:
        return None
    s = val.strip().lower()
    return s or None

def stripe_id(val: Any) -> str | None:
    """Stripe fields may be an id string or an expanded object."""
    if isinstance(val, dict):
        return val.get("id")
    if val is None:
        return None
    return getattr(val, "id", None) or (val if isinstance(val, str) else None)
