from datetime import datetime, timezone
from typing import Optional
from zoneinfo import ZoneInfo


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def ensure_utc(value: datetime) -> datetime:
    """Treat naive datetimes (as SQLite returns them) as UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def ensure_utc_or_none(value: Optional[datetime]) -> Optional[datetime]:
    return ensure_utc(value) if value is not None else None


def to_local(value: datetime, tz_name: str) -> datetime:
    """Convert a stored UTC datetime into the platform display timezone."""
    return ensure_utc(value).astimezone(ZoneInfo(tz_name))


def format_local(value: datetime, tz_name: str) -> str:
    return to_local(value, tz_name).strftime("%d %b %Y, %I:%M %p")
