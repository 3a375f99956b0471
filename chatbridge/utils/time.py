"""
Timestamp helpers.
All timestamps are stored as UTC ISO-8601 strings with a fixed microsecond
width so that SQL string comparison orders them chronologically.
"""
from datetime import datetime, timezone
from typing import Optional, Union


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def to_db_time(value: Optional[datetime]) -> Optional[str]:
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat(timespec="microseconds")


def from_db_time(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def from_platform_timestamp(value: Union[int, float, str, None], unit: str = "ms") -> datetime:
    """Convert a platform epoch timestamp (ms for Messenger, s for WhatsApp)."""
    if value is None or value == "":
        return utc_now()
    seconds = float(value) / 1000.0 if unit == "ms" else float(value)
    return datetime.fromtimestamp(seconds, tz=timezone.utc)
