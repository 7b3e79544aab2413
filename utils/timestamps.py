from datetime import datetime, timezone
from typing import Optional, Union

# Fixed width so stored timestamps sort lexicographically
DB_TIME_FORMAT = "%Y-%m-%dT%H:%M:%S.%f+00:00"


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def ensure_utc(value: datetime) -> datetime:
    """Treat naive datetimes as UTC, convert aware ones to UTC"""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def parse_timestamp(value: Union[str, int, float, datetime, None]) -> Optional[datetime]:
    """Parse ISO-8601 strings, epoch seconds (Slack 'ts') and datetimes"""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return ensure_utc(value)
    if isinstance(value, (int, float)):
        return datetime.fromtimestamp(float(value), tz=timezone.utc)

    text = str(value).strip()
    try:
        return datetime.fromtimestamp(float(text), tz=timezone.utc)
    except ValueError:
        pass

    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    return ensure_utc(datetime.fromisoformat(text))


def to_db_time(value: Optional[datetime]) -> Optional[str]:
    if value is None:
        return None
    return ensure_utc(value).strftime(DB_TIME_FORMAT)


def from_db_time(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    return parse_timestamp(value)
