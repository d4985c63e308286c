"""Timezone helpers shared by models and provider clients"""
import re
from datetime import date, datetime, time, timezone
from typing import Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Normalize a datetime to aware UTC; naive values are taken as UTC"""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def get_zone(name: Optional[str]):
    try:
        return ZoneInfo(name or "UTC")
    except (ZoneInfoNotFoundError, ValueError):
        return timezone.utc


def day_window(start, end, tz_name: Optional[str] = None) -> tuple[datetime, datetime]:
    """Expand dates to [start-of-day, end-of-day] in the given zone, as UTC datetimes.

    Datetimes pass through unchanged apart from UTC normalization.
    """
    zone = get_zone(tz_name)
    if isinstance(start, datetime):
        window_start = as_utc(start)
    else:
        window_start = datetime.combine(start, time.min, tzinfo=zone).astimezone(timezone.utc)
    if isinstance(end, datetime):
        window_end = as_utc(end)
    else:
        window_end = datetime.combine(end, time.max, tzinfo=zone).astimezone(timezone.utc)
    return window_start, window_end


def coerce_datetime(value) -> datetime:
    """Turn an all-day date into midnight UTC; datetimes become aware UTC"""
    if isinstance(value, datetime):
        return as_utc(value)
    if isinstance(value, date):
        return datetime.combine(value, time.min, tzinfo=timezone.utc)
    raise ValueError(f"Unsupported date value: {value!r}")


_FRACTION = re.compile(r"(\.\d{6})\d+")


def parse_iso_datetime(value: str) -> datetime:
    """Parse provider ISO-8601 strings ('Z' suffix, 7-digit Graph fractions); naive means UTC"""
    text = _FRACTION.sub(r"\1", value.strip())
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    return as_utc(datetime.fromisoformat(text))


def isoformat_z(value: datetime) -> str:
    """RFC 3339 UTC timestamp as Google and Graph query parameters expect"""
    return as_utc(value).strftime("%Y-%m-%dT%H:%M:%SZ")
