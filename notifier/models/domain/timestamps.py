"""
Timestamp normalisation for stored documents.

Documents written by different clients carry times as epoch milliseconds,
as {seconds, nanoseconds} pairs (with or without leading underscores), as
ISO-8601 strings, or as datetimes. Everything is converted to integer epoch
milliseconds before business logic sees it.
"""

from datetime import UTC, datetime, timedelta, tzinfo
from typing import Annotated, Any

from pydantic import BeforeValidator

MS_PER_MINUTE = 60 * 1000
MS_PER_HOUR = 60 * MS_PER_MINUTE
MS_PER_DAY = 24 * MS_PER_HOUR


def _pair_value(value: dict, name: str) -> Any:
    if name in value:
        return value[name]
    return value.get(f"_{name}")


def to_millis(value: Any) -> int | None:
    """Normalise a timestamp-like value to epoch milliseconds, or None."""
    if value is None or isinstance(value, bool):
        return None

    if isinstance(value, int | float):
        return int(value)

    if isinstance(value, datetime):
        if value.tzinfo is None:
            value = value.replace(tzinfo=UTC)
        return int(value.timestamp() * 1000)

    if isinstance(value, dict):
        seconds = _pair_value(value, "seconds")
        if not isinstance(seconds, int | float) or isinstance(seconds, bool):
            return None
        nanoseconds = _pair_value(value, "nanoseconds") or 0
        return int(seconds * 1000) + int(nanoseconds // 1_000_000)

    if isinstance(value, str):
        try:
            parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
        except ValueError:
            return None
        return to_millis(parsed)

    return None


EpochMillis = Annotated[int | None, BeforeValidator(to_millis)]


def now_millis(now: datetime) -> int:
    return int(now.timestamp() * 1000)


def from_millis(ms: int, tz: tzinfo) -> datetime:
    return datetime.fromtimestamp(ms / 1000, tz=tz)


def start_of_day(now: datetime) -> datetime:
    return now.replace(hour=0, minute=0, second=0, microsecond=0)


def start_of_week(now: datetime) -> datetime:
    """Most recent Sunday at 00:00 in now's timezone."""
    days_from_sunday = (now.weekday() + 1) % 7
    return start_of_day(now) - timedelta(days=days_from_sunday)
