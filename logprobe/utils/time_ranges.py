"""Duration and timestamp parsing shared by the investigation tools."""

from datetime import datetime, timedelta, timezone
from typing import Any, Iterable, Optional

from logprobe.exceptions import InvalidInputError


def parse_duration(value: str) -> timedelta:
    """
    Parse a short duration such as "15m", "1h" or "1d".

    Raises:
        InvalidInputError: If the value is not <int><s|m|h|d>
    """
    if not value or len(value) < 2 or not value[:-1].isdigit():
        raise InvalidInputError(f"Invalid duration '{value}': expected e.g. 15m, 1h, 1d")

    amount = int(value[:-1])
    unit = value[-1]

    if unit == "s":
        return timedelta(seconds=amount)
    if unit == "m":
        return timedelta(minutes=amount)
    if unit == "h":
        return timedelta(hours=amount)
    if unit == "d":
        return timedelta(days=amount)
    raise InvalidInputError(f"Invalid duration unit in '{value}': use s, m, h or d")


def parse_choice_duration(value: str, allowed: Iterable[str], name: str) -> timedelta:
    """Parse a duration that must be one of an allowed set of values."""
    allowed = list(allowed)
    if value not in allowed:
        raise InvalidInputError(
            f"Invalid {name} '{value}': must be one of {', '.join(allowed)}"
        )
    return parse_duration(value)


def parse_timestamp(value: Any) -> Optional[datetime]:
    """
    Parse an event timestamp into an aware UTC datetime.

    Accepts datetimes, ISO-8601 strings (with or without a trailing Z) and
    epoch milliseconds. Returns None when the value cannot be parsed.
    """
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    if isinstance(value, (int, float)):
        return datetime.fromtimestamp(value / 1000.0, tz=timezone.utc)

    text = str(value).strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError:
        return None
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)


def parse_incident_time(value: str) -> datetime:
    """Parse a caller-supplied RFC3339 timestamp, rejecting malformed input."""
    parsed = parse_timestamp(value) if isinstance(value, str) else None
    if parsed is None:
        raise InvalidInputError(
            f"Invalid incident_time '{value}': expected RFC3339, e.g. 2026-01-20T10:15:00Z"
        )
    return parsed


def format_timestamp(value: datetime) -> str:
    """Format an aware datetime as RFC3339 with a Z suffix."""
    return value.astimezone(timezone.utc).isoformat().replace("+00:00", "Z")


def utc_now() -> datetime:
    return datetime.now(timezone.utc)
