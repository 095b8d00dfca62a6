"""Field access helpers for flattened (or nested ECS) log events."""

from datetime import datetime
from typing import Any, Dict, List, Optional

from logprobe.utils.time_ranges import parse_timestamp

# Severity ranking shared by clustering, flow tracing and query correction.
LEVEL_RANKS = {
    "trace": 1,
    "verbose": 1,
    "debug": 2,
    "info": 3,
    "notice": 3,
    "warn": 4,
    "warning": 4,
    "error": 5,
    "err": 5,
    "critical": 6,
    "crit": 6,
    "fatal": 6,
    "alert": 6,
    "emergency": 6,
}

ERROR_RANK = LEVEL_RANKS["error"]

ERROR_LEVELS = ("error", "critical", "fatal")
WARN_AND_ABOVE_LEVELS = ("warn", "warning", "error", "critical", "fatal")
CRITICAL_LEVELS = ("critical", "fatal")


def get_field(event: Dict[str, Any], key: str) -> Any:
    """
    Read a dotted field from an event.

    ES|QL rows are flat ({"service.name": ...}) while _source documents are
    nested ({"service": {"name": ...}}); both shapes are supported.
    """
    if key in event:
        return event[key]

    current: Any = event
    for part in key.split("."):
        if not isinstance(current, dict) or part not in current:
            return None
        current = current[part]
    return current


def first_field(event: Dict[str, Any], *keys: str) -> Any:
    """Return the first non-empty value among several candidate fields."""
    for key in keys:
        value = get_field(event, key)
        if value not in (None, ""):
            return value
    return None


def event_message(event: Dict[str, Any]) -> str:
    value = first_field(event, "message", "event.original", "error.message", "text")
    if isinstance(value, list):
        value = " ".join(str(v) for v in value)
    return str(value) if value is not None else ""


def event_service(event: Dict[str, Any]) -> str:
    value = first_field(event, "service.name", "service", "app")
    return str(value) if value is not None and not isinstance(value, dict) else ""


def event_level(event: Dict[str, Any]) -> str:
    value = first_field(event, "log.level", "level", "severity")
    return str(value).lower() if value is not None and not isinstance(value, dict) else ""


def event_timestamp(event: Dict[str, Any]) -> Optional[datetime]:
    return parse_timestamp(first_field(event, "@timestamp", "timestamp"))


def event_identity(event: Dict[str, Any]) -> tuple:
    raw_ts = first_field(event, "@timestamp", "timestamp")
    return (str(raw_ts) if raw_ts is not None else "", event_service(event), event_message(event))


def dedupe_events(events: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    """
    Drop repeats of the same log line returned by overlapping queries.

    Events are identified by timestamp, service and message; the first
    occurrence is kept and order is preserved.
    """
    seen = set()
    unique = []
    for event in events:
        identity = event_identity(event)
        if identity in seen:
            continue
        seen.add(identity)
        unique.append(event)
    return unique


def level_rank(level: str) -> int:
    """Numeric rank for a log level; unknown levels rank as info."""
    return LEVEL_RANKS.get((level or "").lower(), LEVEL_RANKS["info"])


def truncate_text(text: str, max_len: int) -> str:
    if len(text) <= max_len:
        return text
    return text[: max_len - 3] + "..."
