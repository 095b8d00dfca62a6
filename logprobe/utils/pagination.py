"""
Opaque time cursors for paging through chronological results.

A cursor is URL-safe base64 of a compact JSON document:

    {"t": "time", "ts": "2026-01-20T10:15:00.000000Z", "l": 15, "d": "forward", "o": 0, "q": ""}

`t` is the cursor type, `ts` the last timestamp seen, `l` the page size,
`d` the direction, `o` an offset among rows sharing `ts` and `q` a short hash
of the query the cursor belongs to.
"""

import base64
import binascii
import hashlib
import json
from dataclasses import dataclass
from datetime import datetime, timezone

from logprobe.exceptions import InvalidInputError

CURSOR_TYPE_TIME = "time"
DIRECTION_FORWARD = "forward"
DIRECTION_BACKWARD = "backward"

_TS_FORMAT = "%Y-%m-%dT%H:%M:%S.%fZ"


@dataclass(frozen=True)
class TimeCursor:
    """Position in a time-ordered result set."""
    timestamp: datetime
    limit: int
    direction: str = DIRECTION_FORWARD
    offset: int = 0
    query_hash: str = ""


def query_fingerprint(query: str) -> str:
    """Short stable hash tying a cursor to the query that produced it."""
    return hashlib.sha256(query.encode("utf-8")).hexdigest()[:12]


def encode_cursor(cursor: TimeCursor) -> str:
    """Encode a TimeCursor as an opaque URL-safe string."""
    if cursor.limit < 1:
        raise InvalidInputError("Cursor limit must be positive")
    if cursor.direction not in (DIRECTION_FORWARD, DIRECTION_BACKWARD):
        raise InvalidInputError(f"Invalid cursor direction '{cursor.direction}'")

    ts = cursor.timestamp
    if ts.tzinfo is None:
        ts = ts.replace(tzinfo=timezone.utc)

    payload = {
        "t": CURSOR_TYPE_TIME,
        "ts": ts.astimezone(timezone.utc).strftime(_TS_FORMAT),
        "l": cursor.limit,
        "d": cursor.direction,
        "o": cursor.offset,
        "q": cursor.query_hash,
    }
    raw = json.dumps(payload, separators=(",", ":")).encode("utf-8")
    return base64.urlsafe_b64encode(raw).decode("ascii").rstrip("=")


def decode_cursor(token: str) -> TimeCursor:
    """
    Decode a cursor produced by encode_cursor.

    Raises:
        InvalidInputError: If the token is malformed or not a time cursor
    """
    if not token:
        raise InvalidInputError("Empty cursor")

    padded = token + "=" * (-len(token) % 4)
    try:
        payload = json.loads(base64.urlsafe_b64decode(padded.encode("ascii")))
    except (binascii.Error, UnicodeError, ValueError) as e:
        raise InvalidInputError(f"Malformed cursor: {e}") from e

    if not isinstance(payload, dict) or payload.get("t") != CURSOR_TYPE_TIME:
        raise InvalidInputError("Cursor is not a time cursor")

    try:
        timestamp = datetime.strptime(payload["ts"], _TS_FORMAT).replace(tzinfo=timezone.utc)
        limit = int(payload["l"])
        direction = payload.get("d", DIRECTION_FORWARD)
        offset = int(payload.get("o", 0))
    except (KeyError, TypeError, ValueError) as e:
        raise InvalidInputError(f"Malformed cursor: {e}") from e

    if limit < 1 or direction not in (DIRECTION_FORWARD, DIRECTION_BACKWARD):
        raise InvalidInputError("Malformed cursor: bad limit or direction")

    return TimeCursor(
        timestamp=timestamp,
        limit=limit,
        direction=direction,
        offset=offset,
        query_hash=payload.get("q", ""),
    )
