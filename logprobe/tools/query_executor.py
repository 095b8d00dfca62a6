"""
Query Executor

Runs ES|QL queries against Elasticsearch and flattens the columnar response
into event dicts. This is the only place that talks to the log backend; every
backend failure surfaces as RemoteQueryError.
"""

import re
import time
from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional, Dict, Any, List, Tuple

import structlog
from elasticsearch import ApiError, Elasticsearch, TransportError

from logprobe.exceptions import RemoteQueryError
from logprobe.utils.time_ranges import format_timestamp

logger = structlog.get_logger()

TIER_HOT = "hot"
TIER_ARCHIVE = "archive"

# Data tiers searched per logical tier. Archive searches everything.
TIER_FILTERS = {
    TIER_HOT: ["data_hot", "data_content"],
    TIER_ARCHIVE: None,
}

SYNTAX_ESQL = "esql"
SUPPORTED_SYNTAXES = (SYNTAX_ESQL,)

LEVEL_ALIASES = {
    "err": "error",
    "crit": "critical",
    "dbg": "debug",
    "information": "info",
    "verbose": "trace",
    "1": "trace",
    "2": "debug",
    "3": "info",
    "4": "warn",
    "5": "error",
    "6": "critical",
}

_LEVEL_COMPARISON = re.compile(r'(log\.level\s*(?:==|!=)\s*)"([^"]*)"', re.IGNORECASE)
_LEVEL_IN_LIST = re.compile(r'(log\.level\s+IN\s*\()([^)]*)(\))', re.IGNORECASE)
_QUOTED = re.compile(r'"([^"]*)"')


@dataclass
class QueryRequest:
    """A single query to run against the log backend."""
    query: str
    tier: str = TIER_ARCHIVE
    syntax: str = SYNTAX_ESQL
    start: Optional[datetime] = None
    end: Optional[datetime] = None
    timeout: Optional[float] = None


@dataclass
class QueryResult:
    """Flattened result of one query."""
    events: List[Dict[str, Any]] = field(default_factory=list)
    columns: List[str] = field(default_factory=list)
    took_ms: float = 0.0


def esql_string(value: str) -> str:
    """Quote a value as an ES|QL string literal."""
    escaped = value.replace("\\", "\\\\").replace('"', '\\"')
    return f'"{escaped}"'


def clean_query_string(query: str) -> str:
    """Collapse a multi-line query into one line without touching literals."""
    lines = [line.strip() for line in query.splitlines()]
    return " ".join(line for line in lines if line)


def _normalize_level(value: str) -> str:
    lowered = value.strip().lower()
    return LEVEL_ALIASES.get(lowered, lowered)


def auto_correct_query(query: str) -> Tuple[str, List[str]]:
    """
    Fix common mistakes in generated queries.

    Log levels are stored lowercase, so literals like "ERROR", "ERR" or "5"
    in comparisons against log.level are normalized to their stored form.

    Returns:
        Tuple of (corrected query, list of human-readable corrections)
    """
    corrections: List[str] = []

    def fix_comparison(match: "re.Match") -> str:
        original = match.group(2)
        fixed = _normalize_level(original)
        if fixed != original:
            corrections.append(f'log.level "{original}" -> "{fixed}"')
        return f'{match.group(1)}"{fixed}"'

    def fix_in_list(match: "re.Match") -> str:
        values = _QUOTED.findall(match.group(2))
        if not values:
            return match.group(0)
        fixed_values: List[str] = []
        for original in values:
            fixed = _normalize_level(original)
            if fixed != original:
                corrections.append(f'log.level "{original}" -> "{fixed}"')
            if fixed not in fixed_values:
                fixed_values.append(fixed)
        joined = ", ".join(f'"{v}"' for v in fixed_values)
        return f"{match.group(1)}{joined}{match.group(3)}"

    corrected = _LEVEL_COMPARISON.sub(fix_comparison, query)
    corrected = _LEVEL_IN_LIST.sub(fix_in_list, corrected)
    return corrected, corrections


def build_filter(request: QueryRequest) -> Optional[Dict[str, Any]]:
    """Build the Query DSL filter applied alongside the ES|QL text."""
    clauses: List[Dict[str, Any]] = []

    if request.start or request.end:
        time_range: Dict[str, str] = {}
        if request.start:
            time_range["gte"] = format_timestamp(request.start)
        if request.end:
            time_range["lte"] = format_timestamp(request.end)
        clauses.append({"range": {"@timestamp": time_range}})

    tiers = TIER_FILTERS.get(request.tier)
    if tiers:
        clauses.append({"terms": {"_tier": tiers}})

    if not clauses:
        return None
    return {"bool": {"filter": clauses}}


def flatten_esql_response(response: Any) -> Tuple[List[str], List[Dict[str, Any]]]:
    """Turn an ES|QL columns/values response into a list of row dicts."""
    body = getattr(response, "body", response)
    columns = [col["name"] for col in body.get("columns", [])]
    events = [dict(zip(columns, row)) for row in body.get("values", [])]
    return columns, events


class QueryExecutor:
    """
    Executes queries against Elasticsearch.

    Thread-safe as long as the underlying client is; the orchestrator calls
    execute() from a worker thread.
    """

    def __init__(self, client: Elasticsearch):
        self.client = client

    def execute(self, request: QueryRequest) -> QueryResult:
        """
        Run one query.

        Raises:
            RemoteQueryError: On unsupported syntax, API rejection or transport failure
        """
        if request.syntax not in SUPPORTED_SYNTAXES:
            raise RemoteQueryError(f"Unsupported query syntax '{request.syntax}'")
        if request.tier not in TIER_FILTERS:
            raise RemoteQueryError(f"Unknown storage tier '{request.tier}'")

        kwargs: Dict[str, Any] = {"query": request.query}
        query_filter = build_filter(request)
        if query_filter:
            kwargs["filter"] = query_filter

        client = self.client
        if request.timeout is not None:
            client = client.options(request_timeout=request.timeout)

        start = time.monotonic()
        try:
            response = client.esql.query(**kwargs)
        except ApiError as e:
            status = getattr(getattr(e, "meta", None), "status", None)
            logger.warning("Query rejected", status=status, error=str(e))
            raise RemoteQueryError(f"Query rejected by Elasticsearch: {e}", status_code=status) from e
        except TransportError as e:
            logger.warning("Query transport failure", error=str(e))
            raise RemoteQueryError(f"Elasticsearch unreachable: {e}") from e

        columns, events = flatten_esql_response(response)
        took_ms = (time.monotonic() - start) * 1000
        logger.info("Query executed", tier=request.tier, events=len(events), took_ms=round(took_ms, 1))
        return QueryResult(events=events, columns=columns, took_ms=took_ms)
