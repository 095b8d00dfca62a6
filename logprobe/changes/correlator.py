"""
Change Correlator

Correlates an incident timestamp with configuration, deployment, IAM and
infrastructure changes recorded in the logs. Each change-shaped event is
classified against the PatternRegistry, assigned a risk tier and scored by
temporal proximity to the incident. The best-scoring change before the
incident is reported as the likely trigger.
"""

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Optional, Dict, Any, List

import structlog

from logprobe.changes.patterns import (
    RISK_CRITICAL,
    RISK_HIGH,
    PatternRegistry,
)
from logprobe.exceptions import InvalidInputError, RemoteQueryError
from logprobe.tools.query_executor import (
    TIER_ARCHIVE,
    QueryExecutor,
    QueryRequest,
    clean_query_string,
    esql_string,
)
from logprobe.utils.events import event_service, event_timestamp, first_field, truncate_text
from logprobe.utils.pagination import (
    DIRECTION_FORWARD,
    TimeCursor,
    decode_cursor,
    encode_cursor,
    query_fingerprint,
)
from logprobe.utils.time_ranges import format_timestamp, parse_choice_duration, parse_incident_time

logger = structlog.get_logger()

WINDOW_BEFORE_CHOICES = ("5m", "15m", "30m", "1h", "2h", "6h")
WINDOW_AFTER_CHOICES = ("5m", "15m", "30m")

POST_INCIDENT_SCORE = 0.3
MAX_DESCRIPTION_LENGTH = 200
TIMELINE_PAGE_SIZE = 15
MAX_CHANGE_EVENTS = 500
FOCUSED_CHANGE_COUNT = 5

# Keywords for the broad pre-filter query. Classification happens locally.
CHANGE_QUERY_KEYWORDS = [
    "deploy", "release", "rollout", "rollback", "config", "configuration",
    "setting", "iam", "rbac", "permission", "role", "scale", "autoscale",
    "replica", "secret", "certificate", "credential", "migration", "schema",
    "database", "terraform", "infrastructure", "policy", "feature flag",
    "toggle", "enabled", "disabled", "updated", "changed", "created",
    "deleted", "modified",
]

CATEGORY_LABELS = {
    "DEPLOYMENT": "Deployment",
    "CONFIG": "Configuration Change",
    "FEATURE_FLAG": "Feature Flag Change",
    "NETWORK_POLICY": "Network Policy Change",
    "SECRET": "Secret/Certificate Change",
    "IAM": "IAM/Permission Change",
    "SCALING": "Scaling Event",
    "DATABASE": "Database Change",
    "INFRASTRUCTURE": "Infrastructure Change",
}

CATEGORY_ADVICE = {
    "DEPLOYMENT": "Compare error rates before and after the rollout and roll back the release if the regression is confirmed.",
    "CONFIG": "Diff the configuration against the last known-good version and revert the changed keys.",
    "FEATURE_FLAG": "Disable the flag for affected cohorts and confirm whether errors subside.",
    "NETWORK_POLICY": "Check that the new rules still allow traffic between dependent services and revert if connections are being dropped.",
    "SECRET": "Verify that consumers picked up the rotated secret or certificate and that the old one was not revoked early.",
    "IAM": "Review the permission change for removed grants used by the failing service and restore access if needed.",
    "SCALING": "Check whether the new capacity is healthy and whether downstream dependencies can absorb the change in load.",
    "DATABASE": "Inspect the migration or schema change for locking and slow queries and prepare a rollback plan.",
    "INFRASTRUCTURE": "Review the infrastructure plan that was applied and check node and network health in the affected zone.",
}

GENERIC_ADVICE = "Review the change details and its blast radius, and revert it if the incident lines up with it."

NO_CHANGES_RECOMMENDATION = (
    "No configuration changes detected in the time window. Consider expanding the "
    "search window or investigating other potential causes (resource exhaustion, "
    "external dependencies, traffic spikes)."
)


@dataclass
class ConfigChange:
    """One change event, scored against a single incident instant."""
    timestamp: datetime
    change_type: str
    description: str
    risk_level: str
    correlation_score: float
    service: Optional[str] = None
    user: Optional[str] = None
    resource: Optional[str] = None
    after_incident: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "timestamp": format_timestamp(self.timestamp),
            "change_type": self.change_type,
            "description": self.description,
            "risk_level": self.risk_level,
            "correlation_score": round(self.correlation_score, 3),
            "service": self.service,
            "user": self.user,
            "resource": self.resource,
            "after_incident": self.after_incident,
        }


@dataclass
class ChangeAnalysis:
    """Result of correlating one incident with the surrounding changes."""
    incident_time: datetime
    window_start: datetime
    window_end: datetime
    total_changes: int = 0
    high_risk_changes: int = 0
    changes: List[ConfigChange] = field(default_factory=list)
    timeline: List[ConfigChange] = field(default_factory=list)
    remaining_changes: int = 0
    likely_trigger: Optional[ConfigChange] = None
    correlation_score: float = 0.0
    recommendation: str = ""
    next_cursor: Optional[str] = None
    query: str = ""
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "incident_time": format_timestamp(self.incident_time),
            "window": {
                "start": format_timestamp(self.window_start),
                "end": format_timestamp(self.window_end),
            },
            "total_changes": self.total_changes,
            "high_risk_changes": self.high_risk_changes,
            "likely_trigger": self.likely_trigger.to_dict() if self.likely_trigger else None,
            "correlation_score": round(self.correlation_score, 3),
            "recommendation": self.recommendation,
            "timeline": [c.to_dict() for c in self.timeline],
            "remaining_changes": self.remaining_changes,
            "next_cursor": self.next_cursor,
            "error": self.error,
        }


def correlation_score(change_time: datetime, incident_time: datetime, window_before: timedelta) -> float:
    """
    Score how plausibly a change caused the incident.

    Changes after the incident get a flat 0.3: they are more likely a
    response than a cause. Earlier changes decay hyperbolically with a
    half-life of a quarter of the lookback window.
    """
    if change_time > incident_time:
        return POST_INCIDENT_SCORE

    half_life = window_before.total_seconds() / 4
    if half_life <= 0:
        return 1.0
    delta = (incident_time - change_time).total_seconds()
    return 1.0 / (1.0 + delta / half_life)


def build_change_query(index_pattern: str, service: Optional[str] = None) -> str:
    """ES|QL query selecting change-shaped log lines."""
    keyword_clause = " OR ".join(
        f"TO_LOWER(message) LIKE {esql_string('*' + keyword + '*')}"
        for keyword in CHANGE_QUERY_KEYWORDS
    )
    lines = [
        f"FROM {index_pattern}",
        f"| WHERE {keyword_clause}",
    ]
    if service:
        lines.append(f"| WHERE service.name == {esql_string(service)}")
    lines.extend([
        "| SORT @timestamp ASC",
        f"| LIMIT {MAX_CHANGE_EVENTS}",
    ])
    return "\n".join(lines)


def _change_message(event: Dict[str, Any]) -> str:
    value = first_field(event, "message", "event.original", "text")
    return str(value) if value is not None else ""


def _optional_str(value: Any) -> Optional[str]:
    if value is None or isinstance(value, (dict, list)):
        return None
    return str(value)


def extract_changes(
    events: List[Dict[str, Any]],
    registry: PatternRegistry,
    incident_time: datetime,
    window_before: timedelta,
    change_types: Optional[List[str]] = None,
) -> List[ConfigChange]:
    """Classify and score change-shaped events, keeping chronological order."""
    wanted = {t.upper() for t in change_types} if change_types else None
    changes = []

    for event in events:
        message = _change_message(event)
        if not message:
            continue
        change_type = registry.detect_change_type(message)
        if change_type is None:
            continue
        if wanted is not None and change_type not in wanted:
            continue
        timestamp = event_timestamp(event)
        if timestamp is None:
            continue

        changes.append(ConfigChange(
            timestamp=timestamp,
            change_type=change_type,
            description=truncate_text(message, MAX_DESCRIPTION_LENGTH),
            risk_level=registry.assess_risk_level(message),
            correlation_score=correlation_score(timestamp, incident_time, window_before),
            service=event_service(event) or None,
            user=_optional_str(first_field(event, "user.name", "user", "actor", "principal")),
            resource=_optional_str(first_field(event, "resource", "labels.resource")),
            after_incident=timestamp > incident_time,
        ))

    changes.sort(key=lambda c: c.timestamp)
    return changes


def find_likely_trigger(changes: List[ConfigChange]) -> Optional[ConfigChange]:
    """Highest-scoring change at or before the incident; earliest wins ties."""
    trigger = None
    for change in changes:
        if change.after_incident:
            continue
        if trigger is None or change.correlation_score > trigger.correlation_score:
            trigger = change
    return trigger


def overall_correlation(changes: List[ConfigChange], trigger: Optional[ConfigChange]) -> float:
    if not changes:
        return 0.0
    score = 0.0
    if any(c.risk_level in (RISK_CRITICAL, RISK_HIGH) for c in changes):
        score += 0.3
    if trigger is not None:
        score += 0.5 * trigger.correlation_score
    if len(changes) <= FOCUSED_CHANGE_COUNT:
        score += 0.2
    return min(score, 1.0)


def build_recommendation(
    changes: List[ConfigChange],
    trigger: Optional[ConfigChange],
    high_risk: int,
) -> str:
    if not changes:
        return NO_CHANGES_RECOMMENDATION

    if trigger is not None:
        label = CATEGORY_LABELS.get(trigger.change_type, "Change")
        advice = CATEGORY_ADVICE.get(trigger.change_type, GENERIC_ADVICE)
        return (
            f"**Likely Trigger: {label}** at {trigger.timestamp.strftime('%H:%M:%S')}. "
            f"Recommend: {advice}"
        )

    if high_risk:
        return (
            f"Found {high_risk} high-risk changes in the window, all after the incident started. "
            "Review them as possible responses or aggravating factors."
        )

    return (
        f"Found {len(changes)} changes in the window. No single likely trigger identified; "
        "review the timeline chronologically starting closest to the incident."
    )


def analyze_changes(
    events: List[Dict[str, Any]],
    registry: PatternRegistry,
    incident_time: datetime,
    window_before: timedelta,
    window_after: timedelta,
    change_types: Optional[List[str]] = None,
) -> ChangeAnalysis:
    """Build a ChangeAnalysis from already-fetched events."""
    changes = extract_changes(events, registry, incident_time, window_before, change_types)
    trigger = find_likely_trigger(changes)
    high_risk = sum(1 for c in changes if c.risk_level in (RISK_CRITICAL, RISK_HIGH))

    return ChangeAnalysis(
        incident_time=incident_time,
        window_start=incident_time - window_before,
        window_end=incident_time + window_after,
        total_changes=len(changes),
        high_risk_changes=high_risk,
        changes=changes,
        likely_trigger=trigger,
        correlation_score=overall_correlation(changes, trigger),
        recommendation=build_recommendation(changes, trigger, high_risk),
    )


def paginate_timeline(
    analysis: ChangeAnalysis,
    cursor: Optional[TimeCursor] = None,
    page_size: int = TIMELINE_PAGE_SIZE,
):
    """Fill analysis.timeline with one page of changes and set next_cursor."""
    changes = analysis.changes
    start = 0
    limit = page_size

    if cursor is not None:
        limit = cursor.limit
        # Skip everything before the cursor, then `offset` rows at its timestamp.
        while start < len(changes) and changes[start].timestamp < cursor.timestamp:
            start += 1
        skipped = 0
        while (
            start < len(changes)
            and changes[start].timestamp == cursor.timestamp
            and skipped < cursor.offset
        ):
            start += 1
            skipped += 1

    page = changes[start:start + limit]
    remaining = len(changes) - start - len(page)
    analysis.timeline = page
    analysis.remaining_changes = remaining
    analysis.next_cursor = None

    if remaining > 0 and page:
        last_ts = page[-1].timestamp
        # Rows sharing the last timestamp that were already shown.
        offset = sum(1 for c in changes[:start + len(page)] if c.timestamp == last_ts)
        analysis.next_cursor = encode_cursor(TimeCursor(
            timestamp=last_ts,
            limit=limit,
            direction=DIRECTION_FORWARD,
            offset=offset,
            query_hash=query_fingerprint(analysis.query),
        ))


def correlate_changes(
    executor: QueryExecutor,
    registry: PatternRegistry,
    incident_time: str,
    window_before: str = "1h",
    window_after: str = "15m",
    service: Optional[str] = None,
    change_types: Optional[List[str]] = None,
    cursor: Optional[str] = None,
    index_pattern: str = "logs-*",
    timeout: Optional[float] = None,
) -> ChangeAnalysis:
    """
    Correlate an incident with the changes around it.

    Args:
        executor: Query executor for the log backend
        registry: Pattern registry used for classification
        incident_time: RFC3339 timestamp of the incident
        window_before: Lookback window (5m, 15m, 30m, 1h, 2h, 6h)
        window_after: Look-ahead window (5m, 15m, 30m)
        service: Optional service filter
        change_types: Optional list of categories to keep
        cursor: Cursor from a previous call's next_cursor, to page the timeline
        index_pattern: Log index pattern to search
        timeout: Optional per-call timeout in seconds

    Returns:
        ChangeAnalysis. Backend failures are recorded on .error, not raised.

    Raises:
        InvalidInputError: On a malformed timestamp, window or cursor
    """
    incident = parse_incident_time(incident_time)
    before = parse_choice_duration(window_before, WINDOW_BEFORE_CHOICES, "window_before")
    after = parse_choice_duration(window_after, WINDOW_AFTER_CHOICES, "window_after")

    query = build_change_query(index_pattern, service)
    decoded_cursor = decode_cursor(cursor) if cursor else None
    if decoded_cursor is not None and decoded_cursor.query_hash not in ("", query_fingerprint(query)):
        raise InvalidInputError("Cursor does not belong to this change query")

    request = QueryRequest(
        query=clean_query_string(query),
        tier=TIER_ARCHIVE,
        start=incident - before,
        end=incident + after,
        timeout=timeout,
    )

    try:
        result = executor.execute(request)
        events = result.events
        error = None
    except RemoteQueryError as e:
        logger.warning("Change query failed", error=str(e))
        events = []
        error = str(e)

    analysis = analyze_changes(events, registry, incident, before, after, change_types)
    analysis.query = query
    analysis.error = error
    paginate_timeline(analysis, decoded_cursor)

    logger.info(
        "Correlated changes",
        incident=format_timestamp(incident),
        total=analysis.total_changes,
        high_risk=analysis.high_risk_changes,
        trigger=analysis.likely_trigger.change_type if analysis.likely_trigger else None,
    )
    return analysis


def format_change_report(analysis: ChangeAnalysis) -> str:
    """Render a ChangeAnalysis as Markdown."""
    lines = [
        "## Change Correlation Report",
        "",
        f"**Incident Time**: {format_timestamp(analysis.incident_time)}",
        f"**Window**: {format_timestamp(analysis.window_start)} to {format_timestamp(analysis.window_end)}",
        f"**Total Changes**: {analysis.total_changes}",
        f"**High-Risk Changes**: {analysis.high_risk_changes}",
        f"**Correlation Confidence**: {analysis.correlation_score * 100:.0f}%",
        "",
    ]

    if analysis.error:
        lines.extend([f"**ERROR**: {analysis.error}", ""])

    trigger = analysis.likely_trigger
    if trigger is not None:
        lines.extend([
            "### Likely Trigger",
            "",
            f"- **Type**: {trigger.change_type}",
            f"- **Time**: {format_timestamp(trigger.timestamp)}",
            f"- **Risk**: {trigger.risk_level}",
            f"- **Correlation**: {trigger.correlation_score * 100:.0f}%",
        ])
        if trigger.service:
            lines.append(f"- **Service**: {trigger.service}")
        if trigger.user:
            lines.append(f"- **User**: {trigger.user}")
        lines.extend([f"- **Description**: {trigger.description}", ""])

    lines.extend(["### Recommendation", "", analysis.recommendation, ""])

    if analysis.timeline:
        lines.extend([
            "### Change Timeline",
            "",
            "| Time | Type | Risk | Score | Service | Description |",
            "|------|------|------|-------|---------|-------------|",
        ])
        for change in analysis.timeline:
            marker = " (after)" if change.after_incident else ""
            description = truncate_text(change.description, 60).replace("|", "\\|")
            lines.append(
                f"| {change.timestamp.strftime('%H:%M:%S')}{marker} | {change.change_type} | "
                f"{change.risk_level} | {change.correlation_score * 100:.0f}% | "
                f"{change.service or '-'} | {description} |"
            )
        if analysis.remaining_changes:
            lines.extend(["", f"_({analysis.remaining_changes} more changes)_"])
        if analysis.next_cursor:
            lines.append(f"_Next page cursor: `{analysis.next_cursor}`_")

    return "\n".join(lines)
