"""
Before/after log delta analysis.

Clusters a baseline window and an incident window, then classifies each
template as new, disappeared, spiking or stable. Root-cause tags of the new
and spiking templates are tallied into up to three causal hypotheses.

The baseline window ends one window-length before the incident so that the
run-up to the incident does not leak into it:

    before: [incident - 2w, incident - w]
    after:  [incident, incident + w]
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional, Dict, Any, List

import structlog

from logprobe.analysis.cluster_cache import ClusterCache, cluster_logs_with_cache
from logprobe.analysis.clustering import UNKNOWN_CAUSE, LogCluster
from logprobe.exceptions import InvalidInputError, RemoteQueryError
from logprobe.tools.query_executor import (
    TIER_ARCHIVE,
    QueryExecutor,
    QueryRequest,
    clean_query_string,
    esql_string,
)
from logprobe.utils.events import CRITICAL_LEVELS, ERROR_LEVELS, WARN_AND_ABOVE_LEVELS, truncate_text
from logprobe.utils.time_ranges import format_timestamp, parse_choice_duration, parse_incident_time

logger = structlog.get_logger()

WINDOW_SIZE_CHOICES = ("5m", "15m", "30m", "1h")

SEVERITY_LEVELS = {
    "warning": WARN_AND_ABOVE_LEVELS,
    "error": ERROR_LEVELS,
    "critical": CRITICAL_LEVELS,
}

MAX_DELTA_EVENTS = 500
SPIKE_RATIO = 2.0
STABLE_RATIO_FLOOR = 0.5
MAX_HYPOTHESES = 3
STRONG_EVIDENCE_COUNT = 10
MODERATE_EVIDENCE_COUNT = 5

REPORT_NEW_LIMIT = 5
REPORT_SPIKING_LIMIT = 5
REPORT_DISAPPEARED_LIMIT = 3

STRENGTH_STRONG = "strong"
STRENGTH_MODERATE = "moderate"
STRENGTH_WEAK = "weak"

CAUSE_DESCRIPTIONS = {
    "MEMORY_PRESSURE": "Memory exhaustion - check container/pod memory limits and for memory leaks",
    "TIMEOUT": "Service timeouts - investigate downstream service latency or network issues",
    "NETWORK_FAILURE": "Network connectivity issues - check network policies, DNS, and service mesh",
    "STORAGE_FAILURE": "Storage issues - verify disk space, IOPS limits, and mount points",
    "AUTH_FAILURE": "Authentication/authorization failures - check credentials, tokens, and RBAC",
    "CODE_BUG": "Application code error - review recent deployments and code changes",
    "RATE_LIMITED": "Rate limiting triggered - check API quotas and client request patterns",
    "DNS_FAILURE": "DNS resolution failures - verify DNS configuration and CoreDNS health",
    "TLS_FAILURE": "TLS/certificate issues - check certificate expiry and trust chains",
    "DATABASE_FAILURE": "Database errors - check connection pools, query performance, and deadlocks",
    "CPU_PRESSURE": "CPU contention - review resource limits and horizontal scaling needs",
    "K8S_ORCHESTRATION": "Kubernetes orchestration issues - check pod scheduling, evictions, and node health",
}

INSUFFICIENT_EVIDENCE = "Insufficient error patterns to determine root cause - consider expanding time window"


@dataclass
class SpikingPattern:
    """A template seen in both windows whose count at least doubled."""
    cluster: LogCluster
    before_count: int
    after_count: int
    ratio: float

    def to_dict(self) -> Dict[str, Any]:
        return {
            "template_id": self.cluster.template_id,
            "template": self.cluster.template,
            "root_cause": self.cluster.root_cause,
            "before_count": self.before_count,
            "after_count": self.after_count,
            "ratio": round(self.ratio, 2),
        }


@dataclass
class CausalHypothesis:
    description: str
    strength: str
    category: str

    def to_dict(self) -> Dict[str, Any]:
        return {"description": self.description, "strength": self.strength, "category": self.category}


@dataclass
class PatternDelta:
    """Template-level differences between two windows."""
    new_patterns: List[LogCluster] = field(default_factory=list)
    disappeared_patterns: List[LogCluster] = field(default_factory=list)
    spiking_patterns: List[SpikingPattern] = field(default_factory=list)
    stable_patterns: List[LogCluster] = field(default_factory=list)


@dataclass
class LogDelta:
    """Result of comparing the windows before and after an incident."""
    incident_time: datetime
    window_size: str
    before_start: datetime
    before_end: datetime
    after_start: datetime
    after_end: datetime
    service: Optional[str] = None
    min_severity: str = "warning"
    before_events: int = 0
    after_events: int = 0
    patterns: PatternDelta = field(default_factory=PatternDelta)
    hypotheses: List[CausalHypothesis] = field(default_factory=list)
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "incident_time": format_timestamp(self.incident_time),
            "window_size": self.window_size,
            "service": self.service,
            "min_severity": self.min_severity,
            "before": {
                "start": format_timestamp(self.before_start),
                "end": format_timestamp(self.before_end),
                "events": self.before_events,
            },
            "after": {
                "start": format_timestamp(self.after_start),
                "end": format_timestamp(self.after_end),
                "events": self.after_events,
            },
            "new_patterns": [c.to_dict() for c in self.patterns.new_patterns],
            "disappeared_patterns": [c.to_dict() for c in self.patterns.disappeared_patterns],
            "spiking_patterns": [s.to_dict() for s in self.patterns.spiking_patterns],
            "stable_patterns": len(self.patterns.stable_patterns),
            "hypotheses": [h.to_dict() for h in self.hypotheses],
            "error": self.error,
        }


def compare_clusters(before: List[LogCluster], after: List[LogCluster]) -> PatternDelta:
    """
    Classify templates by how their counts moved between two windows.

    New patterns are ordered by severity then count, spiking patterns by
    ratio. A template that dropped to half or less is neither spiking nor
    stable.
    """
    before_by_id = {c.template_id: c for c in before}
    after_ids = {c.template_id for c in after}
    delta = PatternDelta()

    for cluster in after:
        previous = before_by_id.get(cluster.template_id)
        if previous is None:
            delta.new_patterns.append(cluster)
            continue
        if previous.count <= 0:
            continue
        ratio = cluster.count / previous.count
        if ratio >= SPIKE_RATIO:
            delta.spiking_patterns.append(SpikingPattern(cluster, previous.count, cluster.count, ratio))
        elif ratio > STABLE_RATIO_FLOOR:
            delta.stable_patterns.append(cluster)

    delta.disappeared_patterns = [c for c in before if c.template_id not in after_ids]
    delta.new_patterns.sort(key=lambda c: (c.severity_rank, c.count), reverse=True)
    delta.spiking_patterns.sort(key=lambda s: s.ratio, reverse=True)
    return delta


def generate_hypotheses(delta: PatternDelta) -> List[CausalHypothesis]:
    """Rank root-cause tags by how many new or spiking events carry them."""
    counts: Dict[str, int] = {}
    for cluster in delta.new_patterns:
        counts[cluster.root_cause] = counts.get(cluster.root_cause, 0) + cluster.count
    for spike in delta.spiking_patterns:
        cause = spike.cluster.root_cause
        counts[cause] = counts.get(cause, 0) + spike.after_count

    ranked = sorted(
        ((cause, count) for cause, count in counts.items() if cause != UNKNOWN_CAUSE),
        key=lambda item: item[1],
        reverse=True,
    )

    hypotheses = []
    for i, (cause, count) in enumerate(ranked[:MAX_HYPOTHESES]):
        if i == 0 and count > STRONG_EVIDENCE_COUNT:
            strength = STRENGTH_STRONG
        elif i == 0 or count > MODERATE_EVIDENCE_COUNT:
            strength = STRENGTH_MODERATE
        else:
            strength = STRENGTH_WEAK
        hypotheses.append(CausalHypothesis(
            description=CAUSE_DESCRIPTIONS.get(cause, f"Unknown issue category: {cause}"),
            strength=strength,
            category=cause,
        ))

    if not hypotheses:
        hypotheses.append(CausalHypothesis(INSUFFICIENT_EVIDENCE, STRENGTH_WEAK, UNKNOWN_CAUSE))
    return hypotheses


def build_delta_query(index_pattern: str, min_severity: str = "warning", service: Optional[str] = None) -> str:
    levels = ", ".join(esql_string(level) for level in SEVERITY_LEVELS[min_severity])
    lines = [
        f"FROM {index_pattern}",
        f"| WHERE log.level IN ({levels})",
    ]
    if service:
        lines.append(f"| WHERE service.name == {esql_string(service)}")
    lines.extend([
        "| KEEP @timestamp, service.name, log.level, message",
        f"| LIMIT {MAX_DELTA_EVENTS}",
    ])
    return "\n".join(lines)


def analyze_log_delta(
    executor: QueryExecutor,
    incident_time: str,
    window_size: str = "15m",
    service: Optional[str] = None,
    min_severity: str = "warning",
    index_pattern: str = "logs-*",
    cache: Optional[ClusterCache] = None,
    tenant_id: Optional[str] = None,
    min_batch_size: int = 10,
    timeout: Optional[float] = None,
) -> LogDelta:
    """
    Compare log templates before and after an incident.

    Args:
        executor: Query executor for the log backend
        incident_time: RFC3339 timestamp of the incident
        window_size: Length of each window (5m, 15m, 30m, 1h)
        service: Optional service filter
        min_severity: Lowest level analyzed (warning, error, critical)
        index_pattern: Log index pattern to search
        cache: Optional cluster cache shared with investigations
        tenant_id: Tenant scope for cache entries
        min_batch_size: Smallest batch worth caching
        timeout: Optional per-query timeout in seconds

    Returns:
        LogDelta. If either window fails, the error is recorded and no
        patterns are compared.

    Raises:
        InvalidInputError: On a malformed timestamp, window or severity
    """
    incident = parse_incident_time(incident_time)
    window = parse_choice_duration(window_size, WINDOW_SIZE_CHOICES, "window_size")
    if min_severity not in SEVERITY_LEVELS:
        raise InvalidInputError(
            f"Invalid min_severity '{min_severity}': expected one of {', '.join(SEVERITY_LEVELS)}"
        )

    delta = LogDelta(
        incident_time=incident,
        window_size=window_size,
        before_start=incident - 2 * window,
        before_end=incident - window,
        after_start=incident,
        after_end=incident + window,
        service=service,
        min_severity=min_severity,
    )
    query = clean_query_string(build_delta_query(index_pattern, min_severity, service))

    windows = {}
    for name, start, end in (
        ("before", delta.before_start, delta.before_end),
        ("after", delta.after_start, delta.after_end),
    ):
        request = QueryRequest(query=query, tier=TIER_ARCHIVE, start=start, end=end, timeout=timeout)
        try:
            windows[name] = executor.execute(request).events
        except RemoteQueryError as e:
            logger.warning("Delta window query failed", window=name, error=str(e))
            delta.error = f"Failed to query '{name}' window: {e}"
            delta.hypotheses = generate_hypotheses(delta.patterns)
            return delta

    delta.before_events = len(windows["before"])
    delta.after_events = len(windows["after"])
    before_clusters = cluster_logs_with_cache(windows["before"], cache, tenant_id, min_batch_size)
    after_clusters = cluster_logs_with_cache(windows["after"], cache, tenant_id, min_batch_size)

    delta.patterns = compare_clusters(list(before_clusters), list(after_clusters))
    delta.hypotheses = generate_hypotheses(delta.patterns)

    logger.info(
        "Analyzed log delta",
        incident=format_timestamp(incident),
        new=len(delta.patterns.new_patterns),
        spiking=len(delta.patterns.spiking_patterns),
        disappeared=len(delta.patterns.disappeared_patterns),
    )
    return delta


def _clock(value: datetime) -> str:
    return value.strftime("%H:%M:%S")


def format_delta_report(delta: LogDelta) -> str:
    """Render a LogDelta as Markdown."""
    lines = [
        "## Log Delta Analysis",
        "",
        f"**Incident Time**: {format_timestamp(delta.incident_time)}",
        f"**Window Size**: {delta.window_size}",
        f"**Service**: {delta.service or 'All'}",
        "",
        "### Time Windows",
        "",
        f"- **Before**: {_clock(delta.before_start)} to {_clock(delta.before_end)} ({delta.before_events} events)",
        f"- **After**: {_clock(delta.after_start)} to {_clock(delta.after_end)} ({delta.after_events} events)",
        "",
    ]

    if delta.error:
        lines.extend([f"**ERROR**: {delta.error}", ""])

    new_patterns = delta.patterns.new_patterns
    if new_patterns:
        lines.extend(["### New Error Patterns", ""])
        for cluster in new_patterns[:REPORT_NEW_LIMIT]:
            lines.append(
                f"- `{truncate_text(cluster.template, 100)}` ({cluster.root_cause}, {cluster.severity}): "
                f"{cluster.count} occurrences"
            )
        if len(new_patterns) > REPORT_NEW_LIMIT:
            lines.append(f"- ... and {len(new_patterns) - REPORT_NEW_LIMIT} more")
        lines.append("")

    spiking = delta.patterns.spiking_patterns
    if spiking:
        lines.extend(["### Spiking Patterns", ""])
        for spike in spiking[:REPORT_SPIKING_LIMIT]:
            lines.append(
                f"- `{truncate_text(spike.cluster.template, 100)}` ({spike.cluster.root_cause}): "
                f"{spike.before_count} -> {spike.after_count} ({spike.ratio:.1f}x increase)"
            )
        if len(spiking) > REPORT_SPIKING_LIMIT:
            lines.append(f"- ... and {len(spiking) - REPORT_SPIKING_LIMIT} more")
        lines.append("")

    disappeared = delta.patterns.disappeared_patterns
    if disappeared:
        lines.extend(["### Disappeared Patterns", ""])
        for cluster in disappeared[:REPORT_DISAPPEARED_LIMIT]:
            lines.append(
                f"- `{truncate_text(cluster.template, 100)}` ({cluster.root_cause}): was {cluster.count} occurrences"
            )
        lines.append("")

    lines.extend(["### Causal Hypotheses", ""])
    for i, hypothesis in enumerate(delta.hypotheses, 1):
        lines.append(f"{i}. **[{hypothesis.strength}]** {hypothesis.description}")

    return "\n".join(lines)
