"""
Query Strategies

Each investigation mode has its own policy for what to query, how to read the
results and what to conclude:

- global:    system-wide scan (error rate by service, error timeline, critical sample)
- component: deep dive into one service (errors, patterns, subsystems, dependencies)
- flow:      follows a single request across services by trace or correlation id

All three satisfy the QueryStrategy protocol and are chosen by create_strategy().
"""

from typing import Optional, Dict, Any, List, Protocol

from logprobe.agent.models import (
    ActionKind,
    AnalysisThresholds,
    EvidenceSummary,
    ExecutedQuery,
    Finding,
    FindingKind,
    InvestigationContext,
    InvestigationMode,
    NextAction,
    QueryPlan,
    Severity,
    distinct_services,
    sort_findings,
)
from logprobe.analysis.cluster_cache import DEFAULT_MIN_BATCH_SIZE, ClusterCache, cluster_logs_with_cache
from logprobe.changes.correlator import build_change_query
from logprobe.exceptions import InvalidInputError
from logprobe.tools.query_executor import TIER_ARCHIVE, esql_string
from logprobe.utils.events import (
    CRITICAL_LEVELS,
    ERROR_LEVELS,
    ERROR_RANK,
    WARN_AND_ABOVE_LEVELS,
    event_level,
    event_message,
    event_service,
    event_timestamp,
    get_field,
    level_rank,
    truncate_text,
)
from logprobe.utils.time_ranges import parse_timestamp

# Keyword -> what it usually means when a service logs it.
DEPENDENCY_PATTERNS = {
    "connection refused": "Network/service connectivity failure",
    "timeout": "Downstream service not responding",
    "econnreset": "Connection reset by peer",
    "etimedout": "Connection timed out",
    "pool exhausted": "Connection pool exhaustion",
    "deadlock": "Database deadlock detected",
    "too many connections": "Connection limit exceeded",
}

RESOURCE_CAUSES = {
    "MEMORY_PRESSURE": "memory",
    "CPU_PRESSURE": "cpu",
    "STORAGE_FAILURE": "storage",
}

NO_ISSUES_GLOBAL_CONFIDENCE = 0.7
NO_ISSUES_SCOPED_CONFIDENCE = 0.6


class QueryStrategy(Protocol):
    """Contract every investigation mode implements."""
    mode: InvestigationMode

    def initial_queries(self, ctx: InvestigationContext) -> List[QueryPlan]:
        ...

    def analyze_results(self, ctx: InvestigationContext, executed: List[ExecutedQuery]) -> List[Finding]:
        ...

    def suggest_next_actions(self, ctx: InvestigationContext) -> List[NextAction]:
        ...

    def synthesize_evidence(self, ctx: InvestigationContext) -> EvidenceSummary:
        ...


def _levels(levels) -> str:
    return ", ".join(esql_string(level) for level in levels)


def service_errors_query(index_pattern: str, service: str, limit: int = 200) -> str:
    return "\n".join([
        f"FROM {index_pattern}",
        f"| WHERE service.name == {esql_string(service)} AND log.level IN ({_levels(ERROR_LEVELS)})",
        "| KEEP @timestamp, service.name, log.level, message",
        "| SORT @timestamp DESC",
        f"| LIMIT {limit}",
    ])


def _priority_findings(findings: List[Finding]) -> List[Finding]:
    """Critical/high findings if there are any, otherwise everything."""
    urgent = [f for f in findings if f.severity in (Severity.CRITICAL, Severity.HIGH)]
    return urgent or list(findings)


def _root_cause_sentence(findings: List[Finding]) -> str:
    """Phrase a root cause from a group of findings, preferring dependencies."""
    for finding in findings:
        if finding.kind == FindingKind.DEPENDENCY:
            return f"Dependency failure: {finding.summary}"
    for finding in findings:
        if finding.kind in (FindingKind.ERROR, FindingKind.SPIKE):
            return f"Error pattern: {finding.summary}"
    for finding in findings:
        if finding.kind == FindingKind.LATENCY:
            return f"Performance degradation: {finding.summary}"
    return findings[0].summary


def _results_for(executed: List[ExecutedQuery], plan_id: str) -> List[Dict[str, Any]]:
    for query in executed:
        if query.plan_id == plan_id and query.succeeded:
            return query.events
    return []


def _as_int(value: Any) -> int:
    try:
        return int(value)
    except (TypeError, ValueError):
        return 0


class GlobalStrategy:
    """System-wide scan: which services are failing and when did it start."""

    mode = InvestigationMode.GLOBAL

    def __init__(
        self,
        thresholds: Optional[AnalysisThresholds] = None,
        cache: Optional[ClusterCache] = None,
        min_batch_size: int = DEFAULT_MIN_BATCH_SIZE,
    ):
        self.thresholds = thresholds or AnalysisThresholds()
        self.cache = cache
        self.min_batch_size = min_batch_size

    def initial_queries(self, ctx: InvestigationContext) -> List[QueryPlan]:
        index = ctx.index_pattern
        return [
            QueryPlan(
                id="global-error-rate",
                purpose="Error count by service",
                query="\n".join([
                    f"FROM {index}",
                    f"| WHERE log.level IN ({_levels(ERROR_LEVELS)})",
                    "| STATS error_count = COUNT(*) BY service.name",
                    "| SORT error_count DESC",
                    "| LIMIT 20",
                ]),
                tier=TIER_ARCHIVE,
            ),
            QueryPlan(
                id="global-error-timeline",
                purpose="Error timeline in 5 minute buckets",
                query="\n".join([
                    f"FROM {index}",
                    f"| WHERE log.level IN ({_levels(WARN_AND_ABOVE_LEVELS)})",
                    "| EVAL time_bucket = DATE_TRUNC(5 minutes, @timestamp)",
                    "| STATS errors = COUNT(*) BY time_bucket",
                    "| SORT time_bucket ASC",
                ]),
                tier=TIER_ARCHIVE,
            ),
            QueryPlan(
                id="global-critical-errors",
                purpose="Sample of critical events",
                query="\n".join([
                    f"FROM {index}",
                    f"| WHERE log.level IN ({_levels(CRITICAL_LEVELS)})",
                    "| KEEP @timestamp, service.name, log.level, message",
                    "| SORT @timestamp DESC",
                    "| LIMIT 50",
                ]),
                tier=TIER_ARCHIVE,
            ),
        ]

    def analyze_results(self, ctx: InvestigationContext, executed: List[ExecutedQuery]) -> List[Finding]:
        findings: List[Finding] = []
        findings.extend(self._analyze_error_rate(_results_for(executed, "global-error-rate")))
        findings.extend(self._analyze_timeline(_results_for(executed, "global-error-timeline")))
        findings.extend(self._analyze_critical(ctx, _results_for(executed, "global-critical-errors")))
        return findings

    def _analyze_error_rate(self, rows: List[Dict[str, Any]]) -> List[Finding]:
        findings = []
        for row in rows:
            service = get_field(row, "service.name")
            count = _as_int(row.get("error_count"))
            if not service or count <= self.thresholds.error_count:
                continue
            findings.append(Finding(
                kind=FindingKind.ERROR,
                severity=self.thresholds.severity_for_count(count),
                summary=f"High error volume: {count} errors in time window",
                evidence=f"{service}: {count} errors",
                service=str(service),
                confidence=0.9,
                query_id="global-error-rate",
            ))
        return findings

    def _analyze_timeline(self, rows: List[Dict[str, Any]]) -> List[Finding]:
        if len(rows) < self.thresholds.spike_min_buckets:
            return []

        counts = [_as_int(row.get("errors")) for row in rows]
        average = sum(counts) / len(counts)
        if average <= 0:
            return []

        findings = []
        for row, count in zip(rows, counts):
            if count > average * self.thresholds.spike_multiplier and count > self.thresholds.spike_floor:
                bucket = row.get("time_bucket")
                bucket_time = parse_timestamp(bucket)
                finding = Finding(
                    kind=FindingKind.SPIKE,
                    severity=Severity.HIGH,
                    summary=f"Error spike at {bucket}: {count} errors ({count / average:.1f}x average)",
                    evidence=f"Average: {average:.1f} errors per bucket",
                    confidence=0.85,
                    query_id="global-error-timeline",
                )
                if bucket_time is not None:
                    finding.timestamp = bucket_time
                findings.append(finding)
        return findings

    def _analyze_critical(self, ctx: InvestigationContext, events: List[Dict[str, Any]]) -> List[Finding]:
        clusters = cluster_logs_with_cache(events, self.cache, ctx.tenant_id, self.min_batch_size)
        findings = []
        for cluster in clusters:
            if cluster.count < self.thresholds.recurring_min:
                continue
            findings.append(Finding(
                kind=FindingKind.ERROR,
                severity=Severity.CRITICAL,
                summary=f"Recurring critical error: {truncate_text(cluster.template, 60)} ({cluster.count} occurrences)",
                evidence=cluster.samples[0] if cluster.samples else None,
                service=cluster.services[0] if cluster.services else None,
                confidence=0.95,
                query_id="global-critical-errors",
            ))
        return findings

    def suggest_next_actions(self, ctx: InvestigationContext) -> List[NextAction]:
        return [
            NextAction(
                priority=1,
                kind=ActionKind.DRILL_DOWN,
                description=f"Drill down into {service} errors",
                rationale="High error volume warrants detailed investigation",
                query=service_errors_query(ctx.index_pattern, service, limit=100),
            )
            for service in distinct_services(ctx.findings)
        ]

    def synthesize_evidence(self, ctx: InvestigationContext) -> EvidenceSummary:
        if not ctx.findings:
            return EvidenceSummary(
                root_cause="No critical issues detected in the investigated window",
                confidence=NO_ISSUES_GLOBAL_CONFIDENCE,
                affected_services=[],
                impact="0 services affected, 0 findings identified",
            )

        chosen = sort_findings(_priority_findings(ctx.findings))
        affected = distinct_services(ctx.findings)
        return EvidenceSummary(
            root_cause=_root_cause_sentence(chosen),
            confidence=sum(f.confidence for f in chosen) / len(chosen),
            affected_services=affected,
            impact=f"{len(affected)} services affected, {len(ctx.findings)} findings identified",
        )


class ComponentStrategy:
    """Deep dive into a single service."""

    mode = InvestigationMode.COMPONENT

    def __init__(
        self,
        thresholds: Optional[AnalysisThresholds] = None,
        cache: Optional[ClusterCache] = None,
        min_batch_size: int = DEFAULT_MIN_BATCH_SIZE,
    ):
        self.thresholds = thresholds or AnalysisThresholds()
        self.cache = cache
        self.min_batch_size = min_batch_size

    def _service(self, ctx: InvestigationContext) -> str:
        if not ctx.target_service:
            raise InvalidInputError("Component mode requires a target service")
        return ctx.target_service

    def initial_queries(self, ctx: InvestigationContext) -> List[QueryPlan]:
        index = ctx.index_pattern
        service = esql_string(self._service(ctx))
        return [
            QueryPlan(
                id="component-errors",
                purpose="All errors for the service",
                query=service_errors_query(index, self._service(ctx), limit=200),
                tier=TIER_ARCHIVE,
            ),
            QueryPlan(
                id="component-error-patterns",
                purpose="Most frequent error messages",
                query="\n".join([
                    f"FROM {index}",
                    f"| WHERE service.name == {service} AND log.level IN ({_levels(ERROR_LEVELS)})",
                    "| STATS occurrences = COUNT(*) BY message",
                    "| SORT occurrences DESC",
                    "| LIMIT 20",
                ]),
                tier=TIER_ARCHIVE,
            ),
            QueryPlan(
                id="component-subsystems",
                purpose="Error distribution by subsystem",
                query="\n".join([
                    f"FROM {index}",
                    f"| WHERE service.name == {service} AND log.level IN ({_levels(WARN_AND_ABOVE_LEVELS)})",
                    "| STATS errors = COUNT(*) BY log.logger",
                    "| SORT errors DESC",
                    "| LIMIT 20",
                ]),
                tier=TIER_ARCHIVE,
                priority=2,
            ),
            QueryPlan(
                id="component-dependencies",
                purpose="Connectivity and dependency failures",
                query="\n".join([
                    f"FROM {index}",
                    f"| WHERE service.name == {service}",
                    '| WHERE TO_LOWER(message) LIKE "*connection*" OR TO_LOWER(message) LIKE "*timeout*"'
                    ' OR TO_LOWER(message) LIKE "*refused*"',
                    "| KEEP @timestamp, service.name, log.level, message",
                    "| LIMIT 100",
                ]),
                tier=TIER_ARCHIVE,
                priority=3,
                depends_on="component-errors",
            ),
        ]

    def analyze_results(self, ctx: InvestigationContext, executed: List[ExecutedQuery]) -> List[Finding]:
        service = self._service(ctx)
        findings: List[Finding] = []
        findings.extend(self._analyze_patterns(service, _results_for(executed, "component-error-patterns")))
        findings.extend(self._analyze_dependencies(service, _results_for(executed, "component-dependencies")))
        findings.extend(self._analyze_subsystems(service, _results_for(executed, "component-subsystems")))
        findings.extend(self._analyze_resources(ctx, service, _results_for(executed, "component-errors")))
        return findings

    def _analyze_resources(
        self,
        ctx: InvestigationContext,
        service: str,
        events: List[Dict[str, Any]],
    ) -> List[Finding]:
        clusters = cluster_logs_with_cache(events, self.cache, ctx.tenant_id, self.min_batch_size)
        findings = []
        for cluster in clusters:
            if cluster.root_cause not in RESOURCE_CAUSES or cluster.count < self.thresholds.recurring_min:
                continue
            findings.append(Finding(
                kind=FindingKind.RESOURCE,
                severity=Severity.HIGH,
                summary=f"Resource exhaustion ({RESOURCE_CAUSES[cluster.root_cause]}): "
                        f"{truncate_text(cluster.template, 60)}",
                evidence=f"{cluster.count} occurrences",
                service=service,
                confidence=0.8,
                query_id="component-errors",
            ))
        return findings

    def _analyze_patterns(self, service: str, rows: List[Dict[str, Any]]) -> List[Finding]:
        findings = []
        for row in rows[:5]:
            count = _as_int(row.get("occurrences"))
            message = event_message(row)
            if not message or count <= self.thresholds.pattern_min:
                continue
            findings.append(Finding(
                kind=FindingKind.ERROR,
                severity=self.thresholds.severity_for_count(count),
                summary=f"Recurring error pattern: {truncate_text(message, 80)}",
                evidence=f"{count} occurrences",
                service=service,
                confidence=0.9,
                query_id="component-error-patterns",
            ))
        return findings

    def _analyze_dependencies(self, service: str, events: List[Dict[str, Any]]) -> List[Finding]:
        counts = {keyword: 0 for keyword in DEPENDENCY_PATTERNS}
        for event in events:
            message = event_message(event).lower()
            for keyword in DEPENDENCY_PATTERNS:
                if keyword in message:
                    counts[keyword] += 1

        findings = []
        for keyword, count in counts.items():
            if count < self.thresholds.dependency_min:
                continue
            findings.append(Finding(
                kind=FindingKind.DEPENDENCY,
                severity=Severity.HIGH,
                summary=f"{DEPENDENCY_PATTERNS[keyword]} - {keyword}",
                evidence=f"{count} log lines matched '{keyword}'",
                service=service,
                confidence=0.85,
                query_id="component-dependencies",
            ))
        return findings

    def _analyze_subsystems(self, service: str, rows: List[Dict[str, Any]]) -> List[Finding]:
        findings = []
        for row in rows:
            subsystem = get_field(row, "log.logger")
            count = _as_int(row.get("errors"))
            if not subsystem or count <= self.thresholds.subsystem_min:
                continue
            findings.append(Finding(
                kind=FindingKind.ERROR,
                severity=self.thresholds.severity_for_count(count),
                summary=f"Subsystem {subsystem} logged {count} warnings and errors",
                evidence=f"{subsystem}: {count} events at warn or above",
                service=service,
                confidence=0.8,
                query_id="component-subsystems",
            ))
        return findings

    def suggest_next_actions(self, ctx: InvestigationContext) -> List[NextAction]:
        service = self._service(ctx)
        actions = []
        for finding in ctx.findings:
            if finding.kind != FindingKind.DEPENDENCY:
                continue
            actions.append(NextAction(
                priority=2,
                kind=ActionKind.CORRELATE,
                description="Check downstream service health",
                rationale=f"Dependency issue detected: {finding.summary}",
                query="\n".join([
                    f"FROM {ctx.index_pattern}",
                    f"| WHERE service.name != {esql_string(service)} AND log.level IN ({_levels(ERROR_LEVELS)})",
                    "| STATS error_count = COUNT(*) BY service.name",
                    "| SORT error_count DESC",
                    "| LIMIT 10",
                ]),
            ))

        actions.append(NextAction(
            priority=3,
            kind=ActionKind.CORRELATE,
            description="Check for recent deployment correlations",
            rationale="Configuration or deployment changes often precede component failures",
            query=build_change_query(ctx.index_pattern, service),
        ))
        return actions

    def synthesize_evidence(self, ctx: InvestigationContext) -> EvidenceSummary:
        service = self._service(ctx)
        if not ctx.findings:
            return EvidenceSummary(
                root_cause=f"No significant issues found in {service}",
                confidence=NO_ISSUES_SCOPED_CONFIDENCE,
                affected_services=[service],
                impact=f"0 findings for service {service}",
            )

        chosen = sort_findings(_priority_findings(ctx.findings))
        dominant = max(chosen, key=lambda f: f.confidence)
        return EvidenceSummary(
            root_cause=dominant.summary,
            confidence=dominant.confidence,
            affected_services=[service],
            impact=f"{len(ctx.findings)} findings for service {service}",
        )


class FlowStrategy:
    """Follow one request across services."""

    mode = InvestigationMode.FLOW

    def __init__(self, thresholds: Optional[AnalysisThresholds] = None):
        self.thresholds = thresholds or AnalysisThresholds()

    def initial_queries(self, ctx: InvestigationContext) -> List[QueryPlan]:
        if ctx.trace_id:
            plan_id, purpose, condition = (
                "flow-by-trace",
                "Request flow by trace id",
                f"trace.id == {esql_string(ctx.trace_id)}",
            )
        elif ctx.correlation_id:
            plan_id, purpose, condition = (
                "flow-by-correlation",
                "Request flow by correlation id",
                f"labels.correlation_id == {esql_string(ctx.correlation_id)}",
            )
        else:
            raise InvalidInputError("Flow mode requires either trace_id or correlation_id")

        return [QueryPlan(
            id=plan_id,
            purpose=purpose,
            query="\n".join([
                f"FROM {ctx.index_pattern}",
                f"| WHERE {condition}",
                "| SORT @timestamp ASC",
                "| LIMIT 500",
            ]),
            tier=TIER_ARCHIVE,
        )]

    def analyze_results(self, ctx: InvestigationContext, executed: List[ExecutedQuery]) -> List[Finding]:
        events: List[Dict[str, Any]] = []
        query_id = ""
        for query in executed:
            if query.plan_id.startswith("flow-") and query.succeeded:
                events = query.events
                query_id = query.plan_id
                break
        if not events:
            return []

        path: List[str] = []
        first_error: Optional[Dict[str, Any]] = None
        for event in events:
            service = event_service(event)
            if service and service not in path:
                path.append(service)
            if first_error is None and level_rank(event_level(event)) >= ERROR_RANK:
                first_error = event

        traversal = f"Request traversed: {' → '.join(path)}" if path else None

        if first_error is None:
            return [Finding(
                kind=FindingKind.ERROR,
                severity=Severity.LOW,
                summary="Request flow traced successfully, no errors detected",
                evidence=traversal,
                confidence=0.7,
                query_id=query_id,
            )]

        failing_service = event_service(first_error) or "unknown"
        finding = Finding(
            kind=FindingKind.ERROR,
            severity=Severity.HIGH,
            summary=f"Request failed at {failing_service}: {truncate_text(event_message(first_error), 80)}",
            evidence=traversal,
            service=failing_service,
            confidence=0.9,
            query_id=query_id,
        )
        error_time = event_timestamp(first_error)
        if error_time is not None:
            finding.timestamp = error_time
        return [finding]

    def suggest_next_actions(self, ctx: InvestigationContext) -> List[NextAction]:
        actions = []
        for finding in ctx.findings:
            if not finding.service or finding.severity == Severity.LOW:
                continue
            actions.append(NextAction(
                priority=1,
                kind=ActionKind.DRILL_DOWN,
                description=f"Investigate {finding.service} service in detail",
                rationale="Service identified as failure point in request flow",
                query=service_errors_query(ctx.index_pattern, finding.service, limit=100),
            ))
        return actions

    def synthesize_evidence(self, ctx: InvestigationContext) -> EvidenceSummary:
        identifier = ctx.trace_id or ctx.correlation_id
        if not ctx.findings:
            return EvidenceSummary(
                root_cause=f"Unable to trace request flow: no events matched {identifier}",
                confidence=NO_ISSUES_SCOPED_CONFIDENCE,
                affected_services=[],
                impact="0 services affected, 0 findings identified",
            )

        first = _priority_findings(ctx.findings)[0]
        affected = distinct_services(ctx.findings)
        return EvidenceSummary(
            root_cause=first.summary,
            confidence=first.confidence,
            affected_services=affected,
            impact=f"{len(affected)} services affected, {len(ctx.findings)} findings identified",
        )


def select_mode(
    target_service: Optional[str] = None,
    trace_id: Optional[str] = None,
    correlation_id: Optional[str] = None,
    override: Optional[str] = None,
) -> InvestigationMode:
    """
    Pick the investigation mode.

    Identifiers win over a service hint; with neither the scan is global.
    An explicit override is validated against the identifiers it needs.
    """
    if override:
        try:
            mode = InvestigationMode(override.lower())
        except ValueError:
            raise InvalidInputError(
                f"Invalid mode '{override}': must be one of global, component, flow"
            ) from None
        if mode == InvestigationMode.FLOW and not (trace_id or correlation_id):
            raise InvalidInputError("Flow mode requires either trace_id or correlation_id")
        if mode == InvestigationMode.COMPONENT and not target_service:
            raise InvalidInputError("Component mode requires a target service")
        return mode

    if trace_id or correlation_id:
        return InvestigationMode.FLOW
    if target_service:
        return InvestigationMode.COMPONENT
    return InvestigationMode.GLOBAL


def create_strategy(
    mode: InvestigationMode,
    thresholds: Optional[AnalysisThresholds] = None,
    cache: Optional[ClusterCache] = None,
    min_batch_size: int = DEFAULT_MIN_BATCH_SIZE,
) -> QueryStrategy:
    """Build the strategy for a mode."""
    if mode == InvestigationMode.GLOBAL:
        return GlobalStrategy(thresholds, cache, min_batch_size)
    if mode == InvestigationMode.COMPONENT:
        return ComponentStrategy(thresholds, cache, min_batch_size)
    if mode == InvestigationMode.FLOW:
        return FlowStrategy(thresholds)
    raise InvalidInputError(f"Unsupported investigation mode: {mode}")
