"""Data types shared by the investigation strategies, heuristics and orchestrator."""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Optional, Dict, Any, List

from logprobe.utils.config import Settings
from logprobe.utils.time_ranges import format_timestamp, utc_now


class InvestigationMode(Enum):
    """Investigation scope, chosen once per investigation."""
    GLOBAL = "global"
    COMPONENT = "component"
    FLOW = "flow"


class FindingKind(Enum):
    ERROR = "error"
    LATENCY = "latency"
    RESOURCE = "resource"
    DEPENDENCY = "dependency"
    DEPLOYMENT = "deployment"
    SPIKE = "spike"


class Severity(Enum):
    CRITICAL = "critical"
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"


SEVERITY_ORDER = {
    Severity.CRITICAL: 0,
    Severity.HIGH: 1,
    Severity.MEDIUM: 2,
    Severity.LOW: 3,
}


class ActionKind(Enum):
    QUERY = "query"
    DRILL_DOWN = "drill_down"
    CORRELATE = "correlate"
    TRACE = "trace"
    CREATE_ALERT = "create_alert"


@dataclass
class AnalysisThresholds:
    """
    Tunable thresholds used when turning query results into findings.

    Defaults reflect product tuning, not hard invariants.
    """
    error_count: int = 10
    spike_multiplier: float = 3.0
    spike_floor: int = 10
    spike_min_buckets: int = 3
    recurring_min: int = 3
    pattern_min: int = 5
    dependency_min: int = 3
    subsystem_min: int = 20
    severity_critical: int = 500
    severity_high: int = 100
    severity_medium: int = 20

    @classmethod
    def from_settings(cls, settings: Settings) -> "AnalysisThresholds":
        return cls(
            error_count=settings.error_count_threshold,
            spike_multiplier=settings.spike_multiplier,
            spike_floor=settings.spike_floor,
        )

    def severity_for_count(self, count: int) -> Severity:
        if count > self.severity_critical:
            return Severity.CRITICAL
        if count > self.severity_high:
            return Severity.HIGH
        if count > self.severity_medium:
            return Severity.MEDIUM
        return Severity.LOW


@dataclass(frozen=True)
class QueryPlan:
    """A query a strategy wants executed. Plans run in list order."""
    id: str
    purpose: str
    query: str
    tier: str
    priority: int = 1
    depends_on: Optional[str] = None


@dataclass
class ExecutedQuery:
    """Outcome of running one QueryPlan."""
    plan_id: str
    purpose: str
    query: str
    duration_ms: float = 0.0
    error: Optional[str] = None
    events: List[Dict[str, Any]] = field(default_factory=list)
    corrections: List[str] = field(default_factory=list)

    @property
    def succeeded(self) -> bool:
        return self.error is None


@dataclass
class Finding:
    """A discrete observation extracted from query results."""
    kind: FindingKind
    severity: Severity
    summary: str
    confidence: float
    query_id: str
    evidence: Optional[str] = None
    service: Optional[str] = None
    timestamp: datetime = field(default_factory=utc_now)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "timestamp": format_timestamp(self.timestamp),
            "kind": self.kind.value,
            "severity": self.severity.value,
            "summary": self.summary,
            "evidence": self.evidence,
            "service": self.service,
            "confidence": round(self.confidence, 3),
            "query_id": self.query_id,
        }


@dataclass
class NextAction:
    """A suggested follow-up step."""
    priority: int
    kind: ActionKind
    description: str
    rationale: str
    query: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "priority": self.priority,
            "kind": self.kind.value,
            "description": self.description,
            "rationale": self.rationale,
            "query": self.query,
        }


@dataclass
class EvidenceSummary:
    """Terminal conclusion of an investigation."""
    root_cause: str
    confidence: float
    affected_services: List[str] = field(default_factory=list)
    impact: str = ""


@dataclass
class InvestigationContext:
    """State accumulated during one investigation."""
    mode: InvestigationMode
    start: datetime
    end: datetime
    index_pattern: str = "logs-*"
    target_service: Optional[str] = None
    trace_id: Optional[str] = None
    correlation_id: Optional[str] = None
    tenant_id: Optional[str] = None

    findings: List[Finding] = field(default_factory=list)
    next_actions: List[NextAction] = field(default_factory=list)
    query_history: List[ExecutedQuery] = field(default_factory=list)

    @property
    def all_events(self) -> List[Dict[str, Any]]:
        events: List[Dict[str, Any]] = []
        for executed in self.query_history:
            events.extend(executed.events)
        return events


def sort_findings(findings: List[Finding]) -> List[Finding]:
    """Most severe first, then most confident."""
    return sorted(findings, key=lambda f: (SEVERITY_ORDER[f.severity], -f.confidence))


def dedupe_actions(actions: List[NextAction]) -> List[NextAction]:
    """Drop repeated descriptions (first wins) and sort by ascending priority."""
    seen = set()
    unique = []
    for action in actions:
        if action.description in seen:
            continue
        seen.add(action.description)
        unique.append(action)
    return sorted(unique, key=lambda a: a.priority)


def distinct_services(findings: List[Finding]) -> List[str]:
    services: List[str] = []
    for finding in findings:
        if finding.service and finding.service not in services:
            services.append(finding.service)
    return services
