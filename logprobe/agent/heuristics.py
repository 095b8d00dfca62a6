"""
Heuristic Engine

Independent detectors that look for well-known failure signatures in findings
and raw events, regardless of which strategy produced them. Each matched
detector contributes a follow-up action and a standard operating procedure.

New detectors are added with HeuristicEngine.register(); the engine itself
never needs to change.
"""

import re
from dataclasses import dataclass, field
from typing import Optional, Callable, Dict, Any, List, Protocol

from logprobe.agent.models import ActionKind, Finding, NextAction, dedupe_actions
from logprobe.tools.query_executor import esql_string
from logprobe.utils.events import event_message

DEFAULT_EVENT_THRESHOLD = 3


@dataclass
class Procedure:
    """Standard operating procedure linked to a detector."""
    trigger: str
    steps: List[str] = field(default_factory=list)
    escalation: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {"trigger": self.trigger, "steps": self.steps, "escalation": self.escalation}


class Detector(Protocol):
    name: str

    def detect(self, findings: List[Finding], events: List[Dict[str, Any]]) -> List[NextAction]:
        ...

    def procedure(self) -> Procedure:
        ...


QueryBuilder = Callable[[str, Optional[str]], str]


class KeywordDetector:
    """
    Matches when a finding mentions one of its keywords, or when enough raw
    event messages do.
    """

    def __init__(
        self,
        name: str,
        keywords: List[str],
        priority: int,
        kind: ActionKind,
        description: str,
        rationale: str,
        procedure: Procedure,
        query_builder: Optional[QueryBuilder] = None,
        index_pattern: str = "logs-*",
        event_threshold: int = DEFAULT_EVENT_THRESHOLD,
    ):
        self.name = name
        self.keywords = list(keywords)
        self._pattern = re.compile("|".join(keywords))
        self.priority = priority
        self.kind = kind
        self.description = description
        self.rationale = rationale
        self._procedure = procedure
        self.query_builder = query_builder
        self.index_pattern = index_pattern
        self.event_threshold = event_threshold

    def matches_text(self, text: str) -> bool:
        return bool(text) and self._pattern.search(text.lower()) is not None

    def matching_findings(self, findings: List[Finding]) -> List[Finding]:
        return [
            f for f in findings
            if self.matches_text(f.summary) or self.matches_text(f.evidence or "")
        ]

    def matches_events(self, events: List[Dict[str, Any]]) -> bool:
        hits = 0
        for event in events:
            if self.matches_text(event_message(event)):
                hits += 1
                if hits >= self.event_threshold:
                    return True
        return False

    def detect(self, findings: List[Finding], events: List[Dict[str, Any]]) -> List[NextAction]:
        matched = self.matching_findings(findings)
        if not matched and not self.matches_events(events):
            return []

        service = next((f.service for f in matched if f.service), None)
        query = self.query_builder(self.index_pattern, service) if self.query_builder else None
        return [NextAction(
            priority=self.priority,
            kind=self.kind,
            description=self.description,
            rationale=self.rationale,
            query=query,
        )]

    def procedure(self) -> Procedure:
        return self._procedure


def _service_clause(service: Optional[str]) -> str:
    if not service:
        return ""
    # Subsystem findings carry "service/subsystem".
    return f"service.name == {esql_string(service.split('/')[0])} AND "


def _message_like(*terms: str) -> str:
    return " OR ".join(f"TO_LOWER(message) LIKE {esql_string('*' + t + '*')}" for t in terms)


def _latency_query(index: str, service: Optional[str]) -> str:
    return "\n".join([
        f"FROM {index}",
        f"| WHERE {_service_clause(service)}event.duration IS NOT NULL",
        "| STATS avg_latency = AVG(event.duration), p95_latency = PERCENTILE(event.duration, 95),"
        " p99_latency = PERCENTILE(event.duration, 99) BY service.name",
        "| SORT p99_latency DESC",
        "| LIMIT 10",
    ])


def _memory_query(index: str, service: Optional[str]) -> str:
    return "\n".join([
        f"FROM {index}",
        f"| WHERE {_service_clause(service)}({_message_like('memory', 'oom', 'heap')})",
        "| STATS events = COUNT(*) BY service.name, host.name",
        "| SORT events DESC",
        "| LIMIT 20",
    ])


def _database_query(index: str, service: Optional[str]) -> str:
    return "\n".join([
        f"FROM {index}",
        f"| WHERE {_service_clause(service)}({_message_like('sql', 'database', 'deadlock', 'pool')})",
        "| STATS occurrences = COUNT(*) BY message",
        "| SORT occurrences DESC",
        "| LIMIT 10",
    ])


def _auth_query(index: str, service: Optional[str]) -> str:
    return "\n".join([
        f"FROM {index}",
        f"| WHERE {_service_clause(service)}http.response.status_code IN (401, 403)",
        "| STATS failures = COUNT(*) BY service.name, url.path",
        "| SORT failures DESC",
        "| LIMIT 20",
    ])


def _rate_limit_query(index: str, service: Optional[str]) -> str:
    return "\n".join([
        f"FROM {index}",
        f"| WHERE {_service_clause(service)}http.response.status_code == 429",
        "| EVAL minute = DATE_TRUNC(1 minute, @timestamp)",
        "| STATS throttled = COUNT(*) BY minute, service.name",
        "| SORT minute ASC",
    ])


def _network_query(index: str, service: Optional[str]) -> str:
    return "\n".join([
        f"FROM {index}",
        f"| WHERE {_service_clause(service)}({_message_like('refused', 'reset', 'unreachable', 'dns')})",
        "| STATS failures = COUNT(*) BY service.name",
        "| SORT failures DESC",
        "| LIMIT 20",
    ])


def default_detectors(index_pattern: str = "logs-*") -> List[KeywordDetector]:
    """The built-in detector set."""
    return [
        KeywordDetector(
            name="timeout",
            keywords=[r"timeout", r"timed out", r"deadline exceeded", r"etimedout", r"\b504\b"],
            priority=1,
            kind=ActionKind.CORRELATE,
            description="Check downstream service health and network latency",
            rationale="Timeouts usually mean a slow or unavailable dependency",
            query_builder=_latency_query,
            index_pattern=index_pattern,
            procedure=Procedure(
                trigger="Timeout errors detected",
                steps=[
                    "Check latency dashboards for the affected service and its dependencies",
                    "Verify downstream service health checks",
                    "Review timeout and retry settings for recent changes",
                    "Enable circuit breakers if retries are amplifying load",
                ],
                escalation="Escalate to the Platform team if not resolved within 15 minutes",
            ),
        ),
        KeywordDetector(
            name="memory",
            keywords=[r"out of memory", r"outofmemory", r"\boom", r"heap", r"memory", r"gc overhead"],
            priority=1,
            kind=ActionKind.QUERY,
            description="Check container resource limits and memory trends",
            rationale="Memory pressure causes restarts and cascading slowdowns",
            query_builder=_memory_query,
            index_pattern=index_pattern,
            procedure=Procedure(
                trigger="Memory pressure detected",
                steps=[
                    "Check container memory usage against limits",
                    "Look for OOMKilled restarts on the affected pods",
                    "Compare heap usage with the previous release",
                    "Scale out or raise limits as a stopgap",
                ],
                escalation="Escalate to the owning service team if restarts continue",
            ),
        ),
        KeywordDetector(
            name="database",
            keywords=[r"database", r"\bsql\b", r"deadlock", r"connection pool", r"pool exhausted",
                      r"too many connections", r"lock wait", r"postgres", r"mysql"],
            priority=1,
            kind=ActionKind.QUERY,
            description="Analyze slow database queries",
            rationale="Database contention shows up as errors and latency in every caller",
            query_builder=_database_query,
            index_pattern=index_pattern,
            procedure=Procedure(
                trigger="Database connection/query issues detected",
                steps=[
                    "Check database CPU, connections and replication lag",
                    "Identify long-running queries and lock waits",
                    "Verify connection pool sizing in the affected services",
                ],
                escalation="Escalate to the DBA on-call if the database is saturated",
            ),
        ),
        KeywordDetector(
            name="auth",
            keywords=[r"unauthori[sz]ed", r"forbidden", r"\b401\b", r"\b403\b", r"authentication",
                      r"permission denied", r"access denied", r"invalid token", r"token expired"],
            priority=2,
            kind=ActionKind.QUERY,
            description="Investigate authentication failures",
            rationale="Auth failures point at expired credentials or permission changes",
            query_builder=_auth_query,
            index_pattern=index_pattern,
            procedure=Procedure(
                trigger="Authentication/Authorization failures detected",
                steps=[
                    "Check for expired or rotated credentials and certificates",
                    "Review recent IAM and RBAC changes",
                    "Confirm the identity provider is healthy",
                ],
                escalation="Escalate to the Security team if failures look like abuse",
            ),
        ),
        KeywordDetector(
            name="rate_limit",
            keywords=[r"rate limit", r"too many requests", r"\b429\b", r"throttl", r"quota exceeded"],
            priority=2,
            kind=ActionKind.CORRELATE,
            description="Analyze request patterns and rate limits",
            rationale="Throttling points at a traffic spike or a misconfigured client",
            query_builder=_rate_limit_query,
            index_pattern=index_pattern,
            procedure=Procedure(
                trigger="Rate limiting detected",
                steps=[
                    "Identify the clients generating the most throttled requests",
                    "Compare current traffic with the usual baseline",
                    "Adjust limits or shed load from misbehaving clients",
                ],
                escalation="Escalate to the API platform team if limits need raising",
            ),
        ),
        KeywordDetector(
            name="network",
            keywords=[r"connection refused", r"connection reset", r"econnrefused", r"econnreset",
                      r"network unreachable", r"no route to host", r"\bdns\b", r"name resolution",
                      r"no such host"],
            priority=1,
            kind=ActionKind.CORRELATE,
            description="Check network connectivity and DNS resolution",
            rationale="Connection failures usually mean the target is down or unreachable",
            query_builder=_network_query,
            index_pattern=index_pattern,
            procedure=Procedure(
                trigger="Network connectivity issues detected",
                steps=[
                    "Verify the target service is running and has healthy endpoints",
                    "Check DNS resolution from the calling service",
                    "Review recent network policy and firewall changes",
                ],
                escalation="Escalate to the Network team if the failure spans services",
            ),
        ),
    ]


class HeuristicEngine:
    """Runs every registered detector over findings and events."""

    def __init__(self, detectors: Optional[List[Detector]] = None, index_pattern: str = "logs-*"):
        self.detectors: List[Detector] = (
            list(detectors) if detectors is not None else default_detectors(index_pattern)
        )

    def register(self, detector: Detector):
        self.detectors.append(detector)

    def analyze(self, findings: List[Finding], events: List[Dict[str, Any]]) -> List[NextAction]:
        """All detector actions, deduplicated by description, lowest priority first."""
        actions: List[NextAction] = []
        for detector in self.detectors:
            actions.extend(detector.detect(findings, events))
        return dedupe_actions(actions)

    def procedures(self, findings: List[Finding], events: List[Dict[str, Any]]) -> List[Procedure]:
        """Procedures of matched detectors, one per trigger."""
        matched: List[Procedure] = []
        seen = set()
        for detector in self.detectors:
            if not detector.detect(findings, events):
                continue
            procedure = detector.procedure()
            if procedure.trigger in seen:
                continue
            seen.add(procedure.trigger)
            matched.append(procedure)
        return matched

    def procedures_for_text(self, text: str) -> List[Procedure]:
        """Procedures whose detector recognizes free text such as a root-cause sentence."""
        matched: List[Procedure] = []
        seen = set()
        for detector in self.detectors:
            matches_text = getattr(detector, "matches_text", None)
            if matches_text is None or not matches_text(text):
                continue
            procedure = detector.procedure()
            if procedure.trigger not in seen:
                seen.add(procedure.trigger)
                matched.append(procedure)
        return matched
