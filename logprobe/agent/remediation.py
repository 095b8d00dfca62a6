"""
Remediation assets generated from a finished investigation:

- an alert rule (Kibana ES|QL rule JSON plus a Terraform snippet)
- a dashboard definition for the affected services
- the standard procedures whose detectors recognize the root cause
"""

import json
import re
from dataclasses import dataclass, field
from typing import Optional, Dict, Any, List

from logprobe.agent.heuristics import HeuristicEngine, Procedure
from logprobe.agent.models import EvidenceSummary, Finding, Severity, sort_findings
from logprobe.analysis.clustering import infer_root_cause
from logprobe.tools.query_executor import esql_string
from logprobe.utils.events import ERROR_LEVELS

DEFAULT_ALERT_THRESHOLD = 10
ALERT_WINDOW_MINUTES = 5


@dataclass
class AlertAsset:
    name: str
    condition: str
    threshold: int
    severity: str
    rule: Dict[str, Any] = field(default_factory=dict)
    terraform: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "condition": self.condition,
            "threshold": self.threshold,
            "severity": self.severity,
            "rule": self.rule,
            "terraform": self.terraform,
        }


@dataclass
class DashboardWidget:
    title: str
    visualization: str
    query: str


@dataclass
class DashboardAsset:
    name: str
    widgets: List[DashboardWidget] = field(default_factory=list)

    def layout(self) -> Dict[str, Any]:
        """Two-column grid, one panel per widget."""
        panels = []
        for i, widget in enumerate(self.widgets):
            panels.append({
                "title": widget.title,
                "type": widget.visualization,
                "esql": widget.query,
                "gridData": {"x": (i % 2) * 24, "y": (i // 2) * 15, "w": 24, "h": 15},
            })
        return {"title": self.name, "timeRestore": False, "panels": panels}

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "widgets": [w.title for w in self.widgets],
            "layout": self.layout(),
        }


@dataclass
class IncidentAssets:
    alert: AlertAsset
    dashboard: DashboardAsset
    procedures: List[Procedure] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "alert": self.alert.to_dict(),
            "dashboard": self.dashboard.to_dict(),
            "procedures": [p.to_dict() for p in self.procedures],
        }


def _slug(text: str) -> str:
    slug = re.sub(r"[^a-z0-9]+", "_", text.lower()).strip("_")
    return slug or "all_services"


def _service_filter(services: List[str]) -> str:
    if not services:
        return ""
    names = ", ".join(esql_string(name) for name in dict.fromkeys(services))
    return f"service.name IN ({names}) AND "


def _alert_severity(findings: List[Finding]) -> str:
    if not findings:
        return Severity.MEDIUM.value
    return sort_findings(findings)[0].severity.value


def build_alert(
    summary: EvidenceSummary,
    findings: List[Finding],
    index_pattern: str,
    threshold: int = DEFAULT_ALERT_THRESHOLD,
) -> AlertAsset:
    services = summary.affected_services
    cause = infer_root_cause(summary.root_cause)
    label = ", ".join(services) if services else "all services"
    name = f"LogProbe: {cause.replace('_', ' ').title()} on {label}"
    threshold = max(int(threshold), 1)

    levels = ", ".join(esql_string(level) for level in ERROR_LEVELS)
    condition = "\n".join([
        f"FROM {index_pattern}",
        f"| WHERE {_service_filter(services)}log.level IN ({levels})",
        "| STATS error_count = COUNT(*) BY service.name",
        f"| WHERE error_count > {threshold}",
    ])
    severity = _alert_severity(findings)

    params = {
        "searchType": "esqlQuery",
        "esqlQuery": {"esql": condition},
        "timeField": "@timestamp",
        "timeWindowSize": ALERT_WINDOW_MINUTES,
        "timeWindowUnit": "m",
        "threshold": [0],
        "thresholdComparator": ">",
        "size": 0,
    }
    rule = {
        "name": name,
        "rule_type_id": ".es-query",
        "consumer": "alerts",
        "schedule": {"interval": "1m"},
        "params": params,
        "tags": ["logprobe", severity, cause.lower()],
    }

    terraform = "\n".join([
        f'resource "elasticstack_kibana_alerting_rule" "{_slug(label)}_errors" {{',
        f"  name         = {json.dumps(name)}",
        '  consumer     = "alerts"',
        '  rule_type_id = ".es-query"',
        '  interval     = "1m"',
        f"  tags         = {json.dumps(rule['tags'])}",
        f"  params       = jsonencode({json.dumps(params, indent=2)})",
        "}",
    ])

    return AlertAsset(
        name=name,
        condition=condition,
        threshold=threshold,
        severity=severity,
        rule=rule,
        terraform=terraform,
    )


def build_dashboard(summary: EvidenceSummary, index_pattern: str) -> DashboardAsset:
    services = summary.affected_services
    scope = _service_filter(services)
    levels = ", ".join(esql_string(level) for level in ERROR_LEVELS)
    label = ", ".join(services) if services else "all services"

    return DashboardAsset(
        name=f"Incident: {label}",
        widgets=[
            DashboardWidget(
                title="Error Rate",
                visualization="line",
                query="\n".join([
                    f"FROM {index_pattern}",
                    f"| WHERE {scope}log.level IN ({levels})",
                    "| EVAL minute = DATE_TRUNC(1 minute, @timestamp)",
                    "| STATS errors = COUNT(*) BY minute",
                    "| SORT minute ASC",
                ]),
            ),
            DashboardWidget(
                title="Errors by Service",
                visualization="bar",
                query="\n".join([
                    f"FROM {index_pattern}",
                    f"| WHERE {scope}log.level IN ({levels})",
                    "| STATS errors = COUNT(*) BY service.name",
                    "| SORT errors DESC",
                ]),
            ),
            DashboardWidget(
                title="Latency",
                visualization="line",
                query="\n".join([
                    f"FROM {index_pattern}",
                    f"| WHERE {scope}event.duration IS NOT NULL",
                    "| EVAL minute = DATE_TRUNC(1 minute, @timestamp)",
                    "| STATS p95_latency = PERCENTILE(event.duration, 95) BY minute",
                    "| SORT minute ASC",
                ]),
            ),
        ],
    )


def generate_assets(
    summary: EvidenceSummary,
    findings: List[Finding],
    index_pattern: str = "logs-*",
    engine: Optional[HeuristicEngine] = None,
    threshold: int = DEFAULT_ALERT_THRESHOLD,
) -> IncidentAssets:
    """Build alert, dashboard and procedures for an investigation's conclusion."""
    engine = engine or HeuristicEngine(index_pattern=index_pattern)
    text = " ".join([summary.root_cause] + [f.summary for f in findings])
    return IncidentAssets(
        alert=build_alert(summary, findings, index_pattern, threshold),
        dashboard=build_dashboard(summary, index_pattern),
        procedures=engine.procedures_for_text(text),
    )
