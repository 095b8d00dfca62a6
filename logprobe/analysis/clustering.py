"""
Log template clustering.

Messages are reduced to templates by replacing variable tokens (ids, numbers,
addresses, durations, quoted strings, paths) with placeholders. Events sharing
a template form a LogCluster, tagged with the fundamental cause its wording
points at.
"""

import hashlib
import re
from dataclasses import dataclass
from datetime import datetime
from typing import Optional, Dict, Any, List, Tuple

from logprobe.utils.events import (
    event_level,
    event_message,
    event_service,
    event_timestamp,
    level_rank,
    truncate_text,
)

MAX_SAMPLES = 3
MAX_SAMPLE_LENGTH = 200

# Order matters: earlier replacements must not be split by later ones.
_TEMPLATE_RULES: List[Tuple["re.Pattern", str]] = [
    (re.compile(r"\b[0-9a-fA-F]{8}-[0-9a-fA-F]{4}-[0-9a-fA-F]{4}-[0-9a-fA-F]{4}-[0-9a-fA-F]{12}\b"), "<UUID>"),
    (re.compile(r"\b[\w.+-]+@[\w-]+\.[\w.-]+\b"), "<EMAIL>"),
    (re.compile(r"\d{4}-\d{2}-\d{2}[T ]\d{2}:\d{2}:\d{2}(?:\.\d+)?(?:Z|[+-]\d{2}:?\d{2})?"), "<TIME>"),
    (re.compile(r"\b\d{2}:\d{2}:\d{2}(?:\.\d+)?\b"), "<TIME>"),
    (re.compile(r"\b(?:\d{1,3}\.){3}\d{1,3}(?::\d+)?\b"), "<IP>"),
    (re.compile(r"\b(?:0x)?[0-9a-fA-F]{16,64}\b"), "<HEX>"),
    (re.compile(r"\b\d+(?:\.\d+)?(?:ms|us|ns|s|sec|secs|seconds|min|mins|minutes|h)\b"), "<DUR>"),
    (re.compile(r"\"[^\"]*\"|'[^']*'"), "<STR>"),
    (re.compile(r"(?<![\w<>])(?:/[\w.-]+)+/?"), "<PATH>"),
    (re.compile(r"\b\d+(?:\.\d+)?\b"), "<NUM>"),
]

_WHITESPACE = re.compile(r"\s+")

# Fundamental-cause tags, checked in order; first match wins.
ROOT_CAUSE_RULES: List[Tuple[str, "re.Pattern"]] = [
    ("MEMORY_PRESSURE", re.compile(
        r"out of memory|outofmemory|\boom|heap space|memory limit|gc overhead|memory pressure|cannot allocate memory"
    )),
    ("DNS_FAILURE", re.compile(
        r"no such host|\bdns\b|name resolution|nxdomain|could not resolve|unknown host"
    )),
    ("TLS_FAILURE", re.compile(
        r"\btls\b|\bssl\b|certificate|x509|handshake"
    )),
    ("STORAGE_FAILURE", re.compile(
        r"no space left|disk full|disk quota|i/o error|read-only file system|enospc|volume mount"
    )),
    ("DATABASE_FAILURE", re.compile(
        r"deadlock|database|\bsql\b|connection pool|pool exhausted|too many connections|lock wait|replication lag"
    )),
    ("CPU_PRESSURE", re.compile(
        r"cpu throttl|high cpu|cpu limit|cpu usage|cpu saturat"
    )),
    ("RATE_LIMITED", re.compile(
        r"rate limit|too many requests|\b429\b|throttl|quota exceeded"
    )),
    ("AUTH_FAILURE", re.compile(
        r"unauthori[sz]ed|forbidden|\b401\b|\b403\b|authentication failed|permission denied|access denied|invalid token|token expired"
    )),
    ("NETWORK_FAILURE", re.compile(
        r"connection refused|connection reset|econnrefused|econnreset|network unreachable|broken pipe|no route to host|host unreachable"
    )),
    ("K8S_ORCHESTRATION", re.compile(
        r"crashloopbackoff|imagepullbackoff|\bevicted\b|\bpod\b|liveness probe|readiness probe|back-off restarting"
    )),
    ("TIMEOUT", re.compile(
        r"timeout|timed out|deadline exceeded|took too long"
    )),
    ("CODE_BUG", re.compile(
        r"nullpointer|null pointer|nil pointer|undefined is not|typeerror|index out of range|indexerror|keyerror|"
        r"attributeerror|\bpanic\b|segmentation fault|stack ?overflow|unhandled exception|assertion"
    )),
]

UNKNOWN_CAUSE = "UNKNOWN"


@dataclass(frozen=True)
class LogCluster:
    """Events sharing one message template."""
    template_id: str
    template: str
    root_cause: str
    count: int
    first_seen: Optional[datetime]
    last_seen: Optional[datetime]
    severity: str
    severity_rank: int
    services: Tuple[str, ...] = ()
    samples: Tuple[str, ...] = ()

    def to_dict(self) -> Dict[str, Any]:
        return {
            "template_id": self.template_id,
            "template": self.template,
            "root_cause": self.root_cause,
            "count": self.count,
            "first_seen": self.first_seen.isoformat() if self.first_seen else None,
            "last_seen": self.last_seen.isoformat() if self.last_seen else None,
            "severity": self.severity,
            "services": list(self.services),
            "samples": list(self.samples),
        }


def extract_template(message: str) -> str:
    """Reduce a log message to its template."""
    template = message
    for pattern, placeholder in _TEMPLATE_RULES:
        template = pattern.sub(placeholder, template)
    return _WHITESPACE.sub(" ", template).strip()


def template_id(template: str) -> str:
    return hashlib.sha256(template.encode("utf-8")).hexdigest()[:16]


def infer_root_cause(text: str) -> str:
    """Tag a message or template with the fundamental cause it suggests."""
    lowered = text.lower()
    for cause, pattern in ROOT_CAUSE_RULES:
        if pattern.search(lowered):
            return cause
    return UNKNOWN_CAUSE


def cluster_logs(events: List[Dict[str, Any]]) -> List[LogCluster]:
    """
    Group events by message template.

    Returns:
        Clusters sorted by severity (highest first), then by count
    """
    groups: Dict[str, Dict[str, Any]] = {}

    for event in events:
        message = event_message(event)
        if not message:
            continue
        template = extract_template(message)
        tid = template_id(template)

        group = groups.get(tid)
        if group is None:
            group = {
                "template": template,
                "root_cause": infer_root_cause(message),
                "count": 0,
                "first_seen": None,
                "last_seen": None,
                "severity": "info",
                "severity_rank": 0,
                "services": [],
                "samples": [],
            }
            groups[tid] = group

        group["count"] += 1

        ts = event_timestamp(event)
        if ts is not None:
            if group["first_seen"] is None or ts < group["first_seen"]:
                group["first_seen"] = ts
            if group["last_seen"] is None or ts > group["last_seen"]:
                group["last_seen"] = ts

        level = event_level(event)
        rank = level_rank(level)
        if rank > group["severity_rank"]:
            group["severity_rank"] = rank
            group["severity"] = level or "info"

        service = event_service(event)
        if service and service not in group["services"]:
            group["services"].append(service)

        if len(group["samples"]) < MAX_SAMPLES:
            group["samples"].append(truncate_text(message, MAX_SAMPLE_LENGTH))

    clusters = [
        LogCluster(
            template_id=tid,
            template=g["template"],
            root_cause=g["root_cause"],
            count=g["count"],
            first_seen=g["first_seen"],
            last_seen=g["last_seen"],
            severity=g["severity"],
            severity_rank=g["severity_rank"],
            services=tuple(g["services"]),
            samples=tuple(g["samples"]),
        )
        for tid, g in groups.items()
    ]
    clusters.sort(key=lambda c: (c.severity_rank, c.count), reverse=True)
    return clusters
