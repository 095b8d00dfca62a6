"""
Change pattern registry.

Maps change categories (DEPLOYMENT, CONFIG, IAM, ...) and risk tiers to the
keywords that identify them in log messages. The registry is shared across
concurrent correlations and can be extended at runtime.

Concurrency contract:
    Writers serialize on a lock and publish a brand-new immutable snapshot.
    Readers grab the current snapshot reference once and work on it, so a
    classification never sees a half-applied registration.
"""

import threading
from dataclasses import dataclass
from typing import Optional, Dict, List, Tuple

import structlog

from logprobe.exceptions import InvalidInputError

logger = structlog.get_logger()

CHANGE_UNKNOWN = "UNKNOWN"

RISK_CRITICAL = "critical"
RISK_HIGH = "high"
RISK_MEDIUM = "medium"
RISK_LOW = "low"

# Evaluation order for risk tiers; low is the default when nothing matches.
RISK_ORDER = (RISK_CRITICAL, RISK_HIGH, RISK_MEDIUM, RISK_LOW)

# Category order is significant: the first category with a matching keyword
# wins, so narrower categories come before broad ones like IAM ("policy").
DEFAULT_CHANGE_PATTERNS: List[Tuple[str, List[str]]] = [
    ("DEPLOYMENT", [
        "deploy", "deployment", "release", "rollout", "rollback", "rolled back",
        "image updated", "new version", "canary", "blue-green", "helm upgrade",
        "argocd", "spinnaker", "kubectl apply", "build promoted",
    ]),
    ("CONFIG", [
        "config", "configuration", "configmap", "setting", "property changed",
        "parameter", "environment variable", "env var", "feature toggle",
        "flag enabled", "flag disabled",
    ]),
    ("FEATURE_FLAG", [
        "feature flag", "feature-flag", "launchdarkly", "split.io", "flag toggled",
        "experiment enabled", "experiment disabled", "toggle",
    ]),
    ("NETWORK_POLICY", [
        "network policy", "networkpolicy", "firewall", "security group", "ingress",
        "egress", "load balancer", "dns record", "route table", "vpc", "subnet",
    ]),
    ("SECRET", [
        "secret", "certificate", "cert rotated", "key rotation", "rotated key",
        "vault", "kms", "tls cert", "password changed", "api key",
    ]),
    ("IAM", [
        "iam", "rbac", "role", "permission", "policy", "access", "grant", "revoke",
        "service account", "serviceaccount", "credential",
    ]),
    ("DATABASE", [
        "database", "migration", "schema", "alter table", "index created",
        "index dropped", "failover", "replica promoted", "replica promotion",
    ]),
    ("SCALING", [
        "scale", "scaled", "scaling", "autoscal", "hpa", "replica", "replicas",
        "instances", "capacity",
    ]),
    ("INFRASTRUCTURE", [
        "terraform", "cloudformation", "pulumi", "infrastructure", "node pool",
        "nodepool", "cluster upgrade", "instance type", "ami id", "provisioned",
    ]),
]

DEFAULT_RISK_PATTERNS: Dict[str, List[str]] = {
    RISK_CRITICAL: [
        "production", "prod", "critical", "breaking", "rollback", "revert",
        "emergency", "hotfix", "security", "vulnerability", "cve", "patch",
    ],
    RISK_HIGH: [
        "database", "schema", "migration", "iam", "permission", "access",
        "network", "firewall", "secret", "certificate", "key rotation", "failover",
        "replica promoted", "replica promotion",
    ],
    RISK_MEDIUM: [
        "deployment", "release", "config", "scale", "replica", "feature flag",
        "toggle",
    ],
    RISK_LOW: [],
}

# Fallback for change-shaped messages no category claims.
GENERIC_CHANGE_VERBS = (
    "updated", "changed", "modified", "created", "deleted", "added", "removed",
    "enabled", "disabled", "started", "stopped", "applied", "reverted", "rolled",
    "promoted", "demoted",
)


@dataclass(frozen=True)
class _Snapshot:
    categories: Tuple[Tuple[str, Tuple[str, ...]], ...]
    risks: Tuple[Tuple[str, Tuple[str, ...]], ...]


def _build_snapshot(
    categories: List[Tuple[str, List[str]]],
    risks: Dict[str, List[str]],
) -> _Snapshot:
    return _Snapshot(
        categories=tuple((name, tuple(p.lower() for p in patterns)) for name, patterns in categories),
        risks=tuple((level, tuple(p.lower() for p in risks.get(level, []))) for level in RISK_ORDER),
    )


class PatternRegistry:
    """Runtime-extensible keyword tables for change detection and risk."""

    def __init__(self):
        self._lock = threading.Lock()
        self._snapshot = _build_snapshot(DEFAULT_CHANGE_PATTERNS, DEFAULT_RISK_PATTERNS)

    def register_change_type(self, change_type: str, patterns: List[str]):
        """
        Add keywords to a change category, creating it if needed.

        New categories are matched after all existing ones.
        """
        name = change_type.strip().upper()
        if not name:
            raise InvalidInputError("Change type name must not be empty")
        cleaned = [p.strip().lower() for p in patterns if p and p.strip()]
        if not cleaned:
            raise InvalidInputError(f"No patterns given for change type '{name}'")

        with self._lock:
            categories = [(n, list(p)) for n, p in self._snapshot.categories]
            for existing_name, existing in categories:
                if existing_name == name:
                    existing.extend(p for p in cleaned if p not in existing)
                    break
            else:
                categories.append((name, cleaned))
            risks = {level: list(p) for level, p in self._snapshot.risks}
            self._snapshot = _build_snapshot(categories, risks)

        logger.info("Registered change patterns", change_type=name, patterns=len(cleaned))

    def register_risk_patterns(self, level: str, patterns: List[str]):
        """Add keywords to a risk tier (critical, high, medium or low)."""
        level = level.strip().lower()
        if level not in RISK_ORDER:
            raise InvalidInputError(
                f"Invalid risk level '{level}': must be one of {', '.join(RISK_ORDER)}"
            )
        cleaned = [p.strip().lower() for p in patterns if p and p.strip()]

        with self._lock:
            categories = [(n, list(p)) for n, p in self._snapshot.categories]
            risks = {lvl: list(p) for lvl, p in self._snapshot.risks}
            risks[level].extend(p for p in cleaned if p not in risks[level])
            self._snapshot = _build_snapshot(categories, risks)

        logger.info("Registered risk patterns", level=level, patterns=len(cleaned))

    def patterns(self, change_type: str) -> List[str]:
        name = change_type.upper()
        for category, patterns in self._snapshot.categories:
            if category == name:
                return list(patterns)
        return []

    def change_types(self) -> List[str]:
        return [name for name, _ in self._snapshot.categories]

    def risk_patterns(self, level: str) -> List[str]:
        for risk, patterns in self._snapshot.risks:
            if risk == level.lower():
                return list(patterns)
        return []

    def detect_change_type(self, message: str) -> Optional[str]:
        """
        Classify a message into a change category.

        Returns:
            The first matching category, UNKNOWN if the message only contains
            a generic change verb, or None if it does not look like a change
        """
        lowered = message.lower()
        snapshot = self._snapshot
        for name, patterns in snapshot.categories:
            if any(p in lowered for p in patterns):
                return name
        if any(verb in lowered for verb in GENERIC_CHANGE_VERBS):
            return CHANGE_UNKNOWN
        return None

    def assess_risk_level(self, message: str) -> str:
        lowered = message.lower()
        snapshot = self._snapshot
        for level, patterns in snapshot.risks:
            if any(p in lowered for p in patterns):
                return level
        return RISK_LOW

    def reset(self):
        """Restore the built-in tables, discarding runtime registrations."""
        with self._lock:
            self._snapshot = _build_snapshot(DEFAULT_CHANGE_PATTERNS, DEFAULT_RISK_PATTERNS)
        logger.info("Pattern registry reset")


_default_registry: Optional[PatternRegistry] = None
_default_lock = threading.Lock()


def default_registry() -> PatternRegistry:
    """Process-wide registry used by the CLI. Library callers should inject their own."""
    global _default_registry
    with _default_lock:
        if _default_registry is None:
            _default_registry = PatternRegistry()
        return _default_registry
