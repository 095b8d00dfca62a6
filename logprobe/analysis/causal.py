"""
Causal ranking of log clusters.

Given clusters from one incident window, estimate which one is the root cause
rather than a downstream symptom. Two signals are combined:

- time: clusters that started earlier score higher
- type: fundamental causes (memory, network, storage, DNS) outrank the
  symptoms they produce (timeouts, unknown errors)

    score = 0.6 * time_score + 0.4 * type_score
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional, Dict, Any, List

from logprobe.analysis.clustering import LogCluster

TIME_WEIGHT = 0.6
TYPE_WEIGHT = 0.4

# Lower weight = more fundamental.
CAUSE_WEIGHTS = {
    "MEMORY_PRESSURE": 1,
    "NETWORK_FAILURE": 1,
    "STORAGE_FAILURE": 1,
    "DNS_FAILURE": 1,
    "DATABASE_FAILURE": 2,
    "CPU_PRESSURE": 2,
    "TLS_FAILURE": 2,
    "K8S_ORCHESTRATION": 2,
    "AUTH_FAILURE": 3,
    "RATE_LIMITED": 3,
    "CODE_BUG": 3,
    "TIMEOUT": 4,
    "UNKNOWN": 5,
}

CANDIDATE_MIN_SCORE = 0.5
MAX_CANDIDATES = 3


@dataclass
class RootCauseCandidate:
    """A cluster judged likely to be the root cause."""
    cluster: LogCluster
    score: float
    rank: int
    propagation_path: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "rank": self.rank,
            "score": round(self.score, 3),
            "root_cause": self.cluster.root_cause,
            "template": self.cluster.template,
            "count": self.cluster.count,
            "first_seen": self.cluster.first_seen.isoformat() if self.cluster.first_seen else None,
            "services": list(self.cluster.services),
            "propagation_path": self.propagation_path,
        }


def type_score(root_cause: str) -> float:
    weight = CAUSE_WEIGHTS.get(root_cause, CAUSE_WEIGHTS["UNKNOWN"])
    return 1.0 - (weight - 1) / 5.0


def score_clusters(clusters: List[LogCluster]) -> List[RootCauseCandidate]:
    """Score every cluster, best first. Clusters without timestamps rank as latest."""
    if not clusters:
        return []

    seen = [c.first_seen for c in clusters if c.first_seen is not None]
    earliest: Optional[datetime] = min(seen) if seen else None
    latest: Optional[datetime] = max(seen) if seen else None
    span = max((latest - earliest).total_seconds(), 1.0) if earliest else 1.0

    scored = []
    for cluster in clusters:
        if cluster.first_seen is None or earliest is None:
            time_component = 0.0
        else:
            offset = (cluster.first_seen - earliest).total_seconds()
            time_component = 1.0 - offset / span
        score = TIME_WEIGHT * time_component + TYPE_WEIGHT * type_score(cluster.root_cause)
        scored.append((score, cluster))

    # Stable on ties: earlier first_seen wins.
    scored.sort(key=lambda pair: (
        -pair[0],
        pair[1].first_seen.timestamp() if pair[1].first_seen else float("inf"),
    ))

    path = _propagation_path([c for _, c in scored])
    return [
        RootCauseCandidate(cluster=cluster, score=score, rank=i + 1, propagation_path=path)
        for i, (score, cluster) in enumerate(scored)
    ]


def _propagation_path(clusters: List[LogCluster]) -> List[str]:
    """Services in the order their clusters first appeared."""
    ordered = sorted(
        (c for c in clusters if c.first_seen is not None),
        key=lambda c: c.first_seen,
    )
    path: List[str] = []
    for cluster in ordered:
        for service in cluster.services:
            if service not in path:
                path.append(service)
    return path


def rank_root_causes(clusters: List[LogCluster]) -> List[RootCauseCandidate]:
    """
    Pick root-cause candidates from a set of clusters.

    Only the top three scored clusters are considered, and each must score
    above 0.5.
    """
    candidates = [c for c in score_clusters(clusters)[:MAX_CANDIDATES] if c.score > CANDIDATE_MIN_SCORE]
    for i, candidate in enumerate(candidates):
        candidate.rank = i + 1
    return candidates
