"""
Unit tests for causal ranking of clusters.
"""

from datetime import datetime, timedelta, timezone

import pytest

from logprobe.analysis.causal import (
    CAUSE_WEIGHTS,
    rank_root_causes,
    score_clusters,
    type_score,
)
from logprobe.analysis.clustering import LogCluster, cluster_logs

T0 = datetime(2026, 1, 20, 10, 30, tzinfo=timezone.utc)


def make_cluster(root_cause: str, first_seen, service: str = "svc", count: int = 5) -> LogCluster:
    return LogCluster(
        template_id=f"{root_cause}-{service}",
        template=f"{root_cause} template",
        root_cause=root_cause,
        count=count,
        first_seen=first_seen,
        last_seen=first_seen,
        severity="error",
        severity_rank=5,
        services=(service,),
    )


class TestTypeScore:
    """Tests for the cause-type component."""

    def test_fundamental_causes_score_highest(self):
        assert type_score("MEMORY_PRESSURE") == 1.0
        assert type_score("UNKNOWN") == pytest.approx(0.2)

    def test_unlisted_cause_treated_as_unknown(self):
        assert type_score("SOMETHING_NEW") == type_score("UNKNOWN")

    def test_weights_within_range(self):
        assert all(1 <= w <= 5 for w in CAUSE_WEIGHTS.values())


class TestScoreClusters:
    """Tests for combined time and type scoring."""

    def test_memory_before_timeout_ranks_first(self):
        """Memory pressure 10 minutes before the incident outranks a later timeout."""
        memory = make_cluster("MEMORY_PRESSURE", T0 - timedelta(minutes=10), "inventory-service")
        timeout = make_cluster("TIMEOUT", T0 - timedelta(minutes=5), "checkout-service")

        scored = score_clusters([timeout, memory])

        assert scored[0].cluster.root_cause == "MEMORY_PRESSURE"
        assert scored[0].score == pytest.approx(1.0)
        # time 0, type 1 - 3/5
        assert scored[1].score == pytest.approx(0.4 * 0.4)

    def test_single_cluster_gets_full_time_score(self):
        scored = score_clusters([make_cluster("TIMEOUT", T0)])
        assert scored[0].score == pytest.approx(0.6 + 0.4 * 0.4)

    def test_missing_timestamp_scores_as_latest(self):
        """Clusters without first_seen get no time credit."""
        dated = make_cluster("UNKNOWN", T0)
        undated = make_cluster("UNKNOWN", None, "other")

        scored = score_clusters([undated, dated])

        assert scored[0].cluster is dated
        assert scored[1].score == pytest.approx(0.4 * 0.2)

    def test_equal_type_later_cluster_ranks_last(self):
        a = make_cluster("NETWORK_FAILURE", T0 - timedelta(seconds=1), "a")
        b = make_cluster("MEMORY_PRESSURE", T0 - timedelta(seconds=1), "b")
        c = make_cluster("DNS_FAILURE", T0, "c")

        scored = score_clusters([c, a, b])

        assert {scored[0].cluster.root_cause, scored[1].cluster.root_cause} == {"NETWORK_FAILURE", "MEMORY_PRESSURE"}
        assert scored[2].cluster.root_cause == "DNS_FAILURE"

    def test_propagation_path_follows_first_seen(self):
        memory = make_cluster("MEMORY_PRESSURE", T0 - timedelta(minutes=10), "inventory-service")
        timeout = make_cluster("TIMEOUT", T0 - timedelta(minutes=5), "checkout-service")

        scored = score_clusters([timeout, memory])

        assert scored[0].propagation_path == ["inventory-service", "checkout-service"]

    def test_empty(self):
        assert score_clusters([]) == []


class TestRankRootCauses:
    """Tests for candidate selection."""

    def test_only_scores_above_half_are_candidates(self):
        memory = make_cluster("MEMORY_PRESSURE", T0 - timedelta(minutes=10), "inventory-service")
        timeout = make_cluster("TIMEOUT", T0 - timedelta(minutes=5), "checkout-service")

        candidates = rank_root_causes([memory, timeout])

        assert len(candidates) == 1
        assert candidates[0].rank == 1
        assert candidates[0].cluster.root_cause == "MEMORY_PRESSURE"

    def test_at_most_three_candidates(self):
        clusters = [
            make_cluster("MEMORY_PRESSURE", T0, f"svc-{i}") for i in range(5)
        ]

        candidates = rank_root_causes(clusters)

        assert len(candidates) == 3
        assert [c.rank for c in candidates] == [1, 2, 3]

    def test_from_real_events(self, sample_error_events):
        """End to end from events: the earlier OOM is the top candidate."""
        candidates = rank_root_causes(cluster_logs(sample_error_events))

        assert candidates[0].cluster.root_cause == "MEMORY_PRESSURE"
        assert candidates[0].to_dict()["propagation_path"] == ["inventory-service", "checkout-service"]
