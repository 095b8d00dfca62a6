"""
Unit tests for investigation strategies and mode selection.
"""

from datetime import timedelta

import pytest

from logprobe.agent.models import (
    ActionKind,
    AnalysisThresholds,
    ExecutedQuery,
    Finding,
    FindingKind,
    InvestigationContext,
    InvestigationMode,
    Severity,
)
from logprobe.agent.strategies import (
    NO_ISSUES_GLOBAL_CONFIDENCE,
    ComponentStrategy,
    FlowStrategy,
    GlobalStrategy,
    create_strategy,
    select_mode,
)
from logprobe.analysis.cluster_cache import ClusterCache
from logprobe.exceptions import InvalidInputError
from logprobe.utils.time_ranges import utc_now


def make_context(mode: InvestigationMode, **kwargs) -> InvestigationContext:
    end = utc_now()
    return InvestigationContext(mode=mode, start=end - timedelta(hours=1), end=end, **kwargs)


def executed(plan_id: str, events, error=None) -> ExecutedQuery:
    return ExecutedQuery(plan_id=plan_id, purpose="", query="", events=events, error=error)


class TestSelectMode:
    """Tests for mode selection."""

    def test_global_by_default(self):
        assert select_mode() == InvestigationMode.GLOBAL

    def test_service_selects_component(self):
        assert select_mode(target_service="checkout-service") == InvestigationMode.COMPONENT

    def test_ids_win_over_service(self):
        assert select_mode("checkout-service", trace_id="abc") == InvestigationMode.FLOW
        assert select_mode("checkout-service", correlation_id="req-1") == InvestigationMode.FLOW

    def test_override(self):
        assert select_mode("checkout-service", override="global") == InvestigationMode.GLOBAL

    def test_flow_override_requires_ids(self):
        with pytest.raises(InvalidInputError):
            select_mode(override="flow")

    def test_unknown_override(self):
        with pytest.raises(InvalidInputError):
            select_mode(override="everything")

    def test_factory(self):
        assert isinstance(create_strategy(InvestigationMode.GLOBAL), GlobalStrategy)
        assert isinstance(create_strategy(InvestigationMode.COMPONENT), ComponentStrategy)
        assert isinstance(create_strategy(InvestigationMode.FLOW), FlowStrategy)


class TestGlobalStrategy:
    """Tests for the system-wide strategy."""

    @pytest.fixture
    def strategy(self):
        return GlobalStrategy(AnalysisThresholds(), ClusterCache())

    def test_initial_queries(self, strategy):
        plans = strategy.initial_queries(make_context(InvestigationMode.GLOBAL))

        assert [p.id for p in plans] == ["global-error-rate", "global-error-timeline", "global-critical-errors"]
        assert all(p.query.startswith("FROM logs-*") for p in plans)

    def test_error_count_above_threshold_single_medium_finding(self, strategy):
        """25 errors against a threshold of 10 gives exactly one medium finding."""
        ctx = make_context(InvestigationMode.GLOBAL)
        findings = strategy.analyze_results(ctx, [
            executed("global-error-rate", [{"service.name": "checkout-service", "error_count": 25}]),
        ])

        assert len(findings) == 1
        finding = findings[0]
        assert finding.kind == FindingKind.ERROR
        assert finding.severity == Severity.MEDIUM
        assert finding.summary == "High error volume: 25 errors in time window"
        assert finding.service == "checkout-service"
        assert finding.confidence == 0.9

    def test_error_count_at_threshold_ignored(self, strategy):
        ctx = make_context(InvestigationMode.GLOBAL)
        findings = strategy.analyze_results(ctx, [
            executed("global-error-rate", [{"service.name": "checkout-service", "error_count": 10}]),
        ])
        assert findings == []

    def test_severity_mapping(self, strategy):
        ctx = make_context(InvestigationMode.GLOBAL)
        rows = [
            {"service.name": "a", "error_count": 501},
            {"service.name": "b", "error_count": 101},
            {"service.name": "c", "error_count": 15},
        ]
        findings = strategy.analyze_results(ctx, [executed("global-error-rate", rows)])

        assert [f.severity for f in findings] == [Severity.CRITICAL, Severity.HIGH, Severity.LOW]

    def test_spike_detected(self, strategy):
        ctx = make_context(InvestigationMode.GLOBAL)
        rows = [
            {"time_bucket": f"2026-01-20T10:{m:02d}:00Z", "errors": count}
            for m, count in [(0, 2), (5, 3), (10, 2), (15, 60), (20, 3)]
        ]

        findings = strategy.analyze_results(ctx, [executed("global-error-timeline", rows)])

        assert len(findings) == 1
        assert findings[0].kind == FindingKind.SPIKE
        assert findings[0].severity == Severity.HIGH
        assert findings[0].timestamp.minute == 15

    def test_spike_needs_enough_buckets(self, strategy):
        ctx = make_context(InvestigationMode.GLOBAL)
        rows = [{"time_bucket": "2026-01-20T10:00:00Z", "errors": 1}, {"time_bucket": "2026-01-20T10:05:00Z", "errors": 90}]
        assert strategy.analyze_results(ctx, [executed("global-error-timeline", rows)]) == []

    def test_recurring_critical_errors(self, strategy):
        ctx = make_context(InvestigationMode.GLOBAL)
        events = [
            {"service.name": "payment-service", "log.level": "critical", "message": f"Ledger write failed for txn {i}"}
            for i in range(4)
        ]

        findings = strategy.analyze_results(ctx, [executed("global-critical-errors", events)])

        assert len(findings) == 1
        assert findings[0].severity == Severity.CRITICAL
        assert findings[0].confidence == 0.95
        assert "4 occurrences" in findings[0].summary

    def test_failed_queries_ignored(self, strategy):
        ctx = make_context(InvestigationMode.GLOBAL)
        findings = strategy.analyze_results(ctx, [
            executed("global-error-rate", [{"service.name": "x", "error_count": 999}], error="boom"),
        ])
        assert findings == []

    def test_no_findings_synthesis(self, strategy):
        summary = strategy.synthesize_evidence(make_context(InvestigationMode.GLOBAL))

        assert summary.confidence == NO_ISSUES_GLOBAL_CONFIDENCE
        assert "No critical issues" in summary.root_cause

    def test_synthesis_prefers_urgent_findings(self, strategy):
        ctx = make_context(InvestigationMode.GLOBAL)
        ctx.findings = [
            Finding(FindingKind.ERROR, Severity.LOW, "minor", 0.5, "q", service="a"),
            Finding(FindingKind.ERROR, Severity.HIGH, "major", 0.9, "q", service="b"),
        ]

        summary = strategy.synthesize_evidence(ctx)

        assert summary.root_cause == "Error pattern: major"
        assert summary.confidence == 0.9
        assert summary.affected_services == ["a", "b"]

    def test_drill_down_actions(self, strategy):
        ctx = make_context(InvestigationMode.GLOBAL)
        ctx.findings = [Finding(FindingKind.ERROR, Severity.HIGH, "x", 0.9, "q", service="checkout-service")]

        actions = strategy.suggest_next_actions(ctx)

        assert actions[0].kind == ActionKind.DRILL_DOWN
        assert 'service.name == "checkout-service"' in actions[0].query


class TestComponentStrategy:
    """Tests for the single-service strategy."""

    @pytest.fixture
    def strategy(self):
        return ComponentStrategy(AnalysisThresholds(), ClusterCache())

    def test_requires_service(self, strategy):
        with pytest.raises(InvalidInputError):
            strategy.initial_queries(make_context(InvestigationMode.COMPONENT))

    def test_initial_queries(self, strategy):
        ctx = make_context(InvestigationMode.COMPONENT, target_service="checkout-service")
        plans = strategy.initial_queries(ctx)

        assert [p.id for p in plans] == [
            "component-errors", "component-error-patterns", "component-subsystems", "component-dependencies",
        ]
        assert all('"checkout-service"' in p.query for p in plans)

    def test_dependency_findings(self, strategy):
        ctx = make_context(InvestigationMode.COMPONENT, target_service="checkout-service")
        events = [{"message": "connection refused by inventory-service"} for _ in range(3)]

        findings = strategy.analyze_results(ctx, [executed("component-dependencies", events)])

        assert len(findings) == 1
        assert findings[0].kind == FindingKind.DEPENDENCY
        assert findings[0].summary == "Network/service connectivity failure - connection refused"

    def test_pattern_and_subsystem_findings(self, strategy):
        ctx = make_context(InvestigationMode.COMPONENT, target_service="checkout-service")
        findings = strategy.analyze_results(ctx, [
            executed("component-error-patterns", [
                {"message": "Payment gateway returned 502", "occurrences": 42},
                {"message": "Rare failure", "occurrences": 2},
            ]),
            executed("component-subsystems", [{"log.logger": "CartController", "errors": 150}]),
        ])

        summaries = [f.summary for f in findings]
        assert "Recurring error pattern: Payment gateway returned 502" in summaries
        assert "Subsystem CartController logged 150 warnings and errors" in summaries
        assert all(f.service == "checkout-service" for f in findings)

    def test_resource_findings(self, strategy):
        ctx = make_context(InvestigationMode.COMPONENT, target_service="checkout-service")
        events = [
            {"service.name": "checkout-service", "log.level": "error", "message": "java.lang.OutOfMemoryError: Java heap space"}
            for _ in range(5)
        ]

        findings = strategy.analyze_results(ctx, [executed("component-errors", events)])

        assert len(findings) == 1
        assert findings[0].kind == FindingKind.RESOURCE
        assert findings[0].summary.startswith("Resource exhaustion (memory)")

    def test_actions_include_change_correlation(self, strategy):
        ctx = make_context(InvestigationMode.COMPONENT, target_service="checkout-service")
        ctx.findings = [Finding(FindingKind.DEPENDENCY, Severity.HIGH, "dep", 0.85, "q", service="checkout-service")]

        descriptions = [a.description for a in strategy.suggest_next_actions(ctx)]

        assert descriptions == ["Check downstream service health", "Check for recent deployment correlations"]

    def test_subsystems_not_reported_as_services(self, strategy):
        """Subsystem findings leave the target service as the only affected service."""
        ctx = make_context(InvestigationMode.COMPONENT, target_service="checkout-service")
        ctx.findings = strategy.analyze_results(ctx, [
            executed("component-subsystems", [{"log.logger": "db.pool", "errors": 50}]),
        ])

        summary = strategy.synthesize_evidence(ctx)

        assert summary.root_cause == "Subsystem db.pool logged 50 warnings and errors"
        assert summary.affected_services == ["checkout-service"]

    def test_no_findings_synthesis(self, strategy):
        ctx = make_context(InvestigationMode.COMPONENT, target_service="checkout-service")
        summary = strategy.synthesize_evidence(ctx)

        assert summary.root_cause == "No significant issues found in checkout-service"
        assert 0.6 <= summary.confidence <= 0.7


class TestFlowStrategy:
    """Tests for the request-flow strategy."""

    @pytest.fixture
    def strategy(self):
        return FlowStrategy()

    def test_trace_query(self, strategy):
        ctx = make_context(InvestigationMode.FLOW, trace_id="abc123")
        plans = strategy.initial_queries(ctx)

        assert plans[0].id == "flow-by-trace"
        assert 'trace.id == "abc123"' in plans[0].query

    def test_correlation_query(self, strategy):
        ctx = make_context(InvestigationMode.FLOW, correlation_id="req-9")
        assert strategy.initial_queries(ctx)[0].id == "flow-by-correlation"

    def test_requires_identifier(self, strategy):
        with pytest.raises(InvalidInputError):
            strategy.initial_queries(make_context(InvestigationMode.FLOW))

    def test_failure_point(self, strategy):
        ctx = make_context(InvestigationMode.FLOW, trace_id="abc123")
        events = [
            {"@timestamp": "2026-01-20T10:00:00Z", "service.name": "api-gateway", "log.level": "info", "message": "request received"},
            {"@timestamp": "2026-01-20T10:00:01Z", "service.name": "checkout-service", "log.level": "info", "message": "calling payment"},
            {"@timestamp": "2026-01-20T10:00:02Z", "service.name": "payment-service", "log.level": "error", "message": "Card processor unavailable"},
            {"@timestamp": "2026-01-20T10:00:03Z", "service.name": "checkout-service", "log.level": "error", "message": "payment failed"},
        ]

        findings = strategy.analyze_results(ctx, [executed("flow-by-trace", events)])

        assert len(findings) == 1
        assert findings[0].service == "payment-service"
        assert findings[0].summary == "Request failed at payment-service: Card processor unavailable"
        assert findings[0].evidence == "Request traversed: api-gateway → checkout-service → payment-service"

    def test_clean_flow(self, strategy):
        ctx = make_context(InvestigationMode.FLOW, trace_id="abc123")
        events = [{"service.name": "api-gateway", "log.level": "info", "message": "ok"}]

        findings = strategy.analyze_results(ctx, [executed("flow-by-trace", events)])

        assert findings[0].severity == Severity.LOW
        assert strategy.suggest_next_actions(ctx) == []

    def test_no_events_synthesis(self, strategy):
        ctx = make_context(InvestigationMode.FLOW, trace_id="abc123")
        summary = strategy.synthesize_evidence(ctx)

        assert "abc123" in summary.root_cause
        assert 0.6 <= summary.confidence <= 0.7
