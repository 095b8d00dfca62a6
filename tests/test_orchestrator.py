"""
Unit tests for the investigation orchestrator.
"""

import pytest

from elasticsearch import TransportError

from logprobe.agent.orchestrator import (
    MAX_QUERIES_CAP,
    InvestigationOrchestrator,
    InvestigationStep,
    format_investigation_report,
    investigate_sync,
)
from logprobe.analysis.cluster_cache import ClusterCache
from logprobe.exceptions import InvalidInputError


def route_queries(client, esql_response, routes):
    """Answer esql.query by the first marker found in the query text."""
    def side_effect(query, filter=None):
        for marker, result in routes.items():
            if marker in query:
                if isinstance(result, Exception):
                    raise result
                return esql_response.from_rows(result)
        return esql_response.empty()

    client.esql.query.side_effect = side_effect


def critical_events(n: int = 4):
    return [
        {
            "@timestamp": f"2026-01-20T10:{i:02d}:00Z",
            "service.name": "payment-service",
            "log.level": "critical",
            "message": f"Ledger write failed for txn {1000 + i}",
        }
        for i in range(n)
    ]


GLOBAL_ROUTES = {
    "STATS error_count": [{"service.name": "checkout-service", "error_count": 25}],
    "time_bucket": [],
    '("critical", "fatal")': critical_events(),
}


class TestInvestigationStep:
    """Tests for the InvestigationStep enum."""

    def test_all_steps_defined(self):
        assert [s.value for s in InvestigationStep] == [
            "plan", "execute", "analyze", "suggest", "synthesize", "complete",
        ]


class TestInvestigationOrchestrator:
    """Tests for the InvestigationOrchestrator class."""

    @pytest.fixture
    def orchestrator(self, mock_es_client, settings):
        return InvestigationOrchestrator(mock_es_client, settings=settings)

    def test_requires_client_or_executor(self, settings):
        with pytest.raises(ValueError):
            InvestigationOrchestrator(settings=settings)

    @pytest.mark.asyncio
    async def test_global_investigation(self, orchestrator, mock_es_client, esql_response):
        """A global run executes three plans and reports findings by severity."""
        route_queries(mock_es_client, esql_response, GLOBAL_ROUTES)

        report = await orchestrator.investigate(time_range="1h")

        assert report["status"] == "completed"
        assert report["mode"] == "global"
        assert [q["id"] for q in report["queries"]] == [
            "global-error-rate", "global-error-timeline", "global-critical-errors",
        ]
        assert all(q["status"] == "SUCCESS" for q in report["queries"])
        assert report["findings_total"] == 2
        assert report["findings"][0]["severity"] == "critical"
        assert report["root_cause"].startswith("Error pattern: Recurring critical error")
        assert "Drill down into checkout-service errors" in [a["description"] for a in report["next_actions"]]
        assert report["assets"] is None

    @pytest.mark.asyncio
    async def test_root_cause_candidates_from_error_events(self, orchestrator, mock_es_client, esql_response):
        route_queries(mock_es_client, esql_response, GLOBAL_ROUTES)

        report = await orchestrator.investigate()

        candidates = report["root_cause_candidates"]
        assert len(candidates) == 1
        assert candidates[0]["rank"] == 1
        assert candidates[0]["services"] == ["payment-service"]

    @pytest.mark.asyncio
    async def test_failed_query_recorded_not_raised(self, orchestrator, mock_es_client, esql_response):
        """A backend failure on one plan does not abort the investigation."""
        routes = dict(GLOBAL_ROUTES)
        routes["time_bucket"] = TransportError("connection timed out")
        route_queries(mock_es_client, esql_response, routes)

        report = await orchestrator.investigate()

        timeline = report["queries"][1]
        assert timeline["status"] == "ERROR"
        assert "unreachable" in timeline["error"]
        assert report["queries"][2]["status"] == "SUCCESS"
        assert report["findings_total"] == 2

    @pytest.mark.asyncio
    async def test_max_queries_limits_execution(self, orchestrator, mock_es_client):
        report = await orchestrator.investigate(max_queries=1)

        assert len(report["queries"]) == 1
        assert mock_es_client.esql.query.call_count == 1

    def test_max_queries_capped(self, orchestrator):
        assert orchestrator._resolve_max_queries(50) == MAX_QUERIES_CAP
        assert orchestrator._resolve_max_queries(None) == 5

    @pytest.mark.asyncio
    @pytest.mark.parametrize("kwargs", [
        {"time_range": "2h"},
        {"max_queries": 0},
        {"mode": "flow"},
        {"mode": "sideways"},
    ])
    async def test_invalid_input_before_any_query(self, orchestrator, mock_es_client, kwargs):
        with pytest.raises(InvalidInputError):
            await orchestrator.investigate(**kwargs)
        mock_es_client.esql.query.assert_not_called()

    @pytest.mark.asyncio
    async def test_deadline_exceeded(self, orchestrator, mock_es_client):
        """With no time left every plan is recorded as an error without a backend call."""
        report = await orchestrator.investigate(timeout_seconds=0)

        assert all(q["status"] == "ERROR" for q in report["queries"])
        assert all("deadline exceeded" in q["error"] for q in report["queries"])
        mock_es_client.esql.query.assert_not_called()

    @pytest.mark.asyncio
    async def test_progress_callback(self, mock_es_client, settings):
        steps = []

        async def on_progress(step, message, data):
            steps.append(step)

        orchestrator = InvestigationOrchestrator(mock_es_client, on_progress=on_progress, settings=settings)
        await orchestrator.investigate()

        assert steps[0] == InvestigationStep.PLAN
        assert steps.count(InvestigationStep.EXECUTE) == 3
        assert steps[-1] == InvestigationStep.COMPLETE

    @pytest.mark.asyncio
    async def test_component_investigation_with_assets(self, orchestrator, mock_es_client, esql_response):
        events = [
            {
                "@timestamp": f"2026-01-20T10:{i:02d}:00Z",
                "service.name": "checkout-service",
                "log.level": "error",
                "message": "connection refused by inventory-service",
            }
            for i in range(3)
        ]
        route_queries(mock_es_client, esql_response, {'LIKE "*refused*"': events})

        report = await orchestrator.investigate(target_service="checkout-service", generate_assets=True)

        assert report["mode"] == "component"
        assert len(report["queries"]) == 4
        assert report["root_cause"] == "Network/service connectivity failure - connection refused"
        assert report["next_actions"][0]["description"] == "Check network connectivity and DNS resolution"
        assert report["assets"]["alert"]["severity"] == "high"
        assert report["assets"]["procedures"][0]["trigger"] == "Network connectivity issues detected"
        assert report["root_cause_candidates"][0]["root_cause"] == "NETWORK_FAILURE"

    @pytest.mark.asyncio
    async def test_overlapping_queries_counted_once(self, orchestrator, mock_es_client, esql_response):
        """Error lines returned by several component queries are clustered once."""
        events = [
            {
                "@timestamp": f"2026-01-20T10:{i:02d}:00Z",
                "service.name": "checkout-service",
                "log.level": "error",
                "message": f"Request to inventory-service timed out after {3000 + i}ms",
            }
            for i in range(4)
        ]
        route_queries(mock_es_client, esql_response, {
            "SORT @timestamp DESC": events,
            'LIKE "*timeout*"': events,
        })

        report = await orchestrator.investigate(target_service="checkout-service")

        assert [q["events"] for q in report["queries"] if q["events"]] == [4, 4]
        assert [c["count"] for c in report["root_cause_candidates"]] == [4]

    @pytest.mark.asyncio
    async def test_flow_investigation(self, orchestrator, mock_es_client, esql_response):
        route_queries(mock_es_client, esql_response, {"trace.id": [
            {"@timestamp": "2026-01-20T10:00:00Z", "service.name": "api-gateway", "log.level": "info", "message": "received"},
            {"@timestamp": "2026-01-20T10:00:01Z", "service.name": "payment-service", "log.level": "error",
             "message": "Card processor unavailable"},
        ]})

        report = await orchestrator.investigate(trace_id="4bf92f3577b34da6")

        assert report["mode"] == "flow"
        assert report["root_cause"] == "Request failed at payment-service: Card processor unavailable"
        assert report["affected_services"] == ["payment-service"]

    @pytest.mark.asyncio
    async def test_shared_cache_scoped_by_tenant(self, mock_es_client, esql_response, settings):
        """Repeated runs for the same tenant reuse cached clusters."""
        cache = ClusterCache()
        routes = dict(GLOBAL_ROUTES)
        routes['("critical", "fatal")'] = critical_events(12)
        route_queries(mock_es_client, esql_response, routes)
        orchestrator = InvestigationOrchestrator(mock_es_client, cache=cache, settings=settings)

        await orchestrator.investigate(tenant_id="acme")
        await orchestrator.investigate(tenant_id="acme")

        stats = cache.stats()
        assert stats["hits"] >= 1
        assert stats["tenant_count"] == 1


class TestFormatInvestigationReport:
    """Tests for Markdown rendering."""

    @pytest.mark.asyncio
    async def test_sections(self, mock_es_client, esql_response, settings):
        route_queries(mock_es_client, esql_response, GLOBAL_ROUTES)
        report = await InvestigationOrchestrator(mock_es_client, settings=settings).investigate()

        text = format_investigation_report(report)

        assert text.startswith("## Smart Investigation Report")
        assert "### Query Execution" in text
        assert "### Root Cause" in text
        assert "### Findings" in text
        assert "### Suggested Next Actions" in text


class TestInvestigateSync:
    """Tests for the synchronous wrapper."""

    def test_sync_wrapper(self, mock_es_client):
        report = investigate_sync(mock_es_client, time_range="15m", max_queries=2)

        assert report["status"] == "completed"
        assert len(report["queries"]) == 2
