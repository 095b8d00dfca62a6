"""
Investigation Orchestrator for LogProbe

Drives one investigation end to end:
1. PLAN       - pick a mode and strategy, bound its query plan
2. EXECUTE    - run the plans one at a time, in plan order
3. ANALYZE    - turn results into findings
4. SUGGEST    - merge strategy and heuristic next actions
5. SYNTHESIZE - conclude a root cause, rank causal candidates, build assets

Backend failures on individual plans are recorded on the query history and
never abort the investigation.
"""

import asyncio
import time
from enum import Enum
from typing import Optional, Dict, Any, Callable, Awaitable

import structlog
from elasticsearch import Elasticsearch

from logprobe.agent.heuristics import HeuristicEngine
from logprobe.agent.models import (
    AnalysisThresholds,
    ExecutedQuery,
    InvestigationContext,
    QueryPlan,
    dedupe_actions,
    sort_findings,
)
from logprobe.agent import remediation
from logprobe.agent.strategies import create_strategy, select_mode
from logprobe.analysis.causal import rank_root_causes
from logprobe.analysis.cluster_cache import ClusterCache, cluster_logs_with_cache
from logprobe.exceptions import InvalidInputError, RemoteQueryError
from logprobe.tools.query_executor import QueryExecutor, QueryRequest, auto_correct_query, clean_query_string
from logprobe.utils.config import Settings, get_settings
from logprobe.utils.events import ERROR_RANK, dedupe_events, event_level, level_rank, truncate_text
from logprobe.utils.time_ranges import format_timestamp, parse_choice_duration, utc_now

logger = structlog.get_logger()

TIME_RANGE_CHOICES = ("15m", "1h", "6h", "24h")
MAX_QUERIES_CAP = 10
REPORT_FINDINGS_LIMIT = 10
REPORT_ACTIONS_LIMIT = 5
DEADLINE_EXCEEDED = "deadline exceeded before query could run"


class InvestigationStep(Enum):
    """Steps in the investigation workflow."""
    PLAN = "plan"
    EXECUTE = "execute"
    ANALYZE = "analyze"
    SUGGEST = "suggest"
    SYNTHESIZE = "synthesize"
    COMPLETE = "complete"


# Type alias for progress callback
ProgressCallback = Callable[[InvestigationStep, str, Dict[str, Any]], Awaitable[None]]


class InvestigationOrchestrator:
    """
    Runs autonomous investigations against the log backend.

    The cluster cache and heuristic engine are injected so that several
    orchestrators (or concurrent investigations) can share them.
    """

    def __init__(
        self,
        client: Optional[Elasticsearch] = None,
        on_progress: Optional[ProgressCallback] = None,
        cache: Optional[ClusterCache] = None,
        heuristics: Optional[HeuristicEngine] = None,
        settings: Optional[Settings] = None,
        executor: Optional[QueryExecutor] = None,
    ):
        """
        Initialize the orchestrator.

        Args:
            client: Elasticsearch client (ignored when executor is given)
            on_progress: Optional async callback for progress updates
            cache: Shared cluster cache; a private one is created if omitted
            heuristics: Heuristic engine; the default detector set if omitted
            settings: Settings; read from the environment if omitted
            executor: Query executor; built from client if omitted
        """
        if client is None and executor is None:
            raise ValueError("Either client or executor is required")

        self.client = client
        self.on_progress = on_progress
        self.settings = settings or get_settings()
        self.executor = executor or QueryExecutor(client)
        self.cache = cache if cache is not None else ClusterCache(
            max_size=self.settings.cache_max_size,
            ttl_seconds=self.settings.cache_ttl_seconds,
            shard_count=self.settings.cache_shards,
        )
        self.heuristics = heuristics or HeuristicEngine(index_pattern=self.settings.log_index_pattern)
        self.thresholds = AnalysisThresholds.from_settings(self.settings)

    async def _emit_progress(
        self,
        step: InvestigationStep,
        message: str,
        data: Optional[Dict[str, Any]] = None,
    ):
        """Emit progress update if callback is registered."""
        if self.on_progress:
            await self.on_progress(step, message, data or {})

    def _resolve_max_queries(self, max_queries: Optional[int]) -> int:
        if max_queries is None:
            max_queries = self.settings.max_queries
        if max_queries < 1:
            raise InvalidInputError(f"max_queries must be at least 1, got {max_queries}")
        return min(max_queries, MAX_QUERIES_CAP)

    async def investigate(
        self,
        time_range: str = "1h",
        target_service: Optional[str] = None,
        trace_id: Optional[str] = None,
        correlation_id: Optional[str] = None,
        max_queries: Optional[int] = None,
        generate_assets: bool = False,
        tenant_id: Optional[str] = None,
        mode: Optional[str] = None,
        timeout_seconds: Optional[float] = None,
    ) -> Dict[str, Any]:
        """
        Run a complete investigation.

        Args:
            time_range: Lookback window (15m, 1h, 6h or 24h)
            target_service: Service to focus on (component mode)
            trace_id: Trace to follow (flow mode)
            correlation_id: Correlation id to follow (flow mode)
            max_queries: Maximum plans to execute (default 5, capped at 10)
            generate_assets: Build alert/dashboard assets when findings exist
            tenant_id: Scopes cached clustering results to one tenant
            mode: Force global, component or flow instead of auto-selecting
            timeout_seconds: Overall deadline shared by all backend calls

        Returns:
            Investigation report

        Raises:
            InvalidInputError: On invalid arguments, before any backend call
        """
        started = time.monotonic()
        window = parse_choice_duration(time_range, TIME_RANGE_CHOICES, "time_range")
        limit = self._resolve_max_queries(max_queries)
        selected = select_mode(target_service, trace_id, correlation_id, override=mode)
        deadline = started + timeout_seconds if timeout_seconds is not None else None

        end = utc_now()
        context = InvestigationContext(
            mode=selected,
            start=end - window,
            end=end,
            index_pattern=self.settings.log_index_pattern,
            target_service=target_service,
            trace_id=trace_id,
            correlation_id=correlation_id,
            tenant_id=tenant_id,
        )
        strategy = create_strategy(selected, self.thresholds, self.cache, self.settings.cache_min_batch)

        plans = strategy.initial_queries(context)[:limit]
        log = logger.bind(mode=selected.value, tenant=tenant_id)
        log.info("Investigation started", plans=len(plans), time_range=time_range)
        await self._emit_progress(
            InvestigationStep.PLAN,
            f"Selected {selected.value} mode with {len(plans)} queries",
            {"mode": selected.value, "plans": [p.id for p in plans]},
        )

        for plan in plans:
            executed = await self._execute_plan(context, plan, deadline)
            context.query_history.append(executed)
            await self._emit_progress(
                InvestigationStep.EXECUTE,
                f"{plan.id}: {'ERROR' if executed.error else 'SUCCESS'}",
                {"events": len(executed.events), "error": executed.error},
            )

        context.findings.extend(strategy.analyze_results(context, context.query_history))
        await self._emit_progress(
            InvestigationStep.ANALYZE,
            f"Extracted {len(context.findings)} findings",
            {"findings": len(context.findings)},
        )

        events = context.all_events
        heuristic_actions = self.heuristics.analyze(context.findings, events)
        strategy_actions = strategy.suggest_next_actions(context)
        context.next_actions = dedupe_actions(heuristic_actions + strategy_actions)
        await self._emit_progress(
            InvestigationStep.SUGGEST,
            f"Suggested {len(context.next_actions)} next actions",
            {"actions": len(context.next_actions)},
        )

        summary = strategy.synthesize_evidence(context)
        candidates = self._rank_candidates(context)

        assets = None
        procedures = []
        if generate_assets and context.findings:
            assets = remediation.generate_assets(
                summary,
                context.findings,
                context.index_pattern,
                self.heuristics,
                threshold=self.thresholds.error_count,
            )
        else:
            procedures = self.heuristics.procedures(context.findings, events)

        await self._emit_progress(
            InvestigationStep.SYNTHESIZE,
            "Root cause synthesized",
            {"root_cause": summary.root_cause, "confidence": summary.confidence},
        )

        ranked = sort_findings(context.findings)
        report = {
            "status": "completed",
            "mode": selected.value,
            "time_range": {
                "hint": time_range,
                "start": format_timestamp(context.start),
                "end": format_timestamp(context.end),
            },
            "target_service": target_service,
            "trace_id": trace_id,
            "correlation_id": correlation_id,
            "queries": [self._query_status(q) for q in context.query_history],
            "root_cause": summary.root_cause,
            "confidence": round(summary.confidence, 3),
            "impact": summary.impact,
            "affected_services": summary.affected_services,
            "findings": [f.to_dict() for f in ranked[:REPORT_FINDINGS_LIMIT]],
            "findings_total": len(ranked),
            "findings_omitted": max(len(ranked) - REPORT_FINDINGS_LIMIT, 0),
            "next_actions": [a.to_dict() for a in context.next_actions[:REPORT_ACTIONS_LIMIT]],
            "next_actions_total": len(context.next_actions),
            "root_cause_candidates": [c.to_dict() for c in candidates],
            "assets": assets.to_dict() if assets else None,
            "procedures": [p.to_dict() for p in procedures],
            "duration_seconds": round(time.monotonic() - started, 3),
        }

        log.info(
            "Investigation complete",
            findings=len(ranked),
            confidence=report["confidence"],
            failed_queries=sum(1 for q in context.query_history if q.error),
        )
        await self._emit_progress(InvestigationStep.COMPLETE, "Investigation complete", {})
        return report

    async def _execute_plan(
        self,
        context: InvestigationContext,
        plan: QueryPlan,
        deadline: Optional[float],
    ) -> ExecutedQuery:
        """Run one plan. Failures are recorded on the result, not raised."""
        corrected, corrections = auto_correct_query(clean_query_string(plan.query))
        executed = ExecutedQuery(
            plan_id=plan.id,
            purpose=plan.purpose,
            query=corrected,
            corrections=corrections,
        )

        timeout = None
        if deadline is not None:
            timeout = deadline - time.monotonic()
            if timeout <= 0:
                executed.error = DEADLINE_EXCEEDED
                logger.warning("Query skipped", plan=plan.id, error=DEADLINE_EXCEEDED)
                return executed

        request = QueryRequest(
            query=corrected,
            tier=plan.tier,
            start=context.start,
            end=context.end,
            timeout=timeout,
        )

        start = time.monotonic()
        try:
            result = await asyncio.to_thread(self.executor.execute, request)
            executed.events = result.events
        except RemoteQueryError as e:
            executed.error = str(e)
            logger.warning("Query failed", plan=plan.id, error=str(e))
        executed.duration_ms = (time.monotonic() - start) * 1000
        return executed

    def _rank_candidates(self, context: InvestigationContext):
        """Cluster error-level events and rank them as root-cause candidates."""
        # Component and flow plans overlap on the same error lines.
        error_events = [
            e for e in dedupe_events(context.all_events)
            if level_rank(event_level(e)) >= ERROR_RANK
        ]
        if not error_events:
            return []
        clusters = cluster_logs_with_cache(
            error_events,
            self.cache,
            context.tenant_id,
            self.settings.cache_min_batch,
        )
        return rank_root_causes(clusters)

    @staticmethod
    def _query_status(executed: ExecutedQuery) -> Dict[str, Any]:
        return {
            "id": executed.plan_id,
            "purpose": executed.purpose,
            "status": "ERROR" if executed.error else "SUCCESS",
            "events": len(executed.events),
            "duration_ms": round(executed.duration_ms, 1),
            "error": executed.error,
            "corrections": executed.corrections,
            "query": executed.query,
        }


def format_investigation_report(report: Dict[str, Any]) -> str:
    """Render an investigation report as Markdown."""
    lines = [
        "## Smart Investigation Report",
        "",
        f"**Mode**: {report['mode']}",
        f"**Time Range**: {report['time_range']['start']} to {report['time_range']['end']}",
    ]
    if report.get("target_service"):
        lines.append(f"**Service**: {report['target_service']}")
    if report.get("trace_id"):
        lines.append(f"**Trace ID**: {report['trace_id']}")
    if report.get("correlation_id"):
        lines.append(f"**Correlation ID**: {report['correlation_id']}")

    lines.extend(["", "### Query Execution", ""])
    for query in report["queries"]:
        if query["error"]:
            lines.append(f"- **{query['id']}**: ERROR - {query['error']}")
        else:
            lines.append(
                f"- **{query['id']}**: SUCCESS ({query['events']} events, {query['duration_ms']:.0f}ms)"
            )

    lines.extend([
        "",
        "### Root Cause",
        "",
        report["root_cause"],
        "",
        f"_Confidence: {report['confidence'] * 100:.0f}%_",
        "",
        "### Impact",
        "",
        report["impact"],
    ])

    if report["affected_services"]:
        lines.extend(["", "### Affected Services", ""])
        lines.extend(f"- {service}" for service in report["affected_services"])

    if report["findings"]:
        lines.extend(["", "### Findings", ""])
        for i, finding in enumerate(report["findings"], 1):
            lines.append(f"{i}. **[{finding['severity'].upper()}]** {finding['summary']}")
            if finding.get("evidence"):
                lines.append(f"   - Evidence: {finding['evidence']}")
        if report["findings_omitted"]:
            lines.append(f"\n_... and {report['findings_omitted']} more findings_")

    if report["root_cause_candidates"]:
        lines.extend(["", "### Root Cause Candidates", ""])
        for candidate in report["root_cause_candidates"]:
            lines.append(
                f"{candidate['rank']}. **{candidate['root_cause']}** "
                f"(score {candidate['score']:.2f}, {candidate['count']} events): {candidate['template']}"
            )
        path = report["root_cause_candidates"][0]["propagation_path"]
        if len(path) > 1:
            lines.append(f"\nPropagation: {' → '.join(path)}")

    if report["next_actions"]:
        lines.extend(["", "### Suggested Next Actions", ""])
        for i, action in enumerate(report["next_actions"], 1):
            lines.append(f"{i}. **{action['description']}** (priority {action['priority']})")
            lines.append(f"   - {action['rationale']}")
            if action.get("query"):
                query = truncate_text(" ".join(action["query"].split()), 100)
                lines.append(f"   - Query: `{query}`")

    if report.get("assets"):
        assets = report["assets"]
        lines.extend([
            "",
            "### Generated Assets",
            "",
            f"- **Alert**: {assets['alert']['name']} "
            f"(severity {assets['alert']['severity']}, threshold {assets['alert']['threshold']})",
            f"- **Dashboard**: {assets['dashboard']['name']} "
            f"({', '.join(assets['dashboard']['widgets'])})",
        ])
        for procedure in assets["procedures"]:
            lines.append(f"- **Procedure**: {procedure['trigger']}")
    elif report.get("procedures"):
        lines.extend(["", "### Recommended Procedures", ""])
        for procedure in report["procedures"]:
            lines.append(f"**{procedure['trigger']}**")
            lines.extend(f"{i}. {step}" for i, step in enumerate(procedure["steps"], 1))
            if procedure["escalation"]:
                lines.append(f"_Escalation: {procedure['escalation']}_")
            lines.append("")

    return "\n".join(lines).rstrip() + "\n"


async def run_investigation(
    client: Elasticsearch,
    time_range: str = "1h",
    target_service: Optional[str] = None,
    trace_id: Optional[str] = None,
    correlation_id: Optional[str] = None,
    max_queries: Optional[int] = None,
    generate_assets: bool = False,
    on_progress: Optional[ProgressCallback] = None,
    cache: Optional[ClusterCache] = None,
    tenant_id: Optional[str] = None,
) -> Dict[str, Any]:
    """Convenience function to run an investigation."""
    orchestrator = InvestigationOrchestrator(client, on_progress=on_progress, cache=cache)
    return await orchestrator.investigate(
        time_range=time_range,
        target_service=target_service,
        trace_id=trace_id,
        correlation_id=correlation_id,
        max_queries=max_queries,
        generate_assets=generate_assets,
        tenant_id=tenant_id,
    )


# Synchronous wrapper for non-async contexts
def investigate_sync(client: Elasticsearch, **kwargs) -> Dict[str, Any]:
    """
    Synchronous wrapper for investigation.

    For use in contexts where async is not available.
    """
    return asyncio.run(run_investigation(client, **kwargs))
