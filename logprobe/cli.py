#!/usr/bin/env python3
"""
LogProbe CLI - Command-line interface for incident investigation.

Usage:
    logprobe investigate --time-range 1h
    logprobe investigate --service checkout-service --assets
    logprobe investigate --trace-id 4bf92f3577b34da6a3ce929d0e0e4736
    logprobe changes 2024-03-01T10:30:00Z --before 2h --after 15m
    logprobe delta 2024-03-01T10:30:00Z --window 30m --min-severity error
    logprobe categories
    logprobe status
"""

import asyncio
import json
import sys
from typing import Optional, Dict, Any, List

import click
from rich.console import Console
from rich.markdown import Markdown
from rich.panel import Panel
from rich.table import Table

from logprobe import __version__
from logprobe.agent.orchestrator import (
    TIME_RANGE_CHOICES,
    InvestigationOrchestrator,
    InvestigationStep,
    format_investigation_report,
)
from logprobe.analysis.delta import SEVERITY_LEVELS, WINDOW_SIZE_CHOICES, analyze_log_delta, format_delta_report
from logprobe.changes.correlator import (
    WINDOW_AFTER_CHOICES,
    WINDOW_BEFORE_CHOICES,
    correlate_changes,
    format_change_report,
)
from logprobe.changes.patterns import RISK_ORDER, PatternRegistry, default_registry
from logprobe.exceptions import ConfigurationError, InvalidInputError, LogProbeException
from logprobe.tools.query_executor import QueryExecutor
from logprobe.utils.config import get_settings
from logprobe.utils.elasticsearch_client import get_elasticsearch_client, verify_connection
from logprobe.utils.logger import setup_logging

console = Console()


def get_client():
    """Get Elasticsearch client with error handling."""
    try:
        return get_elasticsearch_client()
    except ConfigurationError as e:
        console.print(f"[red]Error connecting to Elasticsearch: {e}[/red]")
        console.print("\nMake sure you have configured your .env file.")
        sys.exit(1)


def fail(error: LogProbeException):
    console.print(f"[red]Error: {error}[/red]")
    sys.exit(1)


def load_patterns_file(path: str, registry: PatternRegistry):
    """Register custom change categories from a JSON file of {"CATEGORY": ["keyword", ...]}."""
    with open(path) as f:
        try:
            data = json.load(f)
        except json.JSONDecodeError as e:
            raise InvalidInputError(f"Invalid patterns file {path}: {e}") from e

    if not isinstance(data, dict):
        raise InvalidInputError(f"Patterns file {path} must contain a JSON object")
    for change_type, patterns in data.items():
        if not isinstance(patterns, list):
            raise InvalidInputError(f"Patterns for '{change_type}' must be a list")
        registry.register_change_type(change_type, patterns)


@click.group()
@click.version_option(version=__version__, prog_name="LogProbe")
def cli():
    """LogProbe - Autonomous Log Investigator

    Root-cause analysis and change correlation over Elasticsearch logs.
    """
    setup_logging(get_settings().log_level)


@cli.command()
@click.option("--time-range", "-t", default="1h", type=click.Choice(TIME_RANGE_CHOICES), help="Lookback window")
@click.option("--service", "-s", default=None, help="Service to focus on (component mode)")
@click.option("--trace-id", default=None, help="Trace to follow (flow mode)")
@click.option("--correlation-id", default=None, help="Correlation id to follow (flow mode)")
@click.option("--max-queries", "-n", default=None, type=int, help="Maximum queries to run (default 5, max 10)")
@click.option("--assets/--no-assets", default=False, help="Generate alert and dashboard assets")
@click.option("--tenant", default=None, help="Tenant id used to scope cached results")
@click.option("--mode", default=None, type=click.Choice(["global", "component", "flow"]), help="Force a mode")
@click.option("--json", "as_json", is_flag=True, help="Print the raw report as JSON")
def investigate(
    time_range: str,
    service: Optional[str],
    trace_id: Optional[str],
    correlation_id: Optional[str],
    max_queries: Optional[int],
    assets: bool,
    tenant: Optional[str],
    mode: Optional[str],
    as_json: bool,
):
    """Run an autonomous investigation.

    Example:
        logprobe investigate --service checkout-service --time-range 6h
    """
    client = get_client()

    async def on_progress(step: InvestigationStep, message: str, data: Dict[str, Any]):
        if not as_json:
            console.print(f"[bold cyan]{step.value.upper()}[/bold cyan] {message}")

    orchestrator = InvestigationOrchestrator(client, on_progress=on_progress)
    try:
        report = asyncio.run(orchestrator.investigate(
            time_range=time_range,
            target_service=service,
            trace_id=trace_id,
            correlation_id=correlation_id,
            max_queries=max_queries,
            generate_assets=assets,
            tenant_id=tenant,
            mode=mode,
        ))
    except LogProbeException as e:
        fail(e)

    if as_json:
        click.echo(json.dumps(report, indent=2))
        return

    console.print(Panel(
        Markdown(format_investigation_report(report)),
        title="Investigation Report",
        border_style="green",
    ))


@cli.command()
@click.argument("incident_time")
@click.option("--before", "-b", default="1h", type=click.Choice(WINDOW_BEFORE_CHOICES), help="Lookback window")
@click.option("--after", "-a", default="15m", type=click.Choice(WINDOW_AFTER_CHOICES), help="Look-ahead window")
@click.option("--service", "-s", default=None, help="Filter by service name")
@click.option("--type", "change_types", multiple=True, help="Only keep this change category (repeatable)")
@click.option("--cursor", default=None, help="Cursor from a previous page")
@click.option("--patterns-file", default=None, type=click.Path(exists=True, dir_okay=False),
              help="JSON file of custom change categories")
@click.option("--json", "as_json", is_flag=True, help="Print the raw analysis as JSON")
def changes(
    incident_time: str,
    before: str,
    after: str,
    service: Optional[str],
    change_types: List[str],
    cursor: Optional[str],
    patterns_file: Optional[str],
    as_json: bool,
):
    """Correlate an incident with recent changes.

    Example:
        logprobe changes 2024-03-01T10:30:00Z --before 2h
    """
    client = get_client()
    settings = get_settings()
    registry = default_registry()

    try:
        if patterns_file:
            load_patterns_file(patterns_file, registry)
        analysis = correlate_changes(
            QueryExecutor(client),
            registry,
            incident_time,
            window_before=before,
            window_after=after,
            service=service,
            change_types=list(change_types) or None,
            cursor=cursor,
            index_pattern=settings.log_index_pattern,
        )
    except LogProbeException as e:
        fail(e)

    if as_json:
        click.echo(json.dumps(analysis.to_dict(), indent=2))
        return

    border = "red" if analysis.error else "blue"
    console.print(Panel(Markdown(format_change_report(analysis)), title="Change Correlation", border_style=border))


@cli.command()
@click.argument("incident_time")
@click.option("--window", "-w", default="15m", type=click.Choice(WINDOW_SIZE_CHOICES), help="Size of each comparison window")
@click.option("--service", "-s", default=None, help="Filter by service name")
@click.option("--min-severity", default="warning", type=click.Choice(list(SEVERITY_LEVELS)),
              help="Lowest log level analyzed")
@click.option("--tenant", default=None, help="Tenant scope for cached clusters")
@click.option("--json", "as_json", is_flag=True, help="Print the raw delta as JSON")
def delta(
    incident_time: str,
    window: str,
    service: Optional[str],
    min_severity: str,
    tenant: Optional[str],
    as_json: bool,
):
    """Compare log patterns before and after an incident.

    Example:
        logprobe delta 2024-03-01T10:30:00Z --window 30m
    """
    client = get_client()
    settings = get_settings()

    try:
        result = analyze_log_delta(
            QueryExecutor(client),
            incident_time,
            window_size=window,
            service=service,
            min_severity=min_severity,
            index_pattern=settings.log_index_pattern,
            tenant_id=tenant,
        )
    except LogProbeException as e:
        fail(e)

    if as_json:
        click.echo(json.dumps(result.to_dict(), indent=2))
        return

    border = "red" if result.error else "blue"
    console.print(Panel(Markdown(format_delta_report(result)), title="Log Delta", border_style=border))


@cli.command()
@click.option("--patterns-file", default=None, type=click.Path(exists=True, dir_okay=False),
              help="JSON file of custom change categories")
def categories(patterns_file: Optional[str]):
    """List change categories and risk keywords."""
    registry = default_registry()
    if patterns_file:
        try:
            load_patterns_file(patterns_file, registry)
        except LogProbeException as e:
            fail(e)

    table = Table(title="Change Categories")
    table.add_column("Category", style="cyan")
    table.add_column("Keywords")
    for change_type in registry.change_types():
        table.add_row(change_type, ", ".join(registry.patterns(change_type)))
    console.print(table)

    risk_table = Table(title="Risk Tiers")
    risk_table.add_column("Level", style="yellow")
    risk_table.add_column("Keywords")
    for level in RISK_ORDER:
        risk_table.add_row(level, ", ".join(registry.risk_patterns(level)) or "[dim](default)[/dim]")
    console.print(risk_table)


@cli.command()
def status():
    """Check connection status and configuration."""
    client = get_client()
    settings = get_settings()

    console.print("[bold]LogProbe Status[/bold]\n")

    try:
        info = verify_connection(client)
    except ConnectionError as e:
        console.print(f"[red]Elasticsearch: Error - {e}[/red]")
        sys.exit(1)

    console.print(f"[green]Elasticsearch: Connected to {info['cluster_name']} ({info['version']})[/green]")
    console.print(f"Log index pattern: [cyan]{settings.log_index_pattern}[/cyan]")
    console.print(f"Max queries per investigation: {settings.max_queries}")
    console.print(
        f"Cluster cache: {settings.cache_max_size} entries, "
        f"{settings.cache_shards} shards, {settings.cache_ttl_seconds}s TTL"
    )


if __name__ == "__main__":
    cli()
