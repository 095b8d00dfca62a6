"""
Tests for the LogProbe command-line interface.
"""

import json

import pytest
import structlog
from click.testing import CliRunner

from logprobe import cli as cli_module
from logprobe.changes.patterns import PatternRegistry
from logprobe.cli import cli
from logprobe.exceptions import ConfigurationError


@pytest.fixture(autouse=True)
def isolated_cli(monkeypatch, mock_es_client):
    """Route the CLI to a mock client and a fresh pattern registry."""
    registry = PatternRegistry()
    monkeypatch.setenv("LOGPROBE_LOG_LEVEL", "WARNING")
    monkeypatch.setattr(cli_module, "get_elasticsearch_client", lambda: mock_es_client)
    monkeypatch.setattr(cli_module, "default_registry", lambda: registry)
    yield registry
    # setup_logging binds the runner's stderr, which is closed after each invoke.
    structlog.reset_defaults()


@pytest.fixture
def runner():
    return CliRunner()


class TestInvestigateCommand:
    """Tests for `logprobe investigate`."""

    def test_json_report(self, runner):
        result = runner.invoke(cli, ["investigate", "--time-range", "15m", "--json"])

        assert result.exit_code == 0
        report = json.loads(result.output)
        assert report["mode"] == "global"
        assert report["time_range"]["hint"] == "15m"

    def test_markdown_report(self, runner):
        result = runner.invoke(cli, ["investigate", "--service", "checkout-service"])

        assert result.exit_code == 0
        assert "Smart Investigation Report" in result.output

    def test_invalid_time_range(self, runner):
        result = runner.invoke(cli, ["investigate", "--time-range", "2h"])
        assert result.exit_code == 2

    def test_flow_mode_without_ids(self, runner, mock_es_client):
        result = runner.invoke(cli, ["investigate", "--mode", "flow"])

        assert result.exit_code == 1
        assert "Error" in result.output
        mock_es_client.esql.query.assert_not_called()

    def test_missing_configuration(self, runner, monkeypatch):
        def broken():
            raise ConfigurationError("Missing Elasticsearch configuration")

        monkeypatch.setattr(cli_module, "get_elasticsearch_client", broken)

        result = runner.invoke(cli, ["investigate"])

        assert result.exit_code == 1
        assert "Missing Elasticsearch configuration" in result.output


class TestChangesCommand:
    """Tests for `logprobe changes`."""

    def test_json_analysis(self, runner, mock_es_client, esql_response):
        mock_es_client.esql.query.return_value = esql_response.from_rows([
            {"@timestamp": "2026-01-20T10:25:00Z", "message": "Deployment checkout-service v2.4.0 started",
             "service.name": "checkout-service"},
        ])

        result = runner.invoke(cli, ["changes", "2026-01-20T10:30:00Z", "--before", "2h", "--json"])

        assert result.exit_code == 0
        analysis = json.loads(result.output)
        assert analysis["likely_trigger"]["change_type"] == "DEPLOYMENT"
        assert analysis["window"]["start"] == "2026-01-20T08:30:00Z"

    def test_invalid_incident_time(self, runner):
        result = runner.invoke(cli, ["changes", "last tuesday"])

        assert result.exit_code == 1
        assert "Invalid incident_time" in result.output

    def test_patterns_file(self, runner, mock_es_client, esql_response, tmp_path, isolated_cli):
        patterns = tmp_path / "patterns.json"
        patterns.write_text(json.dumps({"CDN": ["cdn purge"]}))
        mock_es_client.esql.query.return_value = esql_response.from_rows([
            {"@timestamp": "2026-01-20T10:20:00Z", "message": "CDN purge requested for static assets"},
        ])

        result = runner.invoke(cli, [
            "changes", "2026-01-20T10:30:00Z", "--patterns-file", str(patterns), "--type", "CDN", "--json",
        ])

        assert result.exit_code == 0
        assert json.loads(result.output)["total_changes"] == 1
        assert "CDN" in isolated_cli.change_types()

    def test_bad_patterns_file(self, runner, tmp_path):
        patterns = tmp_path / "patterns.json"
        patterns.write_text(json.dumps(["not", "a", "mapping"]))

        result = runner.invoke(cli, ["changes", "2026-01-20T10:30:00Z", "--patterns-file", str(patterns)])

        assert result.exit_code == 1

    def test_markdown_report(self, runner):
        result = runner.invoke(cli, ["changes", "2026-01-20T10:30:00Z"])

        assert result.exit_code == 0
        assert "Change Correlation Report" in result.output


class TestDeltaCommand:
    """Tests for `logprobe delta`."""

    def test_json_delta(self, runner, mock_es_client):
        result = runner.invoke(cli, ["delta", "2026-01-20T10:30:00Z", "--window", "30m", "--json"])

        assert result.exit_code == 0
        data = json.loads(result.output)
        assert data["before"]["start"] == "2026-01-20T09:30:00Z"
        assert data["after"]["end"] == "2026-01-20T11:00:00Z"
        assert data["hypotheses"][0]["strength"] == "weak"
        assert mock_es_client.esql.query.call_count == 2

    def test_invalid_window(self, runner):
        result = runner.invoke(cli, ["delta", "2026-01-20T10:30:00Z", "--window", "2h"])
        assert result.exit_code == 2

    def test_markdown_report(self, runner):
        result = runner.invoke(cli, ["delta", "2026-01-20T10:30:00Z"])

        assert result.exit_code == 0
        assert "Log Delta Analysis" in result.output


class TestCategoriesCommand:
    """Tests for `logprobe categories`."""

    def test_lists_builtin_categories(self, runner):
        result = runner.invoke(cli, ["categories"])

        assert result.exit_code == 0
        assert "DEPLOYMENT" in result.output
        assert "INFRASTRUCTURE" in result.output


class TestStatusCommand:
    """Tests for `logprobe status`."""

    def test_connected(self, runner):
        result = runner.invoke(cli, ["status"])

        assert result.exit_code == 0
        assert "test-cluster" in result.output

    def test_connection_failure(self, runner, mock_es_client):
        mock_es_client.info.side_effect = Exception("connection refused")

        result = runner.invoke(cli, ["status"])

        assert result.exit_code == 1
        assert "Error" in result.output
