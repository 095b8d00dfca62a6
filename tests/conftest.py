"""
Pytest configuration and shared fixtures for LogProbe tests.
"""

import pytest
from unittest.mock import MagicMock
from datetime import datetime, timezone

from logprobe.utils.config import Settings


def pytest_configure(config):
    """Configure pytest with custom markers."""
    config.addinivalue_line(
        "markers", "integration: marks tests as integration tests (requires ES)"
    )


class MockEsqlResponse:
    """Helper class to build ES|QL columnar responses."""

    @staticmethod
    def from_rows(rows: list):
        """Build a columns/values response from a list of dicts."""
        columns = []
        for row in rows:
            for key in row:
                if key not in columns:
                    columns.append(key)
        return {
            "columns": [{"name": name, "type": "keyword"} for name in columns],
            "values": [[row.get(name) for name in columns] for row in rows],
        }

    @staticmethod
    def empty():
        return {"columns": [], "values": []}


@pytest.fixture
def esql_response():
    """Fixture providing the MockEsqlResponse helper."""
    return MockEsqlResponse


@pytest.fixture
def mock_es_client():
    """
    Create a mock Elasticsearch client.

    esql.query returns an empty result unless a test overrides it. options()
    returns the same mock so per-request timeouts stay observable.
    """
    client = MagicMock()
    client.esql.query.return_value = MockEsqlResponse.empty()
    client.options.return_value = client
    client.info.return_value = {
        "cluster_name": "test-cluster",
        "version": {"number": "8.15.0"},
    }
    return client


@pytest.fixture
def settings():
    """Settings with defaults, independent of the local environment."""
    return Settings(url="http://localhost:9200", api_key="test-key")


@pytest.fixture
def incident_time():
    return datetime(2026, 1, 20, 10, 30, 0, tzinfo=timezone.utc)


@pytest.fixture
def sample_error_events():
    """Flattened ES|QL rows for an incident: memory pressure, then timeouts."""
    return [
        {
            "@timestamp": "2026-01-20T10:20:00Z",
            "service.name": "inventory-service",
            "log.level": "error",
            "message": "java.lang.OutOfMemoryError: Java heap space",
        },
        {
            "@timestamp": "2026-01-20T10:21:00Z",
            "service.name": "inventory-service",
            "log.level": "error",
            "message": "java.lang.OutOfMemoryError: Java heap space",
        },
        {
            "@timestamp": "2026-01-20T10:25:00Z",
            "service.name": "checkout-service",
            "log.level": "error",
            "message": "Request to inventory-service timed out after 5000ms",
        },
        {
            "@timestamp": "2026-01-20T10:26:00Z",
            "service.name": "checkout-service",
            "log.level": "error",
            "message": "Request to inventory-service timed out after 3000ms",
        },
    ]


class FakeClock:
    """Manually advanced monotonic clock."""

    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float):
        self.now += seconds


@pytest.fixture
def fake_clock():
    return FakeClock()
