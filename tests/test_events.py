"""
Unit tests for event field helpers.
"""

from logprobe.utils.events import dedupe_events, event_message, get_field


class TestGetField:
    """Tests for dotted field access."""

    def test_flat_and_nested(self):
        assert get_field({"service.name": "api"}, "service.name") == "api"
        assert get_field({"service": {"name": "api"}}, "service.name") == "api"
        assert get_field({"service": "api"}, "service.name") is None

    def test_message_fallbacks(self):
        assert event_message({"error.message": "boom"}) == "boom"
        assert event_message({}) == ""


class TestDedupeEvents:
    """Tests for dropping repeated log lines."""

    def test_repeats_dropped_in_order(self):
        first = {"@timestamp": "2026-01-20T10:00:00Z", "service.name": "api", "message": "timed out"}
        second = {"@timestamp": "2026-01-20T10:01:00Z", "service.name": "api", "message": "timed out"}

        assert dedupe_events([first, second, dict(first), second]) == [first, second]

    def test_same_line_from_different_services_kept(self):
        events = [
            {"@timestamp": "2026-01-20T10:00:00Z", "service.name": "api", "message": "timed out"},
            {"@timestamp": "2026-01-20T10:00:00Z", "service.name": "web", "message": "timed out"},
        ]

        assert len(dedupe_events(events)) == 2
