"""
test_logging_config.py — JSON log formatting.
"""

import json
import logging

from app.services.logging_config import JSONFormatter


def _record(**extra):
    record = logging.LogRecord("defects-issues", logging.WARNING, __file__, 10, "status %s", ("DONE",), None)
    for key, value in extra.items():
        setattr(record, key, value)
    return record


class TestJSONFormatter:
    def test_core_fields(self):
        entry = json.loads(JSONFormatter().format(_record()))
        assert entry["level"] == "WARNING"
        assert entry["logger"] == "defects-issues"
        assert entry["message"] == "status DONE"
        assert entry["timestamp"].endswith("+00:00")

    def test_context_extras_copied(self):
        entry = json.loads(JSONFormatter().format(_record(issue_id="i1", duration_ms=3.5, colour="red")))
        assert entry["issue_id"] == "i1"
        assert entry["duration_ms"] == 3.5
        assert "colour" not in entry
