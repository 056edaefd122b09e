"""
Tests for intakeflow/utils/logging.py - JSON formatter and correlation ids.
"""
import json
import logging
import sys

from intakeflow.utils.logging import (
    StructuredJsonFormatter,
    generate_correlation_id,
    get_correlation_id,
    set_correlation_id,
)


def _record(msg="Job enqueued", **extra):
    record = logging.LogRecord("intakeflow.test", logging.INFO, __file__, 1, msg, (), None)
    for key, val in extra.items():
        setattr(record, key, val)
    return record


class TestCorrelationId:
    def test_generate_is_hex(self):
        cid = generate_correlation_id()
        assert len(cid) == 32
        int(cid, 16)

    def test_set_and_get(self):
        set_correlation_id("cid-abc")
        assert get_correlation_id() == "cid-abc"
        set_correlation_id(None)
        assert get_correlation_id() is None


class TestStructuredJsonFormatter:
    def test_single_line_json_with_context(self):
        set_correlation_id("cid-log")
        try:
            line = StructuredJsonFormatter().format(_record(event_id="mid.1", attempt=2))
        finally:
            set_correlation_id(None)

        assert "\n" not in line
        entry = json.loads(line)
        assert entry["level"] == "INFO"
        assert entry["correlation_id"] == "cid-log"
        assert entry["module"] == "intakeflow.test"
        assert entry["message"] == "Job enqueued"
        assert entry["event_id"] == "mid.1"
        assert entry["attempt"] == 2

    def test_unknown_extras_are_not_promoted(self):
        entry = json.loads(StructuredJsonFormatter().format(_record(text="my number is 555")))
        assert "text" not in entry
        assert "555" not in json.dumps(entry)

    def test_exception_included(self):
        try:
            raise ValueError("boom")
        except ValueError:
            record = logging.LogRecord("x", logging.ERROR, __file__, 1, "failed", (), sys.exc_info())
        entry = json.loads(StructuredJsonFormatter().format(record))
        assert "ValueError: boom" in entry["exception"]
