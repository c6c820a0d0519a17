"""Tests for structured logging and the trace context."""

import json
import logging

import pytest

from flowengine.observability import (
    clear_trace_context,
    configure_logging,
    get_trace_context,
    set_trace_context,
)
from flowengine.observability.logging import HumanReadableFormatter, StructuredFormatter


@pytest.fixture(autouse=True)
def reset_context():
    clear_trace_context()
    yield
    clear_trace_context()


def _record(message: str = "hello", **extra) -> logging.LogRecord:
    record = logging.LogRecord("flowengine.test", logging.INFO, __file__, 1, message, None, None)
    for key, value in extra.items():
        setattr(record, key, value)
    return record


class TestTraceContext:
    def test_set_merges_fields(self):
        set_trace_context(run_id="run_1", snapshot_id="snap_1")
        set_trace_context(node_key="llm")

        assert get_trace_context() == {"run_id": "run_1", "snapshot_id": "snap_1", "node_key": "llm"}

    def test_get_returns_a_copy(self):
        set_trace_context(run_id="run_1")
        get_trace_context()["run_id"] = "changed"
        assert get_trace_context()["run_id"] == "run_1"


class TestFormatters:
    def test_structured_formatter(self):
        set_trace_context(run_id="run_1", node_key="llm")
        line = StructuredFormatter().format(
            _record("\033[32mdone\033[0m", event="node_complete", latency_ms=12)
        )
        entry = json.loads(line)

        assert entry["message"] == "done"
        assert entry["level"] == "info"
        assert entry["run_id"] == "run_1"
        assert entry["node_key"] == "llm"
        assert entry["event"] == "node_complete"
        assert entry["latency_ms"] == 12

    def test_human_formatter_prefix(self):
        set_trace_context(run_id="run_0123456789", node_key="check")
        line = HumanReadableFormatter().format(_record("routing"))

        assert "[run:23456789 | node:check]" in line
        assert "routing" in line


class TestConfigureLogging:
    @pytest.fixture(autouse=True)
    def restore_root(self):
        root = logging.getLogger()
        handlers, level = list(root.handlers), root.level
        yield
        root.handlers[:] = handlers
        root.setLevel(level)

    def test_json_format(self, monkeypatch):
        monkeypatch.setenv("NO_COLOR", "")
        configure_logging(level="debug", format="json")
        root = logging.getLogger()

        assert root.level == logging.DEBUG
        assert isinstance(root.handlers[0].formatter, StructuredFormatter)

    def test_auto_format_reads_environment(self, monkeypatch):
        monkeypatch.setenv("LOG_FORMAT", "")
        monkeypatch.setenv("ENV", "development")
        configure_logging(format="auto")
        assert isinstance(logging.getLogger().handlers[0].formatter, HumanReadableFormatter)
