"""
Tests for ExecutionContext.

Covers result storage and copy semantics, the status state machine, retry
counters, globals, metrics and the summary, plus concurrent writers.
"""

import logging
import threading

import pytest

from flowengine.errors import ExecutionFailure
from flowengine.graph.context import ExecutionContext, NodeStatus
from flowengine.graph.snapshot import EdgeDescriptor, FlowSnapshot, NodeDescriptor


@pytest.fixture
def snapshot():
    return FlowSnapshot(
        nodes=[
            NodeDescriptor(key="start", type="START"),
            NodeDescriptor(key="a", type="LLM"),
            NodeDescriptor(key="b", type="LLM"),
            NodeDescriptor(key="end", type="END"),
        ],
        edges=[
            EdgeDescriptor(source="start", target="a"),
            EdgeDescriptor(source="a", target="b"),
            EdgeDescriptor(source="b", target="end"),
        ],
    )


@pytest.fixture
def context(snapshot):
    return ExecutionContext(run_id="run_test", snapshot=snapshot, slow_execution_ms=100)


class TestResults:
    def test_record_result_stores_a_copy(self, context):
        payload = {"items": [1, 2]}
        context.record_result("a", payload)
        payload["items"].append(3)

        assert context.get_result("a") == {"items": [1, 2]}
        assert context.get_status("a") == NodeStatus.COMPLETED

    def test_get_result_returns_independent_copies(self, context):
        context.record_result("a", {"items": [1]})
        first = context.get_result("a")
        first["items"].append(2)

        assert context.get_result("a") == {"items": [1]}
        assert context.has_result("a")
        assert context.get_result("b") is None

    def test_unknown_node_logs_warning(self, context, caplog):
        with caplog.at_level(logging.WARNING):
            context.record_result("ghost", {"x": 1})

        assert "not present in snapshot" in caplog.text
        assert context.get_result("ghost") == {"x": 1}


class TestStatuses:
    def test_default_status_is_pending(self, context):
        assert context.get_status("a") == NodeStatus.PENDING
        assert set(context.get_all_statuses()) == {"start", "a", "b", "end"}
        assert context.count_by_status(NodeStatus.PENDING) == 4

    def test_retry_moves_node_to_retrying(self, context):
        context.set_status("a", NodeStatus.RUNNING)
        context.set_status("a", NodeStatus.FAILED)

        assert context.increment_retry("a") == 1
        assert context.get_status("a") == NodeStatus.RETRYING
        assert context.increment_retry("a") == 2
        assert context.get_retry_count("a") == 2
        assert context.total_retries() == 2

    def test_unexpected_transition_is_logged_not_raised(self, context, caplog):
        context.record_result("a", {})
        with caplog.at_level(logging.WARNING):
            context.set_status("a", NodeStatus.RUNNING)

        assert "Unexpected status transition" in caplog.text
        assert context.get_status("a") == NodeStatus.RUNNING


class TestGlobals:
    def test_get_all_globals_returns_equal_independent_copies(self, context):
        context.set_global("config", {"tiers": ["gold"]})

        first = context.get_all_globals()
        second = context.get_all_globals()
        assert first == second

        first["config"]["tiers"].append("silver")
        assert second == {"config": {"tiers": ["gold"]}}
        assert context.get_global("config") == {"tiers": ["gold"]}

    def test_last_write_wins_and_history(self, context):
        context.set_global("tenant", "acme", node_key="start")
        context.set_globals({"tenant": "globex", "region": "eu"}, node_key="a")

        assert context.get_global("tenant") == "globex"
        assert context.get_global("missing", "fallback") == "fallback"
        history = context.get_global_history()
        assert [change.key for change in history] == ["tenant", "tenant", "region"]
        assert history[1].old_value == "acme"


class TestMetrics:
    def test_record_metric_flags_slow_samples(self, context, caplog):
        context.record_metric("a", 20)
        with caplog.at_level(logging.WARNING):
            context.record_metric("b", 250)

        metrics = context.get_metrics()
        assert metrics["a_duration"] == 20
        assert "a_slow_execution" not in metrics
        assert metrics["b_slow_execution"] == 1
        assert context.slow_nodes() == ["b"]
        assert "Slow execution detected" in caplog.text

    def test_custom_metrics_and_average(self, context):
        context.record_custom_metric("tokens", 42)
        context.record_metric("a", 10)
        context.record_metric("b", 30)

        assert context.get_metrics()["tokens"] == 42
        assert context.average_node_execution_ms() == 20


class TestSummary:
    def test_progress_and_counts(self, context):
        context.record_result("start", {})
        context.set_status("a", NodeStatus.RUNNING)
        context.set_status("a", NodeStatus.FAILED)
        context.set_status("end", NodeStatus.SKIPPED)

        summary = context.summary()
        assert summary.total_nodes == 4
        assert summary.completed == 1
        assert summary.failed == 1
        assert summary.skipped == 1
        assert summary.progress == 0.25

        data = summary.to_dict()
        for key in ("totalNodes", "completed", "failed", "retrying", "skipped", "totalRetries", "progress"):
            assert key in data

    def test_progress_without_snapshot_is_zero(self):
        context = ExecutionContext(run_id="run_bare")
        context.record_result("x", {})

        assert context.summary().progress == 0.0
        assert context.summary().total_nodes == 0

    def test_detailed_report(self, context):
        context.set_global("tenant", "acme")
        context.record_result("start", {})
        context.record_failure("a", "LLM", ExecutionFailure("boom"))

        report = context.detailed_report()
        assert report["nodeStatuses"]["start"] == "COMPLETED"
        assert report["globalVariables"] == {"tenant": "acme"}
        assert report["failures"][0]["node_key"] == "a"
        assert report["failures"][0]["error_type"] == "ExecutionFailure"


class TestFailures:
    def test_failure_captures_retry_count(self, context):
        context.increment_retry("a")
        context.increment_retry("a")
        failure = context.record_failure("a", "LLM", RuntimeError("quota exceeded"))

        assert failure.retry_count == 2
        assert failure.message == "quota exceeded"
        assert failure.error_type == "RuntimeError"
        assert len(context.get_failures()) == 1


class TestConcurrency:
    def test_concurrent_writers(self, context):
        def worker(index: int) -> None:
            for i in range(200):
                context.increment_retry("a")
                context.set_global(f"w{index}", i)
                context.record_metric(f"w{index}", 1)

        threads = [threading.Thread(target=worker, args=(n,)) for n in range(4)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert context.get_retry_count("a") == 800
        assert context.get_all_globals() == {f"w{n}": 199 for n in range(4)}
