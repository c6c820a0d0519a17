"""Tests for the snapshot model: parsing, graph queries and structural validation."""

import pytest
from pydantic import ValidationError

from flowengine.errors import InvalidConfigError, NotFoundError
from flowengine.graph.snapshot import (
    EdgeCondition,
    EdgeDescriptor,
    FlowSnapshot,
    NodeDescriptor,
    RetryPolicy,
)


def _linear_snapshot() -> FlowSnapshot:
    return FlowSnapshot(
        definition_id="triage",
        name="Triage",
        nodes=[
            NodeDescriptor(key="start", type="START"),
            NodeDescriptor(key="check", type="CONDITION", config={"expression": "x > 0"}),
            NodeDescriptor(key="yes", type="END"),
            NodeDescriptor(key="no", type="END"),
        ],
        edges=[
            EdgeDescriptor(source="start", target="check"),
            EdgeDescriptor(source="check", target="yes", routing={"branch": True}),
            EdgeDescriptor(source="check", target="no", routing={"branch": "false"}),
        ],
    )


class TestSerialization:
    def test_from_json_reads_camel_case(self):
        payload = """
        {
          "id": "snap-1",
          "definitionId": "triage",
          "version": 2,
          "nodes": [
            {"key": "start", "type": "START"},
            {"key": "llm", "type": "LLM", "retryPolicy": {"maxAttempts": 3, "backoffMs": 10}}
          ],
          "edges": [{"source": "start", "target": "llm"}]
        }
        """
        snapshot = FlowSnapshot.from_json(payload)

        assert snapshot.id == "snap-1"
        assert snapshot.definition_id == "triage"
        assert snapshot.version == 2
        assert snapshot.get_node("llm").parsed_retry_policy().max_attempts == 3
        assert snapshot.edges[0].id == "start->llm"

    def test_to_json_round_trips(self):
        snapshot = _linear_snapshot()
        restored = FlowSnapshot.from_json(snapshot.to_json())

        assert restored == snapshot
        assert '"definitionId"' in snapshot.to_json()

    @pytest.mark.parametrize("payload", ["", "   ", None])
    def test_empty_payload_is_not_found(self, payload):
        with pytest.raises(NotFoundError):
            FlowSnapshot.from_json(payload, "snap-x")

    def test_unparsable_payload_is_not_found(self):
        with pytest.raises(NotFoundError) as exc_info:
            FlowSnapshot.from_json("{not json", "snap-x")
        assert exc_info.value.details["snapshot_id"] == "snap-x"

    def test_snapshot_is_frozen(self):
        snapshot = _linear_snapshot()
        with pytest.raises(ValidationError):
            snapshot.name = "changed"

    def test_with_changes_creates_new_version(self):
        snapshot = _linear_snapshot()
        updated = snapshot.with_changes(name="Triage v2")

        assert updated.id != snapshot.id
        assert updated.version == snapshot.version + 1
        assert updated.name == "Triage v2"
        assert snapshot.name == "Triage"

    def test_mark_deleted(self):
        snapshot = _linear_snapshot()
        deleted = snapshot.mark_deleted()

        assert snapshot.is_available
        assert not deleted.is_available
        assert deleted.id == snapshot.id


class TestGraphQueries:
    def test_contains_and_count(self):
        snapshot = _linear_snapshot()
        assert snapshot.contains_node("check")
        assert not snapshot.contains_node("missing")
        assert snapshot.node_count() == 4

    def test_start_and_end_nodes(self):
        snapshot = _linear_snapshot()
        assert [n.key for n in snapshot.start_nodes()] == ["start"]
        assert [n.key for n in snapshot.end_nodes()] == ["yes", "no"]

    def test_outgoing_edges_sorted_by_priority(self):
        snapshot = FlowSnapshot(
            nodes=[
                NodeDescriptor(key="a", type="PARALLEL"),
                NodeDescriptor(key="b", type="END"),
                NodeDescriptor(key="c", type="END"),
                NodeDescriptor(key="d", type="END"),
            ],
            edges=[
                EdgeDescriptor(source="a", target="b"),
                EdgeDescriptor(source="a", target="c", routing={"priority": 5}),
                EdgeDescriptor(source="a", target="d"),
            ],
        )
        assert [e.target for e in snapshot.outgoing_edges("a")] == ["c", "b", "d"]

    def test_fan_out_and_fan_in(self):
        snapshot = FlowSnapshot(
            nodes=[
                NodeDescriptor(key="split", type="PARALLEL"),
                NodeDescriptor(key="a", type="LLM"),
                NodeDescriptor(key="b", type="LLM"),
                NodeDescriptor(key="join", type="END"),
            ],
            edges=[
                EdgeDescriptor(source="split", target="a"),
                EdgeDescriptor(source="split", target="b"),
                EdgeDescriptor(source="a", target="join"),
                EdgeDescriptor(source="b", target="join"),
            ],
        )
        assert snapshot.detect_fan_out_nodes() == {"split": ["a", "b"]}
        assert snapshot.detect_fan_in_nodes() == {"join": ["a", "b"]}
        assert snapshot.dependency_graph()["join"] == ["a", "b"]

    def test_topological_order(self):
        order = _linear_snapshot().topological_order()
        assert order[0] == "start"
        assert order.index("check") < order.index("yes")


class TestValidation:
    def test_valid_snapshot_has_no_problems(self):
        assert _linear_snapshot().validate_structure() == []

    def test_duplicate_keys_and_missing_references(self):
        snapshot = FlowSnapshot(
            nodes=[
                NodeDescriptor(key="a", type="START"),
                NodeDescriptor(key="a", type="END"),
            ],
            edges=[EdgeDescriptor(source="a", target="ghost")],
        )
        problems = snapshot.validate_structure()

        assert any("Duplicate node key 'a'" in p for p in problems)
        assert any("ghost" in p for p in problems)
        assert snapshot.missing_references() == ["Edge 'a->ghost' references missing target 'ghost'"]

    def test_cycle_is_reported(self):
        snapshot = FlowSnapshot(
            nodes=[
                NodeDescriptor(key="start", type="START"),
                NodeDescriptor(key="a", type="LLM"),
                NodeDescriptor(key="b", type="LLM"),
            ],
            edges=[
                EdgeDescriptor(source="start", target="a"),
                EdgeDescriptor(source="a", target="b"),
                EdgeDescriptor(source="b", target="a"),
            ],
        )
        assert snapshot.topological_order() is None
        assert any("cycle" in p for p in snapshot.validate_structure())

    def test_dangling_nodes_only_when_outgoing_required(self):
        snapshot = FlowSnapshot(nodes=[NodeDescriptor(key="llm", type="LLM")])

        assert snapshot.dangling_nodes() == ["llm"]
        assert snapshot.validate_structure(require_outgoing=False) == []
        assert snapshot.validate_structure() == ["Non-terminal node 'llm' has no outgoing edge"]

    def test_empty_snapshot(self):
        assert FlowSnapshot().validate_structure() == ["Snapshot has no nodes"]

    def test_unknown_edge_condition(self):
        snapshot = FlowSnapshot(
            nodes=[NodeDescriptor(key="a", type="START"), NodeDescriptor(key="b", type="END")],
            edges=[EdgeDescriptor(source="a", target="b", routing={"condition": "sometimes"})],
        )
        assert any("unknown condition" in p for p in snapshot.validate_structure())


class TestDescriptors:
    def test_parsed_config_accepts_json_string(self):
        node = NodeDescriptor(key="n", type="CONDITION", config='{"expression": "x > 1"}')
        config = node.parsed_config()
        config["expression"] = "mutated"

        assert node.parsed_config() == {"expression": "x > 1"}

    def test_parsed_config_rejects_invalid_payloads(self):
        with pytest.raises(InvalidConfigError):
            NodeDescriptor(key="n", type="LLM", config="{broken").parsed_config()
        with pytest.raises(InvalidConfigError):
            NodeDescriptor(key="n", type="LLM", config="[1, 2]").parsed_config()

    def test_missing_config_is_empty(self):
        assert NodeDescriptor(key="n", type="START").parsed_config() == {}

    def test_malformed_retry_policy_means_single_attempt(self):
        node = NodeDescriptor(key="n", type="LLM", retry_policy='{"maxAttempts": 0}')
        assert node.parsed_retry_policy() == RetryPolicy()

        node = NodeDescriptor(key="n", type="LLM", retry_policy="not json")
        assert node.parsed_retry_policy().max_attempts == 1

    def test_retry_policy_backoff(self):
        policy = RetryPolicy(max_attempts=5, backoff_ms=100, timeout_ms=250)

        assert policy.backoff_seconds(1, 1000, 60_000) == 0.1
        assert policy.backoff_seconds(3, 1000, 60_000) == 0.4
        assert policy.backoff_seconds(10, 1000, 500) == 0.5
        assert RetryPolicy().backoff_seconds(2, 1000, 60_000) == 2.0
        assert policy.timeout_seconds == 0.25
        assert RetryPolicy().timeout_seconds is None

    def test_edge_routing(self):
        edge = EdgeDescriptor(
            source="a",
            target="b",
            routing={"branch": False, "condition": "ALWAYS", "inputMapping": {"question": "text"}},
        )
        assert edge.branch == "false"
        assert edge.condition == EdgeCondition.ALWAYS
        assert edge.map_inputs({"text": "hi", "other": 1}) == {"question": "hi"}

    def test_edge_without_mapping_passes_everything(self):
        edge = EdgeDescriptor(source="a", target="b")
        assert edge.branch is None
        assert edge.condition == EdgeCondition.ON_SUCCESS
        assert edge.map_inputs({"x": 1}) == {"x": 1}
