"""Tests for SnapshotBuilder: structural and publication checks plus metadata."""

import pytest

from flowengine.config import EngineConfig
from flowengine.errors import InvalidConfigError
from flowengine.graph.builder import SnapshotBuilder
from flowengine.graph.registry import create_default_registry
from flowengine.graph.snapshot import EdgeDescriptor, FlowSnapshot, NodeDescriptor


def _nodes(*specs) -> list[NodeDescriptor]:
    nodes = []
    for item in specs:
        key, node_type, *rest = item
        nodes.append(NodeDescriptor(key=key, type=node_type, config=rest[0] if rest else None))
    return nodes


def _edges(*pairs, **routing) -> list[EdgeDescriptor]:
    return [EdgeDescriptor(source=s, target=t, routing=routing.get(f"{s}->{t}")) for s, t in pairs]


@pytest.fixture
def builder():
    return SnapshotBuilder(registry=create_default_registry())


class TestBuild:
    def test_builds_snapshot_with_metadata(self, builder):
        snapshot = builder.build(
            definition_id="triage",
            name="Triage",
            version=2,
            nodes=[
                {"key": "start", "type": "START"},
                {"key": "check", "type": "CONDITION", "config": {"expression": "x > 1"}},
                {"key": "yes", "type": "END"},
                {"key": "no", "type": "END"},
            ],
            edges=[
                {"source": "start", "target": "check"},
                {"source": "check", "target": "yes", "routing": {"branch": True}},
                {"source": "check", "target": "no", "routing": {"branch": False}},
            ],
            created_by="ops@example.com",
        )

        assert snapshot.definition_id == "triage"
        assert snapshot.version == 2
        assert snapshot.created_by == "ops@example.com"
        meta = snapshot.metadata
        assert meta["totalNodes"] == 4
        assert meta["totalEdges"] == 3
        assert meta["complexity"] == "simple"
        assert meta["complexityScore"] == 4 + 3 + 2
        assert meta["hasParallelNodes"] is False
        assert meta["executionPlan"][:2] == ["start", "check"]
        assert meta["dependencyGraph"]["check"] == ["start"]

    def test_collects_every_problem(self, builder):
        with pytest.raises(InvalidConfigError) as exc_info:
            builder.build(
                definition_id="broken",
                name="Broken",
                version=1,
                nodes=_nodes(("start", "START"), ("check", "CONDITION"), ("lonely", "MAPPER", {"mapping": {}})),
                edges=_edges(("start", "check")),
            )

        problems = exc_info.value.details["problems"]
        assert "Flow must have at least one END node" in problems
        assert "Isolated nodes: lonely" in problems
        assert "Unreachable nodes: lonely" in problems
        assert any(p.startswith("Node 'check' configuration is invalid") for p in problems)
        assert "Node 'check' (CONDITION) requires configuration" in problems
        assert problems.count("Flow must have at least one END node") == 1
        assert exc_info.value.details["definition_id"] == "broken"


class TestStructure:
    def test_valid_graph(self, builder):
        nodes = _nodes(("start", "START"), ("map", "MAPPER", {"mapping": {"a": "b"}}), ("end", "END"))
        assert builder.validate_structure(nodes, _edges(("start", "map"), ("map", "end"))) == []

    def test_duplicates_and_missing_references(self, builder):
        nodes = _nodes(("start", "START"), ("a", "PARALLEL"), ("a", "PARALLEL"), ("end", "END"))
        problems = builder.validate_structure(nodes, _edges(("start", "a"), ("a", "ghost"), ("a", "end")))

        assert "Duplicate node keys: a" in problems
        assert "Edge references missing target node 'ghost'" in problems

    def test_self_loop_and_cycle(self, builder):
        nodes = _nodes(("start", "START"), ("a", "PARALLEL"), ("b", "PARALLEL"), ("end", "END"))
        problems = builder.validate_structure(
            nodes, _edges(("start", "a"), ("a", "b"), ("b", "a"), ("b", "b"), ("b", "end"))
        )

        assert "Flow contains a cycle" in problems
        assert "Edge 'b->b' connects node 'b' to itself" in problems

    def test_cycle_detection_can_be_disabled(self):
        builder = SnapshotBuilder(config=EngineConfig(cycle_detection=False))
        nodes = _nodes(("start", "START"), ("a", "PARALLEL"), ("b", "PARALLEL"), ("end", "END"))
        problems = builder.validate_structure(
            nodes, _edges(("start", "a"), ("a", "b"), ("b", "a"), ("b", "end"))
        )
        assert "Flow contains a cycle" not in problems

    def test_start_and_end_rules(self, builder):
        nodes = _nodes(("s1", "START"), ("s2", "START"), ("end", "END"))
        problems = builder.validate_structure(nodes, _edges(("s2", "s1"), ("s1", "end"), ("end", "s2")))

        assert "Flow can only have one START node, found 2" in problems
        assert "START node cannot have incoming edges" in problems
        assert "END nodes cannot have outgoing edges" in problems

    def test_unsupported_type_with_registry(self, builder):
        nodes = _nodes(("start", "START"), ("llm", "LLM", {"prompt": "hi"}), ("end", "END"))
        problems = builder.validate_structure(nodes, _edges(("start", "llm"), ("llm", "end")))
        assert "Unsupported node type 'LLM' on node 'llm'" in problems

    def test_unknown_type_without_registry(self):
        builder = SnapshotBuilder()
        nodes = _nodes(("start", "START"), ("x", "TELEPORT"), ("llm", "LLM", "{bad"), ("end", "END"))
        problems = builder.validate_structure(
            nodes, _edges(("start", "x"), ("x", "llm"), ("llm", "end"))
        )

        assert "Unknown node type 'TELEPORT' on node 'x'" in problems
        assert any("not valid JSON" in p for p in problems)

    def test_size_limits(self):
        builder = SnapshotBuilder(config=EngineConfig(max_nodes=2, max_edges=1))
        nodes = _nodes(("start", "START"), ("a", "PARALLEL"), ("end", "END"))
        problems = builder.validate_structure(nodes, _edges(("start", "a"), ("a", "end")))

        assert "Too many nodes: 3 (max 2)" in problems
        assert "Too many edges: 2 (max 1)" in problems

    def test_unknown_edge_condition(self, builder):
        nodes = _nodes(("start", "START"), ("end", "END"))
        edges = _edges(("start", "end"), **{"start->end": {"condition": "sometimes"}})
        problems = builder.validate_structure(nodes, edges)
        assert any("unknown condition 'sometimes'" in p for p in problems)


class TestPublication:
    def test_requires_start_and_end(self, builder):
        problems = builder.validate_for_publication(_nodes(("a", "MAPPER")), [])
        assert "Flow must have a START node" in problems
        assert "Flow must have at least one END node" in problems

    def test_llm_nodes_need_configuration(self, builder):
        nodes = _nodes(("start", "START"), ("llm", "LLM"), ("end", "END"))
        problems = builder.validate_for_publication(nodes, _edges(("start", "llm"), ("llm", "end")))
        assert problems == ["Node 'llm' (LLM) requires configuration"]


class TestDescribe:
    @pytest.mark.parametrize("count, expected", [(3, "simple"), (12, "medium"), (40, "complex")])
    def test_complexity(self, builder, count, expected):
        keys = [f"n{i}" for i in range(count)]
        nodes = _nodes(("start", "START"), *[(k, "PARALLEL") for k in keys[:-2]], ("end", "END"))
        chain = ["start"] + keys[:-2] + ["end"]
        snapshot = FlowSnapshot(nodes=tuple(nodes), edges=tuple(_edges(*zip(chain, chain[1:]))))
        meta = builder.describe(snapshot)

        assert meta["complexity"] == expected
        assert meta["totalNodes"] == count
        assert meta["hasParallelNodes"] is True
        assert meta["executionPlan"] == chain
