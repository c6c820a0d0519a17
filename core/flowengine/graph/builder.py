"""
Snapshot Builder - turns a draft graph into a published FlowSnapshot.

Two levels of checks run before a snapshot is created:

- structure (``validate_structure``): unique keys, edge references, known
  node types, node configuration, cycles, isolated nodes, START/END rules,
  size limits. Drafts are checked with this on every save.
- publication (``validate_for_publication``): START and END present, every
  node reachable from START, control-flow and LLM nodes configured.

``build`` runs both and raises a single InvalidConfigError listing every
problem, so a flow author sees all of them at once.
"""

import logging
from collections import deque
from collections.abc import Iterable
from typing import Any

from flowengine.config import EngineConfig
from flowengine.errors import InvalidConfigError
from flowengine.graph.registry import NodeExecutorRegistry
from flowengine.graph.snapshot import (
    CONTROL_FLOW_TYPES,
    EdgeDescriptor,
    FlowSnapshot,
    NodeDescriptor,
    NodeType,
)

logger = logging.getLogger(__name__)

SIMPLE_MAX_NODES = 10
MEDIUM_MAX_NODES = 30


class SnapshotBuilder:
    """
    Validates draft graphs and creates snapshots.

    Example:
        builder = SnapshotBuilder(registry=create_default_registry())
        snapshot = builder.build(
            definition_id="triage",
            name="Order triage",
            version=1,
            nodes=[{"key": "start", "type": "START"}, {"key": "end", "type": "END"}],
            edges=[{"source": "start", "target": "end"}],
        )
        snapshot.metadata["complexity"]  # "simple"
    """

    def __init__(
        self,
        registry: NodeExecutorRegistry | None = None,
        config: EngineConfig | None = None,
    ):
        self.registry = registry
        self.config = config or EngineConfig()

    def build(
        self,
        definition_id: str,
        name: str,
        version: int,
        nodes: Iterable[NodeDescriptor | dict[str, Any]],
        edges: Iterable[EdgeDescriptor | dict[str, Any]],
        created_by: str = "",
    ) -> FlowSnapshot:
        """
        Validate a draft graph and create its snapshot.

        Raises:
            InvalidConfigError: Listing every structural and publication problem
        """
        node_list = _coerce(nodes, NodeDescriptor)
        edge_list = _coerce(edges, EdgeDescriptor)

        problems = self.validate_structure(node_list, edge_list)
        problems.extend(p for p in self.validate_for_publication(node_list, edge_list) if p not in problems)
        if problems:
            logger.warning(f"Snapshot build for '{definition_id}' rejected: {problems}")
            raise InvalidConfigError(
                f"Flow '{definition_id}' v{version} is invalid: {'; '.join(problems)}",
                definition_id=definition_id,
                problems=problems,
            )

        snapshot = FlowSnapshot(
            definition_id=definition_id,
            name=name,
            version=version,
            nodes=tuple(node_list),
            edges=tuple(edge_list),
            created_by=created_by,
        )
        snapshot = snapshot.model_copy(update={"metadata": self.describe(snapshot)})
        logger.info(
            f"Built snapshot {snapshot.id} for '{definition_id}' v{version}: "
            f"{len(node_list)} nodes, {len(edge_list)} edges"
        )
        return snapshot

    # === STRUCTURE ===

    def validate_structure(
        self, nodes: list[NodeDescriptor], edges: list[EdgeDescriptor]
    ) -> list[str]:
        """Return every structural problem of a draft graph (empty when valid)."""
        problems: list[str] = []

        if len(nodes) > self.config.max_nodes:
            problems.append(f"Too many nodes: {len(nodes)} (max {self.config.max_nodes})")
        if len(edges) > self.config.max_edges:
            problems.append(f"Too many edges: {len(edges)} (max {self.config.max_edges})")

        keys: set[str] = set()
        duplicates: list[str] = []
        for node in nodes:
            if node.key in keys:
                duplicates.append(node.key)
            keys.add(node.key)
        if duplicates:
            problems.append(f"Duplicate node keys: {', '.join(duplicates)}")

        for edge in edges:
            if edge.source not in keys:
                problems.append(f"Edge references missing source node '{edge.source}'")
            if edge.target not in keys:
                problems.append(f"Edge references missing target node '{edge.target}'")
            if edge.source == edge.target:
                problems.append(f"Edge '{edge.id}' connects node '{edge.source}' to itself")
            try:
                edge.condition
            except InvalidConfigError as e:
                problems.append(e.message)

        problems.extend(self._check_node_types(nodes))

        snapshot = FlowSnapshot(nodes=tuple(nodes), edges=tuple(edges))
        if self.config.cycle_detection and not duplicates and snapshot.topological_order() is None:
            problems.append("Flow contains a cycle")

        connected = {e.source for e in edges} | {e.target for e in edges}
        isolated = [
            n.key
            for n in nodes
            if n.key not in connected and n.type not in (NodeType.START, NodeType.END)
        ]
        if isolated:
            problems.append(f"Isolated nodes: {', '.join(isolated)}")

        problems.extend(self._check_special_nodes(nodes, edges))
        return problems

    def _check_node_types(self, nodes: list[NodeDescriptor]) -> list[str]:
        problems = []
        for node in nodes:
            if self.registry is None:
                if node.type not in NodeType.__members__:
                    problems.append(f"Unknown node type '{node.type}' on node '{node.key}'")
                    continue
                try:
                    node.parsed_config()
                except InvalidConfigError as e:
                    problems.append(e.message)
                continue

            if not self.registry.is_supported(node.type):
                problems.append(f"Unsupported node type '{node.type}' on node '{node.key}'")
                continue
            try:
                self.registry.resolve(node.type).validate_config(node)
            except InvalidConfigError as e:
                problems.append(f"Node '{node.key}' configuration is invalid: {e.message}")
        return problems

    def _check_special_nodes(
        self, nodes: list[NodeDescriptor], edges: list[EdgeDescriptor]
    ) -> list[str]:
        problems = []
        start_keys = [n.key for n in nodes if n.type == NodeType.START]
        end_keys = {n.key for n in nodes if n.type == NodeType.END}

        if len(start_keys) > 1:
            problems.append(f"Flow can only have one START node, found {len(start_keys)}")
        if not end_keys:
            problems.append("Flow must have at least one END node")
        if start_keys and any(e.target == start_keys[0] for e in edges):
            problems.append("START node cannot have incoming edges")
        if any(e.source in end_keys for e in edges):
            problems.append("END nodes cannot have outgoing edges")
        return problems

    # === PUBLICATION ===

    def validate_for_publication(
        self, nodes: list[NodeDescriptor], edges: list[EdgeDescriptor]
    ) -> list[str]:
        """Return every problem that blocks publishing (empty when publishable)."""
        problems: list[str] = []
        start_key = next((n.key for n in nodes if n.type == NodeType.START), None)

        if start_key is None:
            problems.append("Flow must have a START node")
        if not any(n.type == NodeType.END for n in nodes):
            problems.append("Flow must have at least one END node")

        if start_key is not None:
            unreachable = self._unreachable(start_key, nodes, edges)
            if unreachable:
                problems.append(f"Unreachable nodes: {', '.join(unreachable)}")

        for node in nodes:
            if node.type in CONTROL_FLOW_TYPES or node.type == NodeType.LLM:
                if node.config in (None, "", {}) or (isinstance(node.config, str) and not node.config.strip()):
                    problems.append(f"Node '{node.key}' ({node.type}) requires configuration")
        return problems

    @staticmethod
    def _unreachable(
        start_key: str, nodes: list[NodeDescriptor], edges: list[EdgeDescriptor]
    ) -> list[str]:
        adjacency: dict[str, list[str]] = {n.key: [] for n in nodes}
        for edge in edges:
            if edge.source in adjacency:
                adjacency[edge.source].append(edge.target)

        reachable = {start_key}
        queue = deque([start_key])
        while queue:
            current = queue.popleft()
            for neighbor in adjacency.get(current, []):
                if neighbor not in reachable:
                    reachable.add(neighbor)
                    queue.append(neighbor)
        return [n.key for n in nodes if n.key not in reachable]

    # === METADATA ===

    def describe(self, snapshot: FlowSnapshot) -> dict[str, Any]:
        """Build metadata: counts, complexity, execution plan and dependency graph."""
        node_count = snapshot.node_count()
        control_nodes = sum(1 for n in snapshot.nodes if n.type in CONTROL_FLOW_TYPES)

        if node_count < SIMPLE_MAX_NODES:
            complexity = "simple"
        elif node_count < MEDIUM_MAX_NODES:
            complexity = "medium"
        else:
            complexity = "complex"

        return {
            "totalNodes": node_count,
            "totalEdges": len(snapshot.edges),
            "hasParallelNodes": any(n.type == NodeType.PARALLEL for n in snapshot.nodes),
            "complexity": complexity,
            "complexityScore": node_count + len(snapshot.edges) + 2 * control_nodes,
            "executionPlan": snapshot.topological_order() or [],
            "dependencyGraph": snapshot.dependency_graph(),
        }


def _coerce(items: Iterable[Any], model: type) -> list:
    coerced = []
    for item in items:
        if isinstance(item, model):
            coerced.append(item)
        else:
            coerced.append(model.model_validate(item))
    return coerced
