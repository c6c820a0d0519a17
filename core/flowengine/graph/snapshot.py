"""
Snapshot Model - the immutable graph a run executes.

A FlowSnapshot is taken when a flow definition is published. Runs reference
it by id, so edits to the definition never affect in-flight executions.
Snapshots are frozen pydantic models; "updating" one builds a new version
with a new id via ``with_changes``.

Configuration and retry-policy payloads are opaque JSON (an object or a JSON
string). They are parsed on demand so that a malformed payload fails the
node that owns it, not the whole snapshot.

JSON layout (camelCase on the wire)::

    {
      "id": "c0ffee...",
      "definitionId": "order-triage",
      "version": 3,
      "nodes": [
        {"key": "start", "type": "START"},
        {"key": "check", "type": "CONDITION", "config": {"expression": "x > 0"}},
        {"key": "llm", "type": "LLM", "retryPolicy": {"maxAttempts": 3, "backoffMs": 500}}
      ],
      "edges": [
        {"source": "start", "target": "check"},
        {"source": "check", "target": "llm", "routing": {"branch": "true"}}
      ]
    }
"""

import copy
import json
import logging
import uuid
from collections import Counter
from datetime import UTC, datetime
from enum import StrEnum
from typing import Any

from pydantic import BaseModel, Field, ValidationError, model_validator
from pydantic.alias_generators import to_camel

from flowengine.errors import InvalidConfigError, NotFoundError

logger = logging.getLogger(__name__)


class NodeType(StrEnum):
    """Known node type tags."""

    # terminal
    START = "START"
    END = "END"
    INPUT = "INPUT"
    OUTPUT = "OUTPUT"
    # AI calls
    LLM = "LLM"
    CHAT = "CHAT"
    CLASSIFIER = "CLASSIFIER"
    RETRIEVER = "RETRIEVER"
    EMBEDDER = "EMBEDDER"
    # control flow
    CONDITION = "CONDITION"
    LOOP = "LOOP"
    SWITCH = "SWITCH"
    PARALLEL = "PARALLEL"
    # tool calls
    HTTP = "HTTP"
    TOOL = "TOOL"
    SCRIPT = "SCRIPT"
    # data transforms
    MAPPER = "MAPPER"
    FILTER = "FILTER"
    VALIDATOR = "VALIDATOR"
    SPLITTER = "SPLITTER"
    MERGER = "MERGER"


CONTROL_FLOW_TYPES = frozenset(
    {NodeType.CONDITION, NodeType.LOOP, NodeType.SWITCH, NodeType.PARALLEL}
)
TERMINAL_TYPES = frozenset({NodeType.END})


class EdgeCondition(StrEnum):
    """When an edge is taken relative to its source node's outcome."""

    ON_SUCCESS = "on_success"  # Source completed (default)
    ON_FAILURE = "on_failure"  # Source failed terminally
    ALWAYS = "always"  # Either way


_MODEL_CONFIG = {
    "frozen": True,
    "populate_by_name": True,
    "alias_generator": to_camel,
}


def _parse_json_object(raw: Any, what: str) -> dict[str, Any]:
    """Parse an opaque JSON payload into a fresh dict."""
    if raw is None or raw == "":
        return {}
    if isinstance(raw, str):
        try:
            parsed = json.loads(raw)
        except json.JSONDecodeError as e:
            raise InvalidConfigError(f"{what} is not valid JSON: {e}") from e
    else:
        parsed = copy.deepcopy(raw)
    if not isinstance(parsed, dict):
        raise InvalidConfigError(f"{what} must be a JSON object, got {type(parsed).__name__}")
    return parsed


class RetryPolicy(BaseModel):
    """
    Parsed retry-policy payload.

    ``max_attempts`` counts every attempt, including the first. A node with
    ``maxAttempts: 3`` runs at most three times.
    """

    max_attempts: int = Field(default=1, ge=1)
    backoff_ms: int | None = Field(default=None, ge=0)
    timeout_ms: int | None = Field(default=None, gt=0)

    model_config = {**_MODEL_CONFIG, "extra": "ignore"}

    def backoff_seconds(self, failures: int, default_ms: int, max_ms: int) -> float:
        """Exponential backoff before the retry that follows ``failures`` failures."""
        base = self.backoff_ms if self.backoff_ms is not None else default_ms
        delay_ms = base * (2 ** max(failures - 1, 0))
        return min(delay_ms, max_ms) / 1000

    @property
    def timeout_seconds(self) -> float | None:
        return self.timeout_ms / 1000 if self.timeout_ms else None


class NodeDescriptor(BaseModel):
    """A typed node inside a snapshot."""

    key: str = Field(min_length=1)
    type: str = Field(min_length=1)
    name: str = ""
    config: Any = None
    retry_policy: Any = None

    model_config = {**_MODEL_CONFIG, "extra": "allow"}

    @property
    def display_name(self) -> str:
        return self.name or self.key

    def parsed_config(self) -> dict[str, Any]:
        """
        Return the node configuration as a new dict.

        Raises:
            InvalidConfigError: If the payload is not a JSON object
        """
        try:
            return _parse_json_object(self.config, f"Configuration of node '{self.key}'")
        except InvalidConfigError as e:
            raise InvalidConfigError(e.message, node_key=self.key) from e

    def parsed_retry_policy(self) -> RetryPolicy:
        """Return the retry policy. Malformed payloads mean a single attempt."""
        try:
            raw = _parse_json_object(self.retry_policy, f"Retry policy of node '{self.key}'")
            return RetryPolicy.model_validate(raw)
        except (InvalidConfigError, ValidationError) as e:
            logger.warning(f"Ignoring retry policy of node '{self.key}': {e}")
            return RetryPolicy()


class EdgeDescriptor(BaseModel):
    """
    A directed edge between two node keys.

    Routing keys understood by the executor:
        branch: CONDITION result ("true"/"false") or SWITCH branch name
        condition: on_success (default), on_failure or always
        inputMapping: {target_key: source_key}
        priority: higher-priority edges are listed first
    """

    id: str = ""
    source: str = Field(min_length=1)
    target: str = Field(min_length=1)
    routing: Any = None

    model_config = {**_MODEL_CONFIG, "extra": "allow"}

    @model_validator(mode="before")
    @classmethod
    def _default_id(cls, data: Any) -> Any:
        if isinstance(data, dict) and not data.get("id"):
            data = {**data, "id": f"{data.get('source')}->{data.get('target')}"}
        return data

    def routing_config(self) -> dict[str, Any]:
        try:
            return _parse_json_object(self.routing, f"Routing of edge '{self.id}'")
        except InvalidConfigError as e:
            raise InvalidConfigError(e.message, edge_id=self.id) from e

    @property
    def branch(self) -> str | None:
        """Branch tag, normalized to a string. Booleans become "true"/"false"."""
        value = self.routing_config().get("branch")
        if value is None:
            return None
        if isinstance(value, bool):
            return "true" if value else "false"
        return str(value)

    @property
    def condition(self) -> EdgeCondition:
        raw = self.routing_config().get("condition", EdgeCondition.ON_SUCCESS)
        try:
            return EdgeCondition(str(raw).lower())
        except ValueError as e:
            raise InvalidConfigError(
                f"Edge '{self.id}' has unknown condition '{raw}'", edge_id=self.id
            ) from e

    @property
    def priority(self) -> int:
        try:
            return int(self.routing_config().get("priority", 0))
        except (TypeError, ValueError):
            return 0

    def map_inputs(self, source_output: dict[str, Any]) -> dict[str, Any]:
        """Map a source result onto the target's input. No mapping passes everything."""
        mapping = self.routing_config().get("inputMapping") or {}
        if not mapping:
            return dict(source_output)
        return {
            target_key: source_output[source_key]
            for target_key, source_key in mapping.items()
            if source_key in source_output
        }


class FlowSnapshot(BaseModel):
    """
    Immutable, versioned flow graph.

    Example:
        snapshot = FlowSnapshot(
            definition_id="triage",
            nodes=[
                NodeDescriptor(key="start", type="START"),
                NodeDescriptor(key="end", type="END"),
            ],
            edges=[EdgeDescriptor(source="start", target="end")],
        )
    """

    id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    definition_id: str = ""
    name: str = ""
    version: int = Field(default=1, ge=1)
    nodes: tuple[NodeDescriptor, ...] = ()
    edges: tuple[EdgeDescriptor, ...] = ()
    created_by: str = ""
    created_at: datetime = Field(default_factory=lambda: datetime.now(UTC))
    deleted_at: datetime | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)

    model_config = _MODEL_CONFIG

    # ------------------------------------------------------------------
    # Serialization
    # ------------------------------------------------------------------

    @classmethod
    def from_json(cls, payload: str | bytes | None, snapshot_id: str = "") -> "FlowSnapshot":
        """
        Parse a serialized snapshot.

        Raises:
            NotFoundError: If the payload is empty or cannot be parsed
        """
        if not payload or not payload.strip():
            raise NotFoundError(f"Snapshot '{snapshot_id}' has an empty payload", snapshot_id=snapshot_id)
        try:
            return cls.model_validate_json(payload)
        except ValidationError as e:
            raise NotFoundError(
                f"Snapshot '{snapshot_id}' payload is unparsable: {e.error_count()} error(s)",
                snapshot_id=snapshot_id,
            ) from e

    def to_json(self) -> str:
        return self.model_dump_json(by_alias=True)

    def with_changes(self, **updates: Any) -> "FlowSnapshot":
        """Return a new version of this snapshot with ``updates`` applied."""
        data = self.model_dump()
        data.update(updates)
        data["id"] = updates.get("id") or uuid.uuid4().hex
        data["version"] = updates.get("version", self.version + 1)
        data["created_at"] = datetime.now(UTC)
        data["deleted_at"] = None
        return type(self).model_validate(data)

    def mark_deleted(self, at: datetime | None = None) -> "FlowSnapshot":
        return self.model_copy(update={"deleted_at": at or datetime.now(UTC)})

    @property
    def is_available(self) -> bool:
        return self.deleted_at is None

    # ------------------------------------------------------------------
    # Graph queries
    # ------------------------------------------------------------------

    def contains_node(self, node_key: str) -> bool:
        return any(node.key == node_key for node in self.nodes)

    def node_count(self) -> int:
        return len(self.nodes)

    def node_keys(self) -> list[str]:
        return [node.key for node in self.nodes]

    def get_node(self, node_key: str) -> NodeDescriptor | None:
        for node in self.nodes:
            if node.key == node_key:
                return node
        return None

    def outgoing_edges(self, node_key: str) -> list[EdgeDescriptor]:
        """Edges leaving a node, highest priority first, then declaration order."""
        edges = [e for e in self.edges if e.source == node_key]
        return sorted(edges, key=lambda e: -e.priority)

    def incoming_edges(self, node_key: str) -> list[EdgeDescriptor]:
        return [e for e in self.edges if e.target == node_key]

    def start_nodes(self) -> list[NodeDescriptor]:
        """Nodes without incoming edges, in declaration order."""
        targets = {e.target for e in self.edges}
        return [node for node in self.nodes if node.key not in targets]

    def end_nodes(self) -> list[NodeDescriptor]:
        return [node for node in self.nodes if node.type in TERMINAL_TYPES]

    def detect_fan_out_nodes(self) -> dict[str, list[str]]:
        """Map node key -> targets for every node with more than one outgoing edge."""
        fan_outs: dict[str, list[str]] = {}
        for node in self.nodes:
            outgoing = self.outgoing_edges(node.key)
            if len(outgoing) > 1:
                fan_outs[node.key] = [e.target for e in outgoing]
        return fan_outs

    def detect_fan_in_nodes(self) -> dict[str, list[str]]:
        """Map node key -> sources for every convergence point."""
        fan_ins: dict[str, list[str]] = {}
        for node in self.nodes:
            incoming = self.incoming_edges(node.key)
            if len(incoming) > 1:
                fan_ins[node.key] = [e.source for e in incoming]
        return fan_ins

    def dependency_graph(self) -> dict[str, list[str]]:
        """Map node key -> predecessor keys."""
        return {node.key: [e.source for e in self.incoming_edges(node.key)] for node in self.nodes}

    def topological_order(self) -> list[str] | None:
        """Kahn's algorithm over node keys. Returns None when the graph has a cycle."""
        known = set(self.node_keys())
        in_degree = {key: 0 for key in self.node_keys()}
        for edge in self.edges:
            if edge.source in known and edge.target in known:
                in_degree[edge.target] += 1

        queue = [key for key, degree in in_degree.items() if degree == 0]
        order: list[str] = []
        while queue:
            current = queue.pop(0)
            order.append(current)
            for edge in self.outgoing_edges(current):
                if edge.target not in in_degree:
                    continue
                in_degree[edge.target] -= 1
                if in_degree[edge.target] == 0:
                    queue.append(edge.target)

        return order if len(order) == len(in_degree) else None

    def missing_references(self) -> list[str]:
        """Describe every edge endpoint that names an unknown node key."""
        known = set(self.node_keys())
        errors = []
        for edge in self.edges:
            if edge.source not in known:
                errors.append(f"Edge '{edge.id}' references missing source '{edge.source}'")
            if edge.target not in known:
                errors.append(f"Edge '{edge.id}' references missing target '{edge.target}'")
        return errors

    def dangling_nodes(self) -> list[str]:
        """Keys of non-terminal nodes with no outgoing edge."""
        return [
            node.key
            for node in self.nodes
            if node.type not in TERMINAL_TYPES and not self.outgoing_edges(node.key)
        ]

    def validate_structure(self, require_outgoing: bool = True) -> list[str]:
        """
        Validate the graph shape. Returns a list of problems, empty when valid.

        Checks duplicate keys, edge references, the presence of a start node
        and cycles. With ``require_outgoing`` every non-terminal node must also
        have an outgoing edge.
        """
        errors: list[str] = []

        duplicates = [key for key, count in Counter(self.node_keys()).items() if count > 1]
        for key in duplicates:
            errors.append(f"Duplicate node key '{key}'")

        errors.extend(self.missing_references())

        if not self.nodes:
            errors.append("Snapshot has no nodes")
            return errors

        if not self.start_nodes():
            errors.append("Snapshot has no start node (every node has an incoming edge)")

        if self.topological_order() is None:
            errors.append("Snapshot graph contains a cycle")

        if require_outgoing:
            for key in self.dangling_nodes():
                errors.append(f"Non-terminal node '{key}' has no outgoing edge")

        for edge in self.edges:
            try:
                edge.condition
            except InvalidConfigError as e:
                errors.append(e.message)

        return errors
