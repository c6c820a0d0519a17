"""
Command-line interface for the flow engine.

Usage:
    flowengine validate snapshot.json
    flowengine info snapshot.json
    flowengine run snapshot.json --input '{"x": 5}'
    flowengine run snapshot.json --input-file payload.json --log-dir ./runs
"""

import argparse
import asyncio
import json
import sys
from pathlib import Path
from typing import Any

from flowengine.config import EngineConfig
from flowengine.errors import FlowError
from flowengine.graph.executor import FlowExecutor
from flowengine.graph.snapshot import FlowSnapshot
from flowengine.observability import configure_logging
from flowengine.runtime import InMemoryRunLogSink, RunLogSink, RuntimeLogger, RuntimeLogStore


def _load_snapshot(path: str) -> FlowSnapshot:
    snapshot_path = Path(path)
    if not snapshot_path.exists():
        raise FileNotFoundError(f"Snapshot file not found: {path}")
    return FlowSnapshot.from_json(snapshot_path.read_text(encoding="utf-8"), snapshot_path.stem)


def _load_input(args: argparse.Namespace) -> dict[str, Any]:
    if args.input_file:
        raw = Path(args.input_file).read_text(encoding="utf-8")
    elif args.input:
        raw = args.input
    else:
        return {}
    data = json.loads(raw)
    if not isinstance(data, dict):
        raise ValueError("Input must be a JSON object")
    return data


def cmd_validate(args: argparse.Namespace) -> int:
    """Validate a snapshot file against the built-in executors."""
    try:
        snapshot = _load_snapshot(args.snapshot)
        executor = FlowExecutor(config=EngineConfig.load())
        executor.validate(snapshot)
        executor.registry.validate_snapshot(snapshot, check_config=True)
    except FileNotFoundError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1
    except FlowError as e:
        print(f"✗ {e.message}", file=sys.stderr)
        for problem in e.details.get("problems", []):
            print(f"  - {problem}", file=sys.stderr)
        return 1

    warnings = snapshot.validate_structure(require_outgoing=True)
    print(f"✓ Snapshot {snapshot.id} is valid ({snapshot.node_count()} nodes, {len(snapshot.edges)} edges)")
    for warning in warnings:
        print(f"  ! {warning}")
    return 0


def cmd_info(args: argparse.Namespace) -> int:
    """Describe a snapshot file."""
    try:
        snapshot = _load_snapshot(args.snapshot)
    except (FileNotFoundError, FlowError) as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1

    info = {
        "id": snapshot.id,
        "definitionId": snapshot.definition_id,
        "name": snapshot.name,
        "version": snapshot.version,
        "nodes": [{"key": n.key, "type": n.type, "name": n.display_name} for n in snapshot.nodes],
        "edges": len(snapshot.edges),
        "startNodes": [n.key for n in snapshot.start_nodes()],
        "endNodes": [n.key for n in snapshot.end_nodes()],
        "fanOut": snapshot.detect_fan_out_nodes(),
        "fanIn": snapshot.detect_fan_in_nodes(),
        "executionPlan": snapshot.topological_order(),
    }

    if args.json:
        print(json.dumps(info, indent=2))
        return 0

    print(f"Snapshot: {snapshot.name or snapshot.definition_id or snapshot.id}")
    print(f"Id: {snapshot.id} (v{snapshot.version})")
    print(f"Nodes ({len(info['nodes'])}):")
    for node in info["nodes"]:
        print(f"  - {node['key']} [{node['type']}]")
    print(f"Edges: {info['edges']}")
    print(f"Start: {', '.join(info['startNodes']) or '-'}")
    print(f"End: {', '.join(info['endNodes']) or '-'}")
    if info["executionPlan"] is None:
        print("Execution plan: graph contains a cycle")
    else:
        print(f"Execution plan: {' → '.join(info['executionPlan'])}")
    return 0


def cmd_run(args: argparse.Namespace) -> int:
    """Run a snapshot file and print the result as JSON."""
    configure_logging(level="DEBUG" if args.verbose else "WARNING")

    try:
        snapshot = _load_snapshot(args.snapshot)
        input_data = _load_input(args)
    except (OSError, ValueError) as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1
    except FlowError as e:
        print(f"Error: {e.message}", file=sys.stderr)
        return 1

    config = EngineConfig.load()
    log_dir = args.log_dir or config.log_dir
    log_sink: RunLogSink = (
        RuntimeLogger(RuntimeLogStore(log_dir)) if log_dir else InMemoryRunLogSink()
    )
    executor = FlowExecutor(config=config, log_sink=log_sink)

    try:
        result = asyncio.run(executor.execute(snapshot, input_data, timeout_minutes=args.timeout))
    except FlowError as e:
        print(json.dumps({"success": False, "error": e.to_dict()}, indent=2, default=str))
        return 1

    print(json.dumps({"success": result.success, **result.to_dict()}, indent=2, default=str))
    return 0 if result.success else 1


def register_commands(subparsers: argparse._SubParsersAction) -> None:
    validate_parser = subparsers.add_parser("validate", help="Validate a snapshot file")
    validate_parser.add_argument("snapshot", help="Path to a snapshot JSON file")
    validate_parser.set_defaults(func=cmd_validate)

    info_parser = subparsers.add_parser("info", help="Show snapshot details")
    info_parser.add_argument("snapshot", help="Path to a snapshot JSON file")
    info_parser.add_argument("--json", action="store_true", help="Output as JSON")
    info_parser.set_defaults(func=cmd_info)

    run_parser = subparsers.add_parser("run", help="Execute a snapshot file")
    run_parser.add_argument("snapshot", help="Path to a snapshot JSON file")
    run_parser.add_argument("--input", "-i", help="Input payload as a JSON string")
    run_parser.add_argument("--input-file", "-f", help="Input payload from a JSON file")
    run_parser.add_argument(
        "--timeout", type=float, default=None, help="Run timeout in minutes"
    )
    run_parser.add_argument("--log-dir", help="Write run logs under this directory")
    run_parser.add_argument("--verbose", "-v", action="store_true", help="Show execution logs")
    run_parser.set_defaults(func=cmd_run)


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(
        prog="flowengine",
        description="Validate, inspect and run flow snapshots",
    )
    subparsers = parser.add_subparsers(dest="command", required=True)
    register_commands(subparsers)

    args = parser.parse_args(argv)
    return args.func(args)


if __name__ == "__main__":
    sys.exit(main())
