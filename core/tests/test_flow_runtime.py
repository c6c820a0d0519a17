"""
Tests for FlowRuntime: foreground and background runs, stop, and bookkeeping.
"""

import asyncio

import pytest

from flowengine.errors import NotFoundError, UnsupportedNodeTypeError
from flowengine.graph.node import FunctionNodeExecutor
from flowengine.graph.registry import create_default_registry
from flowengine.graph.snapshot import FlowSnapshot
from flowengine.runtime.flow_runtime import FlowRuntime
from flowengine.runtime.run_log import InMemoryRunLogSink
from flowengine.schemas.run import RunStatus
from flowengine.storage.snapshot_store import InMemorySnapshotStore


def _snapshot(snapshot_id: str, middle_type: str = "MAPPER", config=None) -> FlowSnapshot:
    return FlowSnapshot.model_validate(
        {
            "id": snapshot_id,
            "definitionId": "greeting",
            "nodes": [
                {"key": "start", "type": "START"},
                {
                    "key": "work",
                    "type": middle_type,
                    "config": config if config is not None else {"mapping": {"greeting": "name"}},
                },
                {"key": "end", "type": "END", "config": {"outputFields": ["greeting"]}},
            ],
            "edges": [
                {"source": "start", "target": "work"},
                {"source": "work", "target": "end"},
            ],
        }
    )


class Gate:
    """LLM stand-in that blocks until released."""

    def __init__(self):
        self.entered = asyncio.Event()
        self.release = asyncio.Event()

    async def run(self, node, input_data, context):
        self.entered.set()
        await self.release.wait()
        return {"greeting": "released"}


@pytest.fixture
def store():
    return InMemorySnapshotStore([_snapshot("snap_1"), _snapshot("snap_llm", "LLM", {})])


def _runtime(store, gate: Gate | None = None, **kwargs) -> FlowRuntime:
    extra = [FunctionNodeExecutor(gate.run, ["LLM"])] if gate else []
    return FlowRuntime(
        loader=store, registry=create_default_registry(extra_executors=extra), **kwargs
    )


class TestForegroundRuns:
    @pytest.mark.asyncio
    async def test_execute_snapshot(self, store):
        sink = InMemoryRunLogSink()
        runtime = _runtime(store, log_sink=sink)

        result = await runtime.execute_snapshot("snap_1", {"name": "Ada"})

        assert result.success
        assert result.output["greeting"] == "Ada"
        assert runtime.get_result(result.run_id) is result
        assert sink.summary(result.run_id)["status"] == "SUCCEEDED"

    @pytest.mark.asyncio
    async def test_unknown_snapshot(self, store):
        with pytest.raises(NotFoundError):
            await _runtime(store).execute_snapshot("nope")

    @pytest.mark.asyncio
    async def test_deleted_snapshot(self, store):
        store.delete("snap_1")
        with pytest.raises(NotFoundError, match="deleted"):
            await _runtime(store).execute_snapshot("snap_1")

    @pytest.mark.asyncio
    async def test_unsupported_type_without_executor(self, store):
        with pytest.raises(UnsupportedNodeTypeError):
            await _runtime(store).execute_snapshot("snap_llm")


class TestBackgroundRuns:
    @pytest.mark.asyncio
    async def test_start_and_wait(self, store):
        gate = Gate()
        runtime = _runtime(store, gate)

        run_id = await runtime.start_snapshot("snap_llm", {"name": "Ada"})
        await gate.entered.wait()
        assert runtime.is_running(run_id)
        assert runtime.running_run_ids() == [run_id]

        gate.release.set()
        result = await runtime.wait_for_completion(run_id)

        assert result is not None
        assert result.run_id == run_id
        assert result.success
        assert result.output["greeting"] == "released"
        assert not runtime.is_running(run_id)

    @pytest.mark.asyncio
    async def test_start_validates_before_returning(self, store):
        with pytest.raises(UnsupportedNodeTypeError):
            await _runtime(store).start_snapshot("snap_llm")

    @pytest.mark.asyncio
    async def test_stop_finalizes_run_as_failed(self, store):
        gate = Gate()
        runtime = _runtime(store, gate)

        run_id = await runtime.start_snapshot("snap_llm")
        await gate.entered.wait()

        assert await runtime.stop(run_id) is True
        result = await runtime.wait_for_completion(run_id)

        assert result.status == RunStatus.FAILED
        assert "cancelled" in result.error
        assert result.node_statuses["work"] == "SKIPPED"
        assert not runtime.is_running(run_id)

    @pytest.mark.asyncio
    async def test_stop_before_first_step(self, store):
        runtime = _runtime(store, Gate())

        run_id = await runtime.start_snapshot("snap_llm")
        assert await runtime.stop(run_id) is True
        assert runtime.running_run_ids() == []
        assert await runtime.wait_for_completion(run_id) is None

    @pytest.mark.asyncio
    async def test_stop_unknown_run(self, store):
        assert await _runtime(store).stop("run_missing") is False

    @pytest.mark.asyncio
    async def test_wait_timeout_returns_none(self, store):
        gate = Gate()
        runtime = _runtime(store, gate)

        run_id = await runtime.start_snapshot("snap_llm")
        assert await runtime.wait_for_completion(run_id, timeout=0.05) is None

        gate.release.set()
        assert (await runtime.wait_for_completion(run_id)).success


class TestBookkeeping:
    @pytest.mark.asyncio
    async def test_retention_drops_oldest_results(self, store):
        runtime = _runtime(store, result_retention_max=2)

        run_ids = [(await runtime.execute_snapshot("snap_1", {"name": n})).run_id for n in "abc"]

        assert runtime.get_result(run_ids[0]) is None
        assert runtime.get_result(run_ids[1]) is not None
        assert runtime.get_result(run_ids[2]) is not None

    def test_health_status(self, store):
        health = _runtime(store).health_status()

        assert health["healthy"] is True
        assert health["runningRuns"] == 0
        assert health["retainedResults"] == 0
        assert "MAPPER" in health["supportedTypes"]
        assert "BasicNodeExecutor" in health["executors"]

    def test_load_validates(self, store):
        snapshot = _runtime(store).load("snap_1")
        assert snapshot.id == "snap_1"
