"""
Tests for ToolNodeExecutor.

HTTP nodes are exercised against ``httpx.MockTransport`` so no network is
touched; TOOL nodes use plain sync and async callables.
"""

import json

import httpx
import pytest

from flowengine.errors import ExecutionFailure, InvalidConfigError, NodeTimeoutError
from flowengine.graph.context import ExecutionContext
from flowengine.graph.snapshot import NodeDescriptor
from flowengine.graph.tool_nodes import ToolNodeExecutor


@pytest.fixture
def context():
    return ExecutionContext(run_id="run_tools")


def _client(handler) -> httpx.AsyncClient:
    return httpx.AsyncClient(transport=httpx.MockTransport(handler))


def _http(config) -> NodeDescriptor:
    return NodeDescriptor(key="call", type="HTTP", config=config)


def _tool(config) -> NodeDescriptor:
    return NodeDescriptor(key="tool", type="TOOL", config=config)


class TestHttpNode:
    @pytest.mark.asyncio
    async def test_json_response(self, context):
        seen: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return httpx.Response(200, json={"temperature": 21})

        async with _client(handler) as client:
            executor = ToolNodeExecutor(http_client=client)
            output = await executor.execute(
                _http({"url": "https://weather.test/now", "headers": {"X-Key": "k"}}),
                {"city": "Oslo"},
                context,
            )

        assert output["httpStatus"] == 200
        assert output["httpResponse"] == {"temperature": 21}
        assert output["city"] == "Oslo"
        assert seen[0].method == "GET"
        assert seen[0].headers["X-Key"] == "k"

    @pytest.mark.asyncio
    async def test_text_response(self, context):
        def handler(request):
            return httpx.Response(200, text="pong")

        async with _client(handler) as client:
            output = await ToolNodeExecutor(http_client=client).execute(
                _http({"url": "https://svc.test/ping"}), {}, context
            )
        assert output["httpResponse"] == "pong"

    @pytest.mark.asyncio
    async def test_post_body_from_input(self, context):
        bodies: list[dict] = []

        def handler(request):
            bodies.append(json.loads(request.content))
            return httpx.Response(201, json={"id": 7})

        node = _http({"url": "https://svc.test/orders", "method": "post", "bodyKey": "order"})
        async with _client(handler) as client:
            output = await ToolNodeExecutor(http_client=client).execute(
                node, {"order": {"sku": "A1", "qty": 2}}, context
            )

        assert bodies == [{"sku": "A1", "qty": 2}]
        assert output["httpStatus"] == 201

    @pytest.mark.asyncio
    async def test_error_status_is_execution_failure(self, context):
        def handler(request):
            return httpx.Response(500, text="oops")

        async with _client(handler) as client:
            with pytest.raises(ExecutionFailure) as exc_info:
                await ToolNodeExecutor(http_client=client).execute(
                    _http({"url": "https://svc.test/x"}), {}, context
                )

        assert exc_info.value.details["status_code"] == 500
        assert exc_info.value.retryable

    @pytest.mark.asyncio
    async def test_timeout_is_node_timeout(self, context):
        def handler(request):
            raise httpx.ReadTimeout("slow", request=request)

        async with _client(handler) as client:
            with pytest.raises(NodeTimeoutError):
                await ToolNodeExecutor(http_client=client).execute(
                    _http({"url": "https://svc.test/slow", "timeout": 1}), {}, context
                )

    @pytest.mark.asyncio
    async def test_connect_error_is_execution_failure(self, context):
        def handler(request):
            raise httpx.ConnectError("refused", request=request)

        async with _client(handler) as client:
            with pytest.raises(ExecutionFailure, match="failed"):
                await ToolNodeExecutor(http_client=client).execute(
                    _http({"url": "https://svc.test/down"}), {}, context
                )

    @pytest.mark.asyncio
    async def test_bad_method_is_invalid_config(self, context):
        with pytest.raises(InvalidConfigError):
            await ToolNodeExecutor().execute(
                _http({"url": "https://svc.test", "method": "FETCH"}), {}, context
            )

    def test_validate_config_requires_url(self):
        with pytest.raises(InvalidConfigError):
            ToolNodeExecutor().validate_config(_http({"method": "GET"}))

    @pytest.mark.parametrize("timeout", ["soon", 0, -5, None, True])
    def test_validate_config_rejects_bad_timeout(self, timeout):
        with pytest.raises(InvalidConfigError, match="timeout"):
            ToolNodeExecutor().validate_config(_http({"url": "https://svc.test", "timeout": timeout}))

    @pytest.mark.asyncio
    async def test_bad_timeout_is_invalid_config_at_execution(self, context):
        requests: list[httpx.Request] = []
        client = _client(lambda request: requests.append(request) or httpx.Response(200))

        with pytest.raises(InvalidConfigError) as exc_info:
            await ToolNodeExecutor(http_client=client).execute(
                _http({"url": "https://svc.test", "timeout": "soon"}), {}, context
            )

        assert not exc_info.value.retryable
        assert requests == []

    @pytest.mark.asyncio
    async def test_numeric_string_timeout_is_accepted(self, context):
        client = _client(lambda request: httpx.Response(200, text="ok"))
        result = await ToolNodeExecutor(http_client=client).execute(
            _http({"url": "https://svc.test", "timeout": "2.5"}), {}, context
        )
        assert result["httpStatus"] == 200


class TestToolNode:
    @pytest.mark.asyncio
    async def test_sync_tool_with_param_mapping(self, context):
        def add(a, b):
            return a + b

        executor = ToolNodeExecutor(tools={"add": add})
        node = _tool({"toolId": "add", "paramMapping": {"a": "left", "b": "right"}})
        output = await executor.execute(node, {"left": 2, "right": 3}, context)

        assert output["toolResult"] == 5
        assert output["left"] == 2

    @pytest.mark.asyncio
    async def test_async_tool(self, context):
        async def lookup(customer_id):
            return {"id": customer_id, "tier": "gold"}

        executor = ToolNodeExecutor()
        executor.register_tool("crm.lookup", lookup)
        node = _tool({"toolId": "crm.lookup", "paramMapping": {"customer_id": "cid"}})
        output = await executor.execute(node, {"cid": "c-1"}, context)

        assert output["toolResult"] == {"id": "c-1", "tier": "gold"}

    @pytest.mark.asyncio
    async def test_unknown_tool_is_invalid_config(self, context):
        with pytest.raises(InvalidConfigError, match="no tool registered"):
            await ToolNodeExecutor().execute(_tool({"toolId": "missing"}), {}, context)

    @pytest.mark.asyncio
    async def test_tool_exception_is_execution_failure(self, context):
        def explode():
            raise ValueError("bad input")

        executor = ToolNodeExecutor(tools={"explode": explode})
        with pytest.raises(ExecutionFailure, match="bad input") as exc_info:
            await executor.execute(_tool({"toolId": "explode"}), {}, context)
        assert exc_info.value.details["tool_id"] == "explode"

    def test_validate_config(self):
        executor = ToolNodeExecutor(tools={"t": lambda: None})
        executor.validate_config(_tool({"toolId": "t"}))
        with pytest.raises(InvalidConfigError):
            executor.validate_config(_tool({}))
        with pytest.raises(InvalidConfigError):
            executor.validate_config(_tool({"toolId": "t", "paramMapping": ["a"]}))
