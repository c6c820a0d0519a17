"""
Tool-call executor: HTTP requests and registered tool callables.

HTTP nodes go through ``httpx.AsyncClient``. TOOL nodes call a Python
callable registered under the node's ``toolId``; sync tools run in a worker
thread. Network errors, error statuses and tool exceptions are execution
failures and follow the node's retry policy.
"""

import asyncio
import inspect
import logging
from collections.abc import Callable
from typing import Any

import httpx

from flowengine.errors import ExecutionFailure, InvalidConfigError, NodeTimeoutError
from flowengine.graph.context import ExecutionContext
from flowengine.graph.node import NodeExecutor
from flowengine.graph.snapshot import NodeDescriptor, NodeType

logger = logging.getLogger(__name__)

HTTP_METHODS = ("GET", "POST", "PUT", "PATCH", "DELETE", "HEAD", "OPTIONS")


class ToolNodeExecutor(NodeExecutor):
    """
    Executes HTTP and TOOL nodes.

    Args:
        tools: Tool callables keyed by tool id. Each is called with the
            parameters built from the node's ``paramMapping``.
        http_client: Shared client; when omitted a client is opened per request.
        default_timeout_seconds: Request timeout when the node sets none.
    """

    supported_types = (NodeType.HTTP, NodeType.TOOL)

    def __init__(
        self,
        tools: dict[str, Callable[..., Any]] | None = None,
        http_client: httpx.AsyncClient | None = None,
        default_timeout_seconds: float = 30.0,
    ):
        self.tools: dict[str, Callable[..., Any]] = dict(tools or {})
        self.http_client = http_client
        self.default_timeout_seconds = default_timeout_seconds

    def register_tool(self, tool_id: str, func: Callable[..., Any]) -> None:
        if tool_id in self.tools:
            logger.warning(f"Replacing tool '{tool_id}'")
        self.tools[tool_id] = func

    async def execute(
        self,
        node: NodeDescriptor,
        input_data: dict[str, Any],
        context: ExecutionContext,
    ) -> dict[str, Any]:
        config = node.parsed_config()
        if node.type == NodeType.HTTP:
            return await self._execute_http(node, config, input_data)
        if node.type == NodeType.TOOL:
            return await self._execute_tool(node, config, input_data)
        raise InvalidConfigError(
            f"{self.name} cannot execute node type '{node.type}'", node_key=node.key
        )

    def validate_config(self, node: NodeDescriptor) -> None:
        config = node.parsed_config()
        if node.type == NodeType.HTTP:
            self._http_method(node, config)
            self._http_timeout(node, config)
            if not config.get("url"):
                raise InvalidConfigError(f"HTTP node '{node.key}' requires 'url'", node_key=node.key)
        elif node.type == NodeType.TOOL:
            self._resolve_tool(node, config)

    # === HTTP ===

    async def _execute_http(
        self, node: NodeDescriptor, config: dict[str, Any], input_data: dict[str, Any]
    ) -> dict[str, Any]:
        url = config.get("url")
        if not isinstance(url, str) or not url:
            raise InvalidConfigError(f"HTTP node '{node.key}' requires 'url'", node_key=node.key)
        method = self._http_method(node, config)
        headers = config.get("headers") or {}
        timeout = self._http_timeout(node, config)

        if "bodyKey" in config:
            body = input_data.get(config["bodyKey"])
        else:
            body = config.get("body")

        request_kwargs: dict[str, Any] = {"headers": headers, "timeout": timeout}
        if body is not None and method not in ("GET", "HEAD"):
            if isinstance(body, dict | list):
                request_kwargs["json"] = body
            else:
                request_kwargs["content"] = str(body)

        logger.info(f"HTTP {method} {url} (node {node.key})")
        try:
            if self.http_client is not None:
                response = await self.http_client.request(method, url, **request_kwargs)
            else:
                async with httpx.AsyncClient() as client:
                    response = await client.request(method, url, **request_kwargs)
        except httpx.TimeoutException as e:
            raise NodeTimeoutError(
                f"HTTP {method} {url} timed out after {timeout}s", node_key=node.key
            ) from e
        except httpx.RequestError as e:
            raise ExecutionFailure(
                f"HTTP {method} {url} failed: {e}", node_key=node.key
            ) from e

        if response.status_code >= 400:
            raise ExecutionFailure(
                f"HTTP {method} {url} returned {response.status_code}",
                node_key=node.key,
                status_code=response.status_code,
            )

        output = dict(input_data)
        output["httpStatus"] = response.status_code
        output["httpResponse"] = self._decode_body(response)
        return output

    def _http_method(self, node: NodeDescriptor, config: dict[str, Any]) -> str:
        method = str(config.get("method") or "GET").upper()
        if method not in HTTP_METHODS:
            raise InvalidConfigError(
                f"HTTP node '{node.key}': unsupported method '{method}'", node_key=node.key
            )
        return method

    def _http_timeout(self, node: NodeDescriptor, config: dict[str, Any]) -> float:
        raw = config.get("timeout", self.default_timeout_seconds)
        try:
            timeout = float(raw)
        except (TypeError, ValueError):
            timeout = 0.0
        if isinstance(raw, bool) or not timeout > 0:
            raise InvalidConfigError(
                f"HTTP node '{node.key}': timeout must be a positive number of seconds, got {raw!r}",
                node_key=node.key,
            )
        return timeout

    @staticmethod
    def _decode_body(response: httpx.Response) -> Any:
        if "json" in response.headers.get("content-type", ""):
            try:
                return response.json()
            except ValueError:
                logger.warning("Response declared JSON but did not parse; returning text")
        return response.text

    # === TOOL ===

    async def _execute_tool(
        self, node: NodeDescriptor, config: dict[str, Any], input_data: dict[str, Any]
    ) -> dict[str, Any]:
        tool_id, tool = self._resolve_tool(node, config)

        params: dict[str, Any] = {}
        for param_name, input_key in (config.get("paramMapping") or {}).items():
            if input_key in input_data:
                params[param_name] = input_data[input_key]

        logger.info(f"Calling tool '{tool_id}' with params {sorted(params)} (node {node.key})")
        try:
            if inspect.iscoroutinefunction(tool):
                result = await tool(**params)
            else:
                result = await asyncio.to_thread(tool, **params)
        except ExecutionFailure:
            raise
        except Exception as e:
            raise ExecutionFailure(
                f"Tool '{tool_id}' failed: {e}", node_key=node.key, tool_id=tool_id
            ) from e

        output = dict(input_data)
        output["toolResult"] = result
        return output

    def _resolve_tool(
        self, node: NodeDescriptor, config: dict[str, Any]
    ) -> tuple[str, Callable[..., Any]]:
        tool_id = config.get("toolId")
        if tool_id in (None, ""):
            raise InvalidConfigError(f"TOOL node '{node.key}' requires 'toolId'", node_key=node.key)
        mapping = config.get("paramMapping")
        if mapping is not None and not isinstance(mapping, dict):
            raise InvalidConfigError(
                f"TOOL node '{node.key}': 'paramMapping' must be an object", node_key=node.key
            )
        tool = self.tools.get(str(tool_id))
        if tool is None:
            raise InvalidConfigError(
                f"TOOL node '{node.key}': no tool registered as '{tool_id}'",
                node_key=node.key,
                tool_id=str(tool_id),
            )
        return str(tool_id), tool
