"""Tests for MCP client lifecycle and the aggregated tool registry."""

from __future__ import annotations

import json
import logging
from contextlib import AsyncExitStack
from typing import Any
from unittest.mock import AsyncMock, patch

import pytest
from mcp.types import CallToolResult, TextContent

from natter.config import McpServerConfig
from natter.errors import ToolError, ToolNotFoundError
from natter.models import Tool
from natter.services.mcp_manager import McpClient, McpManager, McpServerClient, serialize_tool_content


class _FakeClient(McpClient):
    def __init__(self, name: str, tools: list[Tool], fail_list: bool = False, fail_shutdown: bool = False) -> None:
        self.name = name
        self.tools = tools
        self.fail_list = fail_list
        self.fail_shutdown = fail_shutdown
        self.calls: list[tuple[str, dict[str, Any] | None]] = []
        self.shutdown_count = 0

    async def list_tools(self) -> list[Tool]:
        if self.fail_list:
            raise ConnectionError("server crashed")
        return list(self.tools)

    async def call_tool(self, name: str, arguments: dict[str, Any] | None) -> CallToolResult:
        self.calls.append((name, arguments))
        return CallToolResult(content=[TextContent(type="text", text=f"{self.name}:{name}")])

    async def shutdown(self) -> None:
        self.shutdown_count += 1
        if self.fail_shutdown:
            raise RuntimeError("stuck")


def _tool(name: str, description: str = "", provider: str = "a", schema: dict[str, Any] | None = None) -> Tool:
    return Tool(name=name, description=description, input_schema=schema or {"type": "object"}, provider=provider)


class TestSerializeToolContent:
    def test_serializes_content_list(self) -> None:
        result = CallToolResult(content=[TextContent(type="text", text="hello")])
        assert json.loads(serialize_tool_content(result)) == [{"type": "text", "text": "hello"}]


class TestMcpManagerInit:
    def test_configs_stored_as_dict(self) -> None:
        configs = [
            McpServerConfig(name="server-a", transport="stdio", command="echo"),
            McpServerConfig(name="server-b", transport="sse", url="http://localhost:9000/sse"),
        ]
        mgr = McpManager(configs)
        assert set(mgr._configs) == {"server-a", "server-b"}

    @pytest.mark.asyncio()
    async def test_empty_configs(self) -> None:
        mgr = McpManager()
        await mgr.startup()
        assert await mgr.list_tools() == []


class TestRegistry:
    @pytest.mark.asyncio()
    async def test_add_server_registers_tools(self) -> None:
        mgr = McpManager()
        await mgr.add_server(_FakeClient("a", [_tool("read"), _tool("write")]))
        assert sorted(t.name for t in await mgr.list_tools()) == ["read", "write"]

    @pytest.mark.asyncio()
    async def test_identical_tool_is_replaced_by_later_server(self) -> None:
        mgr = McpManager()
        first = _FakeClient("a", [_tool("read", "Read a file", provider="a")])
        second = _FakeClient("b", [_tool("read", "Read a file", provider="b")])
        await mgr.add_server(first)
        await mgr.add_server(second)

        tools = await mgr.list_tools()
        assert len(tools) == 1
        assert tools[0].provider == "b"
        await mgr.call_tool("read", {"path": "x"})
        assert second.calls == [("read", {"path": "x"})]
        assert first.calls == []

    @pytest.mark.asyncio()
    async def test_same_name_different_description_kept_side_by_side(self) -> None:
        mgr = McpManager()
        first = _FakeClient("a", [_tool("read", "Read", provider="a")])
        second = _FakeClient("b", [_tool("read", "Read a file with a much longer description", provider="b")])
        await mgr.add_server(first)
        await mgr.add_server(second)

        assert len(await mgr.list_tools()) == 2
        await mgr.call_tool("read", None)
        assert first.calls == [("read", None)]
        assert second.calls == []

    @pytest.mark.asyncio()
    async def test_schema_is_part_of_identity(self) -> None:
        mgr = McpManager()
        await mgr.add_server(_FakeClient("a", [_tool("read", "Read", schema={"type": "object"})]))
        await mgr.add_server(_FakeClient("b", [_tool("read", "Read", schema={"type": "object", "required": ["p"]})]))
        assert len(await mgr.list_tools()) == 2

    @pytest.mark.asyncio()
    async def test_listing_failure_is_wrapped(self) -> None:
        mgr = McpManager()
        with pytest.raises(ToolError, match="listing tools: server crashed"):
            await mgr.add_server(_FakeClient("a", [], fail_list=True))
        assert await mgr.list_tools() == []

    @pytest.mark.asyncio()
    async def test_call_unknown_tool(self) -> None:
        mgr = McpManager()
        await mgr.add_server(_FakeClient("a", [_tool("read")]))
        with pytest.raises(ToolNotFoundError, match="tool missing not found"):
            await mgr.call_tool("missing", {})

    @pytest.mark.asyncio()
    async def test_call_returns_client_result(self) -> None:
        mgr = McpManager()
        await mgr.add_server(_FakeClient("a", [_tool("read")]))
        result = await mgr.call_tool("read", {})
        assert result.content[0].text == "a:read"


class TestShutdown:
    @pytest.mark.asyncio()
    async def test_shutdown_clients_once_and_clear(self) -> None:
        mgr = McpManager()
        client = _FakeClient("a", [_tool("read")])
        await mgr.add_server(client)
        await mgr.add_server(client)
        await mgr.shutdown()
        assert client.shutdown_count == 1
        assert await mgr.list_tools() == []

    @pytest.mark.asyncio()
    async def test_shutdown_errors_are_logged(self, caplog: pytest.LogCaptureFixture) -> None:
        mgr = McpManager()
        broken = _FakeClient("a", [_tool("read")], fail_shutdown=True)
        healthy = _FakeClient("b", [_tool("write", provider="b")])
        await mgr.add_server(broken)
        await mgr.add_server(healthy)

        with caplog.at_level(logging.ERROR, logger="natter.services.mcp_manager"):
            await mgr.shutdown()

        assert healthy.shutdown_count == 1
        assert "Error shutting down MCP client: stuck" in caplog.text


class TestMcpServerClient:
    @pytest.mark.asyncio()
    async def test_connect_exception_closes_stack(self) -> None:
        """A failed connect must close the partially-entered stack."""
        client = McpServerClient(McpServerConfig(name="bad-server", transport="stdio", command="echo"))

        mock_stack = AsyncMock(spec=AsyncExitStack)
        mock_stack.enter_async_context = AsyncMock(side_effect=ConnectionError("server crashed"))

        with (
            patch("natter.services.mcp_manager.AsyncExitStack", return_value=mock_stack),
            patch("natter.services.mcp_manager._validate_command"),
            pytest.raises(ConnectionError, match="server crashed"),
        ):
            await client.connect()

        mock_stack.aclose.assert_awaited_once()
        with pytest.raises(ToolError, match="not connected"):
            await client.list_tools()

    @pytest.mark.asyncio()
    async def test_missing_command(self) -> None:
        client = McpServerClient(
            McpServerConfig(name="ghost", transport="stdio", command="definitely-not-a-real-binary-xyz")
        )
        with pytest.raises(ToolError, match="MCP command not found on PATH"):
            await client.connect()

    @pytest.mark.asyncio()
    async def test_startup_skips_servers_that_fail(self, caplog: pytest.LogCaptureFixture) -> None:
        configs = [
            McpServerConfig(name="bad-server", transport="stdio", command="echo"),
            McpServerConfig(name="off", transport="stdio", command="echo", enabled=False),
        ]
        mgr = McpManager(configs)

        connect = AsyncMock(side_effect=ConnectionError("refused"))
        with (
            patch.object(McpServerClient, "connect", connect),
            caplog.at_level(logging.WARNING, logger="natter.services.mcp_manager"),
        ):
            await mgr.startup()

        connect.assert_awaited_once()
        assert await mgr.list_tools() == []
        assert "Failed to connect to MCP server 'bad-server'" in caplog.text

    @pytest.mark.asyncio()
    async def test_shutdown_without_connect(self) -> None:
        client = McpServerClient(McpServerConfig(name="idle", transport="sse", url="http://localhost/sse"))
        await client.shutdown()
