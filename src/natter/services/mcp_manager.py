"""MCP client lifecycle and tool routing manager."""

from __future__ import annotations

import abc
import asyncio
import json
import logging
import os
import shutil
from contextlib import AsyncExitStack
from datetime import timedelta
from typing import Any

from mcp import ClientSession, StdioServerParameters
from mcp.client.sse import sse_client
from mcp.client.stdio import stdio_client
from mcp.types import CallToolResult

from ..config import McpServerConfig
from ..errors import ToolError, ToolNotFoundError
from ..models import Tool

logger = logging.getLogger(__name__)


def _validate_command(command: str) -> None:
    """Validate MCP command exists on PATH."""
    resolved = shutil.which(command)
    if resolved is None:
        raise ToolError(f"MCP command not found on PATH: {command}")


def serialize_tool_content(result: CallToolResult) -> str:
    """JSON text of a tool result's content list, as handed back to the model."""
    return json.dumps([item.model_dump(mode="json", exclude_none=True) for item in result.content])


class McpClient(abc.ABC):
    """Anything that can list and invoke tools."""

    @abc.abstractmethod
    async def list_tools(self) -> list[Tool]: ...

    @abc.abstractmethod
    async def call_tool(self, name: str, arguments: dict[str, Any] | None) -> CallToolResult: ...

    @abc.abstractmethod
    async def shutdown(self) -> None: ...


class McpServerClient(McpClient):
    """One MCP server reached over stdio (child process) or SSE.

    Requests on the session are serialized with a lock so a single transport
    never has more than one request in flight.
    """

    def __init__(self, config: McpServerConfig) -> None:
        self.config = config
        self.name = config.name
        self._stack: AsyncExitStack | None = None
        self._session: ClientSession | None = None
        self._lock = asyncio.Lock()

    async def connect(self) -> None:
        stack = AsyncExitStack()
        timeout = timedelta(seconds=self.config.timeout_secs)
        try:
            if self.config.transport == "stdio" and self.config.command:
                _validate_command(self.config.command)
                server_params = StdioServerParameters(
                    command=self.config.command,
                    args=self.config.args,
                    env={**os.environ, **self.config.env} if self.config.env else None,
                )
                read_stream, write_stream = await stack.enter_async_context(stdio_client(server_params))
            elif self.config.transport == "sse" and self.config.url:
                read_stream, write_stream = await stack.enter_async_context(sse_client(self.config.url))
            else:
                raise ToolError(f"Invalid transport config for '{self.name}'")

            session = await stack.enter_async_context(
                ClientSession(read_stream, write_stream, read_timeout_seconds=timeout)
            )
            await session.initialize()
        except BaseException:
            # Close the partially-entered contexts (subprocess, task groups)
            # so they don't leak.
            try:
                await stack.aclose()
            except Exception:
                logger.debug("Error closing stack for '%s' during cleanup", self.name, exc_info=True)
            raise

        self._stack = stack
        self._session = session
        logger.info("MCP server '%s' connected over %s", self.name, self.config.transport)

    def _require_session(self) -> ClientSession:
        if self._session is None:
            raise ToolError(f"MCP server '{self.name}' is not connected")
        return self._session

    async def list_tools(self) -> list[Tool]:
        session = self._require_session()
        async with self._lock:
            result = await session.list_tools()
        return [
            Tool(
                name=tool.name,
                description=tool.description,
                input_schema=tool.inputSchema or {},
                provider=self.name,
            )
            for tool in result.tools
        ]

    async def call_tool(self, name: str, arguments: dict[str, Any] | None) -> CallToolResult:
        session = self._require_session()
        async with self._lock:
            result = await session.call_tool(name, arguments)
        if result.isError:
            logger.warning("MCP tool '%s' on '%s' reported an error result", name, self.name)
        return result

    async def shutdown(self) -> None:
        stack, self._stack = self._stack, None
        self._session = None
        if stack is not None:
            await stack.aclose()
            logger.info("MCP server '%s' disconnected", self.name)


class McpManager(McpClient):
    """Aggregates the tools of several MCP clients into one namespace.

    Registry entries are keyed by the whole tool (name, description and
    schema). Registering a tool identical to an existing one replaces it
    unless the existing description is longer; tools that share a name but
    differ otherwise are kept side by side, and calls go to the first one
    registered.
    """

    def __init__(self, server_configs: list[McpServerConfig] | None = None) -> None:
        self._configs: dict[str, McpServerConfig] = {cfg.name: cfg for cfg in server_configs or []}
        self._clients: list[McpClient] = []
        self._tools: dict[tuple[str, str | None, str], tuple[Tool, McpClient]] = {}

    async def startup(self) -> None:
        for name, config in self._configs.items():
            if not config.enabled:
                logger.debug("MCP server '%s' disabled, skipping", name)
                continue
            client = McpServerClient(config)
            try:
                await client.connect()
                await self.add_server(client)
            except Exception as e:
                logger.warning("Failed to connect to MCP server '%s': %s", name, e)
                try:
                    await client.shutdown()
                except Exception:
                    logger.debug("Error shutting down '%s' after failed connect", name, exc_info=True)

    async def add_server(self, client: McpClient) -> None:
        try:
            tools = await client.list_tools()
        except Exception as e:
            raise ToolError(f"listing tools: {e}") from e

        for tool in tools:
            key = tool.registry_key()
            existing = self._tools.get(key)
            if existing is not None:
                if len(existing[0].description or "") > len(tool.description or ""):
                    continue
                del self._tools[key]
            else:
                owner = self._owner_of(tool.name)
                if owner is not None:
                    logger.warning(
                        "Tool name collision: '%s' from '%s' is also provided by '%s'; calls go to '%s'",
                        tool.name,
                        tool.provider,
                        owner.provider,
                        owner.provider,
                    )
            self._tools[key] = (tool, client)

        if client not in self._clients:
            self._clients.append(client)
        logger.info("Registered %d MCP tools (%d total)", len(tools), len(self._tools))

    def _owner_of(self, name: str) -> Tool | None:
        for tool, _client in self._tools.values():
            if tool.name == name:
                return tool
        return None

    async def list_tools(self) -> list[Tool]:
        return [tool for tool, _client in self._tools.values()]

    async def call_tool(self, name: str, arguments: dict[str, Any] | None) -> CallToolResult:
        for tool, client in self._tools.values():
            if tool.name == name:
                return await client.call_tool(name, arguments)
        raise ToolNotFoundError(name)

    async def shutdown(self) -> None:
        for client in self._clients:
            try:
                await client.shutdown()
            except Exception as e:
                logger.error("Error shutting down MCP client: %s", e)
        self._clients.clear()
        self._tools.clear()
