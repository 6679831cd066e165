"""Backend capability shared by every provider client."""

from __future__ import annotations

import abc
import asyncio
import json
import logging
from typing import Any, Union

from mcp.types import CallToolResult

from .. import __version__
from ..config import BackendConfig, ConnectionConfig, TruncationConfig
from ..errors import CompletionCancelled, McpNotSetError, ToolError
from ..models import BackendPrompt, BackendResponse, Message, Model, Notice, Tool
from .mcp_manager import McpClient
from .truncation import context_truncation

logger = logging.getLogger(__name__)

TITLE_PROMPT = (
    "\n\n---\n"
    "This is initial message. Please give name a title for this conversation.\n"
    "The title should be placed at the top of the response, in separate line and starts with #"
)

USER_AGENT = f"natter/{__version__}"

Event = Union[BackendResponse, Notice]
EventSink = asyncio.Queue  # receives Event items


def check_cancelled(cancel_event: asyncio.Event | None) -> None:
    if cancel_event is not None and cancel_event.is_set():
        raise CompletionCancelled()


class Backend(abc.ABC):
    """A source of models and streamed completions.

    ``get_completion`` puts zero or more partial ``BackendResponse`` events on
    ``sink`` followed by exactly one with ``done=True`` and empty text, or
    raises. ``Notice`` events may be interleaved.
    """

    @abc.abstractmethod
    def name(self) -> str: ...

    @abc.abstractmethod
    async def list_models(self) -> list[Model]: ...

    @abc.abstractmethod
    async def get_completion(
        self,
        prompt: BackendPrompt,
        sink: EventSink,
        cancel_event: asyncio.Event | None = None,
    ) -> None: ...


class ProviderBackend(Backend):
    """Common plumbing for HTTP providers: prompt shaping, MCP tools and the tool-round cap."""

    default_alias = ""
    default_endpoint = ""

    def __init__(
        self,
        connection: ConnectionConfig,
        *,
        mcp: McpClient | None = None,
        backend_config: BackendConfig | None = None,
        truncation: TruncationConfig | None = None,
    ) -> None:
        self.alias = connection.alias or self.default_alias
        self.endpoint = (connection.endpoint or self.default_endpoint).rstrip("/")
        self.api_key = connection.api_key
        self.timeout = connection.timeout_secs
        self.want_models = list(connection.models)
        self.max_output_tokens = connection.max_output_tokens
        self.mcp = mcp
        self.backend_config = backend_config or BackendConfig()
        self.truncation = truncation or TruncationConfig()

    def name(self) -> str:
        return self.alias

    @property
    def max_tool_rounds(self) -> int:
        return self.backend_config.max_tool_rounds

    def _prepare(self, prompt: BackendPrompt) -> tuple[bool, list[Message]]:
        """Return ``init_conversation`` and the messages to send for ``prompt``."""
        init_conversation = not prompt.context
        text = prompt.text
        if init_conversation and not prompt.no_generate_title:
            text = f"{text}\n{TITLE_PROMPT}"

        history = list(prompt.context)
        if self.max_output_tokens:
            history = context_truncation(history, self.max_output_tokens, self.truncation)
        return init_conversation, [*history, Message.new_user(text)]

    async def _list_tools(self, model: str, sink: EventSink) -> list[Tool]:
        if self.mcp is None or not self.backend_config.enable_mcp(model):
            return []
        try:
            return await self.mcp.list_tools()
        except Exception as e:
            logger.warning("Unable to list tools for %s: %s", model, e)
            await sink.put(Notice.warning(f"Unable to list tools: {e}"))
            return []

    async def _call_tool(
        self,
        name: str | None,
        arguments: str | dict[str, Any] | None,
        tools: list[Tool],
        sink: EventSink,
        cancel_event: asyncio.Event | None,
    ) -> CallToolResult:
        if self.mcp is None:
            raise McpNotSetError()

        args: dict[str, Any] | None
        if isinstance(arguments, str):
            try:
                args = json.loads(arguments) if arguments.strip() else None
            except json.JSONDecodeError as e:
                raise ToolError(f"parsing tool call arguments: {e}") from e
        else:
            args = arguments

        if not name:
            raise ToolError("missing tool name")

        check_cancelled(cancel_event)

        if self.backend_config.mcp.notice_on_call_tool:
            provider = next((t.provider for t in tools if t.name == name), "unknown")
            await sink.put(Notice.info(f'Calling tool "{name}" (provider: {provider})'))

        logger.debug("Calling tool %s with args: %s", name, args)
        try:
            return await self.mcp.call_tool(name, args)
        except Exception as e:
            raise ToolError(f"calling tool: {e}") from e
