"""OpenAI-compatible chat completions over server-sent events."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any

import httpx
import openai
from openai import AsyncOpenAI
from pydantic import BaseModel, Field, ValidationError

from ..config import BackendConfig, ConnectionConfig, TruncationConfig
from ..errors import MalformedStreamError, NoModelError, ProviderError, ToolDepthExceededError, TransportError
from ..models import BackendPrompt, BackendResponse, BackendUsage, Message, Model, Tool, ToolCallResponse
from .backend import USER_AGENT, EventSink, ProviderBackend, check_cancelled
from .mcp_manager import McpClient, serialize_tool_content

logger = logging.getLogger(__name__)

_DATA_PREFIX = "data: "
_DONE = "[DONE]"
_NO_KEY = "no-key"


class _KeylessAsyncOpenAI(AsyncOpenAI):
    """Client for OpenAI-compatible servers that accept requests without credentials."""

    @property
    def auth_headers(self) -> dict[str, str]:
        return {}


class _Delta(BaseModel):
    content: str | None = None
    tool_calls: list[ToolCallResponse] | None = None


class _Choice(BaseModel):
    index: int = 0
    delta: _Delta = Field(default_factory=_Delta)
    finish_reason: str | None = None


class _Chunk(BaseModel):
    id: str = ""
    model: str = ""
    choices: list[_Choice] = Field(default_factory=list)
    usage: BackendUsage | None = None


@dataclass
class _RoundResult:
    message_id: str
    text: str = ""
    usage: BackendUsage | None = None
    tool_calls: dict[int, ToolCallResponse] = field(default_factory=dict)


def _to_wire(message: Message) -> dict[str, Any]:
    if message.is_context:
        role = "system"
    elif message.is_system():
        role = "assistant"
    else:
        role = "user"
    return {"role": role, "content": message.text}


def _tool_to_wire(tool: Tool) -> dict[str, Any]:
    function: dict[str, Any] = {"name": tool.name, "parameters": tool.input_schema}
    if tool.description:
        function["description"] = tool.description
    return {"type": "function", "function": function}


def _call_to_wire(call: ToolCallResponse) -> dict[str, Any]:
    return {
        "id": call.id,
        "type": call.type or "function",
        "function": {"name": call.function.name, "arguments": call.function.arguments or ""},
    }


class OpenAIBackend(ProviderBackend):
    default_alias = "OpenAI"
    default_endpoint = "https://api.openai.com"

    def __init__(
        self,
        connection: ConnectionConfig,
        *,
        mcp: McpClient | None = None,
        backend_config: BackendConfig | None = None,
        truncation: TruncationConfig | None = None,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        super().__init__(connection, mcp=mcp, backend_config=backend_config, truncation=truncation)
        client_cls = AsyncOpenAI if self.api_key else _KeylessAsyncOpenAI
        self.client = client_cls(
            base_url=f"{self.endpoint}/v1",
            api_key=self.api_key or _NO_KEY,
            timeout=self.timeout,
            max_retries=0,
            default_headers={"User-Agent": USER_AGENT},
            http_client=http_client,
        )

    def _provider_error(self, err: openai.APIStatusError) -> ProviderError:
        body = err.body if isinstance(err.body, dict) else {}
        if isinstance(body.get("error"), dict):
            body = body["error"]
        return ProviderError(
            provider="OpenAI",
            http_code=err.status_code,
            message=body.get("message") or err.message,
            type=body.get("type"),
            param=body.get("param"),
            code=body.get("code"),
        )

    async def list_models(self) -> list[Model]:
        try:
            page = await self.client.models.list()
        except openai.APIStatusError as e:
            raise self._provider_error(e) from e
        except (openai.OpenAIError, httpx.HTTPError) as e:
            raise TransportError(f"listing models: {e}") from e

        ids = sorted(m.id for m in page.data if not self.want_models or m.id in self.want_models)
        return [Model(id=model_id, provider=self.alias) for model_id in ids]

    async def get_completion(
        self,
        prompt: BackendPrompt,
        sink: EventSink,
        cancel_event: asyncio.Event | None = None,
    ) -> None:
        if not prompt.model:
            raise NoModelError()

        init_conversation, context = self._prepare(prompt)
        messages = [_to_wire(m) for m in context]
        model = prompt.model
        message_id = ""
        rounds = 0

        while True:
            tools = await self._list_tools(model, sink)
            result = await self._stream_round(
                message_id, init_conversation, model, messages, tools, sink, cancel_event
            )
            message_id = result.message_id

            if not result.tool_calls:
                await sink.put(
                    BackendResponse(
                        id=message_id,
                        model=model,
                        done=True,
                        init_conversation=init_conversation,
                        usage=result.usage,
                    )
                )
                return

            if rounds >= self.max_tool_rounds:
                raise ToolDepthExceededError(self.max_tool_rounds)
            rounds += 1

            await sink.put(
                BackendResponse(id=message_id, model=model, text="\n", init_conversation=init_conversation)
            )

            calls = [result.tool_calls[idx] for idx in sorted(result.tool_calls)]
            tool_messages = []
            for call in calls:
                called = await self._call_tool(call.function.name, call.function.arguments, tools, sink, cancel_event)
                tool_messages.append(
                    {"role": "tool", "content": serialize_tool_content(called), "tool_call_id": call.id}
                )
            messages = [
                *messages,
                {"role": "assistant", "content": result.text, "tool_calls": [_call_to_wire(c) for c in calls]},
                *tool_messages,
            ]
            logger.debug("Tool round %d for %s done, re-issuing completion", rounds, message_id)

    async def _stream_round(
        self,
        override_id: str,
        init_conversation: bool,
        model: str,
        messages: list[dict[str, Any]],
        tools: list[Tool],
        sink: EventSink,
        cancel_event: asyncio.Event | None,
    ) -> _RoundResult:
        kwargs: dict[str, Any] = {
            "model": model,
            "messages": messages,
            "stream": True,
        }
        if self.max_output_tokens:
            kwargs["max_completion_tokens"] = self.max_output_tokens
        if tools:
            kwargs["tools"] = [_tool_to_wire(t) for t in tools]
            kwargs["tool_choice"] = "auto"

        result = _RoundResult(message_id=override_id)
        try:
            async with self.client.chat.completions.with_streaming_response.create(**kwargs) as response:
                async for raw in response.iter_lines():
                    check_cancelled(cancel_event)
                    line = raw.strip()
                    if not line.startswith(_DATA_PREFIX):
                        continue
                    payload = line[len(_DATA_PREFIX) :]
                    if payload == _DONE:
                        break

                    try:
                        chunk = _Chunk.model_validate_json(payload)
                    except ValidationError as e:
                        raise MalformedStreamError(f"parsing completion response line: {payload}") from e

                    if chunk.usage is not None:
                        result.usage = chunk.usage
                    if not chunk.choices:
                        continue
                    if not result.message_id:
                        result.message_id = chunk.id

                    delta = chunk.choices[0].delta
                    for call in delta.tool_calls or []:
                        current = result.tool_calls.get(call.index)
                        if current is None:
                            result.tool_calls[call.index] = call
                        else:
                            current.merge(call)

                    if not delta.content:
                        continue
                    result.text += delta.content
                    await sink.put(
                        BackendResponse(
                            id=result.message_id,
                            model=model,
                            text=delta.content,
                            init_conversation=init_conversation,
                        )
                    )
        except openai.APIStatusError as e:
            raise self._provider_error(e) from e
        except (openai.OpenAIError, httpx.HTTPError) as e:
            raise TransportError(f"sending completion request: {e}") from e

        return result
