"""Gemini-compatible ``streamGenerateContent`` client."""

from __future__ import annotations

import asyncio
import json
import logging
import uuid
from typing import Any

import httpx
from pydantic import BaseModel, ConfigDict, Field, ValidationError
from pydantic.alias_generators import to_camel

from ..config import BackendConfig, ConnectionConfig, TruncationConfig
from ..errors import MalformedStreamError, NoModelError, ProviderError, ToolDepthExceededError, TransportError
from ..models import BackendPrompt, BackendResponse, BackendUsage, Message, Model, Tool
from .backend import USER_AGENT, EventSink, ProviderBackend, check_cancelled
from .mcp_manager import McpClient

logger = logging.getLogger(__name__)


class _CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def to_wire(self) -> dict[str, Any]:
        return self.model_dump(by_alias=True, exclude_none=True)


class InlineData(_CamelModel):
    mime_type: str = ""
    data: str = ""


class FunctionCall(_CamelModel):
    id: str | None = None
    name: str
    args: dict[str, Any] | None = None


class FunctionResponse(_CamelModel):
    id: str | None = None
    name: str
    response: dict[str, Any] | None = None


class Part(_CamelModel):
    text: str | None = None
    inline_data: InlineData | None = None
    function_call: FunctionCall | None = None
    function_response: FunctionResponse | None = None


class Content(_CamelModel):
    role: str = "user"
    parts: list[Part] = Field(default_factory=list)


class Candidate(_CamelModel):
    content: Content | None = None
    finish_reason: str | None = None


class UsageMetadata(_CamelModel):
    prompt_token_count: int = 0
    candidates_token_count: int = 0
    total_token_count: int = 0


class GenerateContentResponse(_CamelModel):
    candidates: list[Candidate] = Field(default_factory=list)
    usage_metadata: UsageMetadata | None = None
    model_version: str | None = None

    def first_part(self) -> Part | None:
        if not self.candidates or self.candidates[0].content is None:
            return None
        parts = self.candidates[0].content.parts
        return parts[0] if parts else None


def format_model(model: str) -> str:
    """Normalise ``x``, ``model/x`` and ``models/x`` to ``models/x``."""
    for prefix in ("model/", "models/"):
        if model.startswith(prefix):
            model = model[len(prefix) :]
            break
    return f"models/{model}"


def parse_line_buffer(lines: list[str]) -> GenerateContentResponse:
    """Parse one element of the streamed JSON array from its buffered lines."""
    raw = "".join(lines).strip()
    raw = raw.removeprefix("[").strip()
    raw = raw.removesuffix("]").strip()
    raw = raw.removesuffix(",").strip()
    try:
        return GenerateContentResponse.model_validate_json(raw)
    except ValidationError as e:
        raise MalformedStreamError(f"unmarshalling response: {raw}") from e


def _to_wire(message: Message) -> Content:
    role = "model" if message.is_system() else "user"
    return Content(role=role, parts=[Part(text=message.text)])


def _tool_to_wire(tool: Tool) -> dict[str, Any]:
    declaration: dict[str, Any] = {"name": tool.name, "parameters": tool.input_schema}
    if tool.description is not None:
        declaration["description"] = tool.description
    return {"functionDeclarations": [declaration]}


class GeminiBackend(ProviderBackend):
    default_alias = "Gemini"
    default_endpoint = "https://generativelanguage.googleapis.com/v1beta"

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
        self.want_models = [format_model(m) for m in self.want_models]
        self.client = http_client or httpx.AsyncClient(timeout=self.timeout)

    def _params(self) -> dict[str, str]:
        return {"key": self.api_key} if self.api_key else {}

    async def _provider_error(self, response: httpx.Response) -> ProviderError:
        body = await response.aread()
        try:
            err = json.loads(body).get("error", {})
        except (ValueError, AttributeError) as e:
            raise TransportError(f"parsing error response: {body.decode(errors='replace')}") from e
        return ProviderError(
            provider="Gemini",
            http_code=response.status_code,
            message=err.get("message", ""),
            code=err.get("code"),
            type=err.get("status"),
        )

    async def list_models(self) -> list[Model]:
        try:
            response = await self.client.get(
                f"{self.endpoint}/models",
                params=self._params(),
                headers={"User-Agent": USER_AGENT},
            )
        except httpx.HTTPError as e:
            raise TransportError(f"listing models: {e}") from e

        if not response.is_success:
            raise await self._provider_error(response)

        keep_all = not self.want_models
        ids = []
        for entry in response.json().get("models", []):
            name = entry.get("name", "")
            if "generateContent" not in entry.get("supportedGenerationMethods", []):
                continue
            if keep_all or name in self.want_models:
                ids.append(name.removeprefix("models/"))
        return [Model(id=model_id, provider=self.alias) for model_id in sorted(ids)]

    async def get_completion(
        self,
        prompt: BackendPrompt,
        sink: EventSink,
        cancel_event: asyncio.Event | None = None,
    ) -> None:
        if not prompt.model:
            raise NoModelError()

        init_conversation, context = self._prepare(prompt)
        contents = [_to_wire(m) for m in context]
        model = prompt.model
        message_id = str(uuid.uuid4())
        rounds = 0

        while True:
            tools = await self._list_tools(model, sink)
            text, function_calls, usage = await self._stream_round(
                message_id, init_conversation, model, contents, tools, sink, cancel_event
            )

            if not function_calls:
                await sink.put(
                    BackendResponse(
                        id=message_id,
                        model=model,
                        done=True,
                        init_conversation=init_conversation,
                        usage=usage,
                    )
                )
                return

            if rounds >= self.max_tool_rounds:
                raise ToolDepthExceededError(self.max_tool_rounds)
            rounds += 1

            await sink.put(
                BackendResponse(id=message_id, model=model, text="\n", init_conversation=init_conversation)
            )

            responses = []
            for call in function_calls:
                called = await self._call_tool(call.name, call.args, tools, sink, cancel_event)
                result = [item.model_dump(mode="json", exclude_none=True) for item in called.content]
                responses.append(FunctionResponse(id=call.id, name=call.name, response={"result": result}))

            model_turn = Content(role="model")
            if text:
                model_turn.parts.append(Part(text=text))
            model_turn.parts.extend(Part(function_call=call) for call in function_calls)
            contents = [
                *contents,
                model_turn,
                Content(role="user", parts=[Part(function_response=r) for r in responses]),
            ]

    async def _stream_round(
        self,
        message_id: str,
        init_conversation: bool,
        model: str,
        contents: list[Content],
        tools: list[Tool],
        sink: EventSink,
        cancel_event: asyncio.Event | None,
    ) -> tuple[str, list[FunctionCall], BackendUsage | None]:
        payload: dict[str, Any] = {"contents": [c.to_wire() for c in contents]}
        if self.max_output_tokens:
            payload["generationConfig"] = {"maxOutputTokens": self.max_output_tokens}
        if tools:
            payload["tools"] = [_tool_to_wire(t) for t in tools]

        text = ""
        function_calls: list[FunctionCall] = []

        async def handle(chunk: GenerateContentResponse) -> None:
            nonlocal text
            part = chunk.first_part()
            if part is None:
                return
            if part.function_call is not None:
                function_calls.append(part.function_call)
            elif part.inline_data is not None:
                logger.warning("Skipping inline %s data in Gemini response", part.inline_data.mime_type)
            elif part.text:
                text += part.text
                await sink.put(
                    BackendResponse(id=message_id, model=model, text=part.text, init_conversation=init_conversation)
                )

        url = f"{self.endpoint}/models/{model}:streamGenerateContent"
        final: GenerateContentResponse | None = None
        buffer: list[str] = []
        try:
            async with self.client.stream(
                "POST",
                url,
                params=self._params(),
                json=payload,
                headers={"User-Agent": USER_AGENT},
            ) as response:
                if not response.is_success:
                    raise await self._provider_error(response)

                async for raw in response.aiter_lines():
                    check_cancelled(cancel_event)
                    line = raw.strip()
                    # Array elements are separated by a line holding a single comma
                    if line != ",":
                        buffer.append(line)
                        continue

                    chunk = parse_line_buffer(buffer)
                    buffer = []
                    if not chunk.candidates:
                        final = chunk
                        break
                    await handle(chunk)
                    if chunk.candidates[0].finish_reason:
                        final = chunk
                        break
        except httpx.HTTPError as e:
            raise TransportError(f"sending completion request: {e}") from e

        if final is None:
            final = parse_line_buffer(buffer) if "".join(buffer).strip() else GenerateContentResponse()
            await handle(final)

        usage = None
        if final.usage_metadata is not None:
            usage = BackendUsage(
                prompt_tokens=final.usage_metadata.prompt_token_count,
                completion_tokens=final.usage_metadata.candidates_token_count,
                total_tokens=final.usage_metadata.total_token_count,
            )
        return text, function_calls, usage
