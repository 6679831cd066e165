"""Pydantic models for conversations, messages and backend wire events."""

from __future__ import annotations

import json
import re
import uuid
from bisect import insort
from datetime import datetime, timezone
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field

DEFAULT_TITLE = "New Chat"

_CODEBLOCK_RE = re.compile(r"```[^\n]*\n(.*?)```", re.DOTALL)


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _uuid() -> str:
    return str(uuid.uuid4())


# --- Messages ---


class Issuer(BaseModel):
    kind: Literal["system", "user"]
    name: str = ""

    @classmethod
    def system(cls, name: str = "") -> Issuer:
        return cls(kind="system", name=name)

    @classmethod
    def user(cls, name: str = "") -> Issuer:
        return cls(kind="user", name=name)

    def is_system(self) -> bool:
        return self.kind == "system"


class Message(BaseModel):
    id: str
    issuer: Issuer
    text: str = ""
    token_count: int = 0
    created_at: datetime = Field(default_factory=_now)
    is_context: bool = False

    @classmethod
    def new_system(cls, text: str = "", *, id: str | None = None, name: str = "system") -> Message:
        return cls(id=id or _uuid(), issuer=Issuer.system(name), text=text)

    @classmethod
    def new_user(cls, text: str = "", *, id: str | None = None, name: str = "user") -> Message:
        return cls(id=id or _uuid(), issuer=Issuer.user(name), text=text)

    def is_system(self) -> bool:
        return self.issuer.is_system()

    def append(self, text: str) -> None:
        self.text += text.replace("\t", "  ")

    def codeblocks(self) -> list[str]:
        """Bodies of the fenced code blocks in this message, in order."""
        return [m.group(1) for m in _CODEBLOCK_RE.finditer(self.text)]

    def __lt__(self, other: Message) -> bool:
        return self.created_at < other.created_at


class Context(BaseModel):
    """A checkpoint summary standing in for every message up to ``last_message_id``."""

    id: str = Field(default_factory=_uuid)
    content: str = ""
    last_message_id: str
    token_count: int = 0
    created_at: datetime = Field(default_factory=_now)

    def append(self, text: str) -> None:
        self.content += text

    def to_message(self) -> Message:
        return Message(
            id=self.id,
            issuer=Issuer.system("system"),
            text=self.content,
            token_count=self.token_count,
            created_at=self.created_at,
            is_context=True,
        )

    def __lt__(self, other: Context) -> bool:
        return self.created_at < other.created_at


class Conversation(BaseModel):
    id: str = Field(default_factory=_uuid)
    title: str = DEFAULT_TITLE
    model: str | None = None
    messages: list[Message] = Field(default_factory=list)
    contexts: list[Context] = Field(default_factory=list)
    created_at: datetime = Field(default_factory=_now)
    updated_at: datetime = Field(default_factory=_now)

    @classmethod
    def new_hello(cls, hello_message: str) -> Conversation:
        convo = cls()
        convo.append_message(Message.new_system(hello_message))
        return convo

    def append_message(self, message: Message) -> None:
        insort(self.messages, message)
        self.updated_at = _now()

    def append_context(self, context: Context) -> None:
        insort(self.contexts, context)
        self.updated_at = _now()

    def last_message(self) -> Message | None:
        return self.messages[-1] if self.messages else None

    def last_context(self) -> Context | None:
        return self.contexts[-1] if self.contexts else None

    def message_index(self, message_id: str) -> int | None:
        for i, msg in enumerate(self.messages):
            if msg.id == message_id:
                return i
        return None

    def build_context(self) -> list[Message]:
        """Messages to send ahead of a new user prompt.

        Checkpoints replace the history they summarize. The greeting that opens
        every conversation is never sent, and the window always ends on a
        system message.
        """
        if len(self.messages) < 3 and not self.contexts:
            return []

        context = [ctx.to_message() for ctx in self.contexts]
        last_ctx = self.last_context()
        if last_ctx is not None:
            idx = self.message_index(last_ctx.last_message_id)
            start = idx + 1 if idx is not None else max(len(self.messages) - 1, 0)
        else:
            start = 1
        context.extend(msg.model_copy() for msg in self.messages[start:])

        if context and not context[-1].is_system():
            context.pop()
        return context

    def token_count(self) -> int:
        last_ctx = self.last_context()
        if last_ctx is None:
            return sum(msg.token_count for msg in self.messages)

        idx = self.message_index(last_ctx.last_message_id)
        start = idx + 1 if idx is not None else len(self.messages)
        total = sum(ctx.token_count for ctx in self.contexts)
        return total + sum(msg.token_count for msg in self.messages[start:])


# --- Backend ---


class Model(BaseModel):
    id: str
    provider: str = ""


class BackendPrompt(BaseModel):
    model_config = ConfigDict(frozen=True)

    text: str
    model: str = ""
    context: list[Message] = Field(default_factory=list)
    no_generate_title: bool = False

    def with_model(self, model: str) -> BackendPrompt:
        return self.model_copy(update={"model": model})

    def with_context(self, context: list[Message]) -> BackendPrompt:
        return self.model_copy(update={"context": context})

    def with_no_generate_title(self) -> BackendPrompt:
        return self.model_copy(update={"no_generate_title": True})


class BackendUsage(BaseModel):
    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int = 0


class BackendResponse(BaseModel):
    id: str
    model: str
    text: str = ""
    done: bool = False
    init_conversation: bool = False
    usage: BackendUsage | None = None


class Notice(BaseModel):
    kind: Literal["info", "warning", "error"] = "info"
    message: str

    @classmethod
    def info(cls, message: str) -> Notice:
        return cls(kind="info", message=message)

    @classmethod
    def warning(cls, message: str) -> Notice:
        return cls(kind="warning", message=message)


# --- Tools ---


class Tool(BaseModel):
    name: str
    description: str | None = None
    input_schema: dict[str, Any] = Field(default_factory=dict)
    provider: str = ""

    def registry_key(self) -> tuple[str, str | None, str]:
        """Identity of a tool in the aggregated registry: name, description and schema."""
        return self.name, self.description, json.dumps(self.input_schema, sort_keys=True)


class FunctionCall(BaseModel):
    name: str | None = None
    arguments: str | None = None


class ToolCallResponse(BaseModel):
    index: int
    id: str | None = None
    type: str | None = "function"
    function: FunctionCall = Field(default_factory=FunctionCall)

    def merge(self, delta: ToolCallResponse) -> None:
        """Fold a later streamed fragment at the same index into this call."""
        if delta.id and not self.id:
            self.id = delta.id
        if delta.function.name and not self.function.name:
            self.function.name = delta.function.name
        if delta.function.arguments:
            self.function.arguments = (self.function.arguments or "") + delta.function.arguments
