"""Checkpoint-based summarization of long conversations."""

from __future__ import annotations

import asyncio
import logging

from ..config import KEEP_N_MESSAGES, MAX_CONTEXT_LENGTH, MAX_CONVO_LENGTH, CompressionConfig
from ..models import BackendPrompt, BackendResponse, Context, Conversation, Message
from .backend import Backend

logger = logging.getLogger(__name__)

SUMMARY_PROMPT = (
    "Summarize the following conversation in a compact yet comprehensive manner.\n"
    "Focus on the key points, decisions, and any critical information exchanged, while omitting trivial "
    "or redundant details. Include specific actions or plans that were agreed upon.\n"
    "Ensure that the summary is understandable on its own, providing enough context for someone who "
    "hasn't read the entire conversation.\n"
    "Aim to capture the essence of the discussion while keeping the summary as concise as possible.\n"
    "The summary should be started with Summary: and end with a period.\n"
    "---\n"
)


def message_categorize(message: Message) -> str:
    if message.is_context:
        return "Context"
    if message.is_system():
        return "System"
    return "User"


def find_checkpoint(conversation: Conversation, keep_n_messages: int) -> int | None:
    """Index of the newest system message that leaves ``keep_n_messages`` after it, if any."""
    last = len(conversation.messages) - 1 - keep_n_messages
    while last > 0 and not conversation.messages[last].is_system():
        last -= 1
    if last <= 0:
        return None
    return last


class Compressor:
    def __init__(
        self,
        backend: Backend,
        *,
        enabled: bool = False,
        max_context_length: int = MAX_CONTEXT_LENGTH,
        max_convo_length: int = MAX_CONVO_LENGTH,
        keep_n_messages: int = KEEP_N_MESSAGES,
        compress_model: str | None = None,
    ) -> None:
        self.backend = backend
        self.enabled = enabled
        self.max_context_length = max_context_length
        self.max_convo_length = max_convo_length
        self.keep_n_messages = max(keep_n_messages, KEEP_N_MESSAGES)
        self.compress_model = compress_model

    @classmethod
    def from_config(cls, backend: Backend, config: CompressionConfig) -> Compressor:
        return cls(
            backend,
            enabled=config.enabled,
            max_context_length=config.max_tokens,
            max_convo_length=config.max_messages,
            keep_n_messages=config.keep_n_messages,
            compress_model=config.compress_model,
        )

    def should_compress(self, conversation: Conversation) -> bool:
        if not self.enabled or len(conversation.messages) < self.keep_n_messages:
            return False

        # Leave the latest exchange out of the count in case it is being regenerated
        last = conversation.last_message()
        if last is None:
            offset = 0
        elif last.is_system():
            offset = 2
        else:
            offset = 1
        message_count = len(conversation.messages) - offset
        return conversation.token_count() > self.max_context_length or message_count > self.max_convo_length

    def build_prompt(self, conversation: Conversation, end: int) -> str:
        start = 0
        last_ctx = conversation.last_context()
        if last_ctx is not None:
            idx = conversation.message_index(last_ctx.last_message_id)
            start = idx + 1 if idx is not None else 0

        messages = [ctx.to_message() for ctx in conversation.contexts]
        messages.extend(conversation.messages[start : end + 1])
        body = "\n".join(f"{message_categorize(msg)}: {msg.text}" for msg in messages)
        return SUMMARY_PROMPT + body

    async def compress(self, model: str, conversation: Conversation) -> Context | None:
        if not self.should_compress(conversation):
            return None

        end = find_checkpoint(conversation, self.keep_n_messages)
        if end is None:
            return None

        prompt = (
            BackendPrompt(text=self.build_prompt(conversation, end))
            .with_model(self.compress_model or model)
            .with_no_generate_title()
        )
        sink: asyncio.Queue = asyncio.Queue()
        await self.backend.get_completion(prompt, sink)

        context = Context(last_message_id=conversation.messages[end].id)
        while not sink.empty():
            event = sink.get_nowait()
            if not isinstance(event, BackendResponse):
                logger.debug("Ignoring %s while compressing", type(event).__name__)
                continue
            context.append(event.text)
            if event.done:
                context.id = event.id
                if event.usage is not None:
                    context.token_count = event.usage.completion_tokens
                break

        if not context.content:
            return None
        logger.info("Compressed %s up to message %s", conversation.id, context.last_message_id)
        return context
