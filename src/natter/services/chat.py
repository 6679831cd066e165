"""Applies streamed completions to a conversation and keeps it persisted and compressed."""

from __future__ import annotations

import asyncio
import logging
from typing import Callable

from ..errors import CompletionCancelled
from ..models import BackendPrompt, BackendResponse, Context, Conversation, Message, Notice
from .backend import Backend, Event
from .compressor import Compressor
from .storage import Storage

logger = logging.getLogger(__name__)

BACKEND_ERROR_TEMPLATE = "Error: Backend failed with the following error: \n\n {err}"

_END = object()


def extract_title(text: str) -> str | None:
    """Title from a response whose first line is a markdown heading."""
    first_line = text.lstrip().split("\n", 1)[0]
    if not first_line.startswith("#"):
        return None
    title = first_line.lstrip("#").strip()
    return title or None


class ChatSession:
    """One open conversation: sends prompts, applies events, persists, compresses.

    Requests are serialized per session; ``send`` must not be called again
    before the previous call returns.
    """

    def __init__(
        self,
        backend: Backend,
        storage: Storage,
        conversation: Conversation,
        model: str,
        compressor: Compressor | None = None,
        on_event: Callable[[Event], None] | None = None,
        stored: bool = False,
    ) -> None:
        self.backend = backend
        self.storage = storage
        self.conversation = conversation
        self.model = model
        self.compressor = compressor
        self.on_event = on_event
        self._stored = stored
        self._cancel_event: asyncio.Event | None = None
        self._compress_task: asyncio.Task | None = None

    def _emit(self, event: Event) -> None:
        if self.on_event is not None:
            self.on_event(event)

    def cancel(self) -> None:
        if self._cancel_event is not None:
            self._cancel_event.set()

    def _save_conversation(self) -> None:
        self.storage.upsert_conversation(self.conversation)
        self._stored = True

    def rename(self, title: str) -> None:
        self.conversation.title = title
        if self._stored:
            self._save_conversation()

    async def send(self, text: str) -> Message | None:
        """Send ``text`` and return the response message once the completion finishes.

        Backend failures are recorded in the conversation as a system message and
        re-raised. On cancellation the partial response is kept.
        """
        context = self.conversation.build_context()
        user_message = Message.new_user(text)
        self.conversation.append_message(user_message)
        self.conversation.model = self.model
        if self._stored:
            self.storage.upsert_message(self.conversation.id, user_message)
        else:
            self._save_conversation()

        prompt = BackendPrompt(text=text).with_model(self.model).with_context(context)
        queue: asyncio.Queue = asyncio.Queue()
        self._cancel_event = asyncio.Event()

        async def produce() -> None:
            try:
                await self.backend.get_completion(prompt, queue, self._cancel_event)
            finally:
                await queue.put(_END)

        task = asyncio.create_task(produce())
        response: Message | None = None
        try:
            while (event := await queue.get()) is not _END:
                if isinstance(event, BackendResponse):
                    response = self._apply(event, user_message)
                self._emit(event)
            await task
        except CompletionCancelled:
            logger.info("Completion for %s cancelled", self.conversation.id)
            if response is not None:
                self.storage.upsert_message(self.conversation.id, response)
            raise
        except Exception as e:
            logger.error("Backend failed for conversation %s: %s", self.conversation.id, e)
            error_message = Message.new_system(BACKEND_ERROR_TEMPLATE.format(err=e))
            self.conversation.append_message(error_message)
            self.storage.upsert_message(self.conversation.id, error_message)
            raise
        finally:
            self._cancel_event = None
            if not task.done():
                task.cancel()

        self._maybe_compress()
        return response

    def _apply(self, event: BackendResponse, user_message: Message) -> Message:
        last = self.conversation.last_message()
        if last is None or not last.is_system():
            last = Message.new_system(id=event.id)
            self.conversation.append_message(last)
        last.append(event.text)

        if not event.done:
            return last

        title_changed = False
        if event.init_conversation:
            title = extract_title(last.text)
            if title:
                self.conversation.title = title
                title_changed = True
        if event.usage is not None:
            user_message.token_count = event.usage.prompt_tokens
            last.token_count = event.usage.completion_tokens

        if title_changed:
            self._save_conversation()
        else:
            self.storage.upsert_message(self.conversation.id, user_message)
            self.storage.upsert_message(self.conversation.id, last)
        return last

    def _maybe_compress(self) -> None:
        if self.compressor is None or not self.compressor.should_compress(self.conversation):
            return
        if self._compress_task is not None and not self._compress_task.done():
            logger.debug("Compression already running for %s", self.conversation.id)
            return
        self._compress_task = asyncio.create_task(self.compress())

    async def compress(self) -> Context | None:
        """Summarize older history into a checkpoint; failures become a notice."""
        if self.compressor is None or not self.compressor.should_compress(self.conversation):
            return None
        model = self.compressor.compress_model or self.model
        self._emit(Notice.warning(f"Compressing conversation using model {model}"))
        try:
            context = await self.compressor.compress(model, self.conversation.model_copy(deep=True))
        except Exception as e:
            logger.warning("Failed to compress conversation %s: %s", self.conversation.id, e)
            self._emit(Notice.warning(f"Failed to compress conversation: {e}"))
            return None
        if context is None:
            return None

        self.storage.upsert_context(self.conversation.id, context)
        self.conversation.append_context(context)
        self._emit(Notice.info("Context compressed!"))
        return context

    async def wait_for_compression(self) -> None:
        if self._compress_task is not None:
            await self._compress_task
