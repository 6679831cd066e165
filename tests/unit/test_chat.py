"""Tests for ChatSession: applying streamed events, persistence and compression."""

from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone
from typing import Iterator

import pytest

from natter.db import init_db
from natter.errors import CompletionCancelled, ProviderError
from natter.models import BackendPrompt, BackendResponse, BackendUsage, Conversation, Message, Model, Notice
from natter.services.backend import Backend, Event, EventSink
from natter.services.chat import BACKEND_ERROR_TEMPLATE, ChatSession, extract_title
from natter.services.compressor import Compressor
from natter.services.storage import SqliteStorage

_WAIT_FOR_CANCEL = object()


class _ScriptedBackend(Backend):
    """Replays one script per call: a list of events, optionally ending in an exception."""

    def __init__(self, scripts: list[list]) -> None:
        self.scripts = list(scripts)
        self.prompts: list[BackendPrompt] = []

    def name(self) -> str:
        return "scripted"

    async def list_models(self) -> list[Model]:
        return [Model(id="m", provider="scripted")]

    async def get_completion(
        self, prompt: BackendPrompt, sink: EventSink, cancel_event: asyncio.Event | None = None
    ) -> None:
        self.prompts.append(prompt)
        for item in self.scripts.pop(0):
            if isinstance(item, Exception):
                raise item
            if item is _WAIT_FOR_CANCEL:
                await cancel_event.wait()
                raise CompletionCancelled()
            await sink.put(item)


def _resp(
    text: str, *, done: bool = False, init: bool = False, usage: tuple[int, int] | None = None
) -> BackendResponse:
    return BackendResponse(
        id="resp-1",
        model="m",
        text=text,
        done=done,
        init_conversation=init,
        usage=BackendUsage(prompt_tokens=usage[0], completion_tokens=usage[1]) if usage else None,
    )


def _history(pairs: int) -> Conversation:
    """Greeting followed by ``pairs`` user/system exchanges, all timestamped in the past."""
    base = datetime(2024, 1, 1, tzinfo=timezone.utc)
    convo = Conversation(title="History", created_at=base, updated_at=base)
    greeting = Message.new_system("Hello!", id="m0")
    greeting.created_at = base
    convo.messages.append(greeting)
    for i in range(1, pairs * 2 + 1):
        msg = Message.new_user(f"q{i}", id=f"m{i}") if i % 2 else Message.new_system(f"a{i}", id=f"m{i}")
        msg.created_at = base + timedelta(seconds=i)
        convo.messages.append(msg)
    return convo


@pytest.fixture()
def storage() -> Iterator[SqliteStorage]:
    store = SqliteStorage(init_db(None))
    yield store
    store.close()


class TestExtractTitle:
    def test_heading(self) -> None:
        assert extract_title("# Weather in Paris\nIt is sunny.") == "Weather in Paris"

    def test_deeper_heading_and_leading_blank_lines(self) -> None:
        assert extract_title("\n\n## Plan  \nbody") == "Plan"

    def test_no_heading(self) -> None:
        assert extract_title("Sure, here you go.\n# Not a title") is None

    def test_empty_heading(self) -> None:
        assert extract_title("#\nbody") is None


class TestSend:
    @pytest.mark.asyncio()
    async def test_first_exchange_sets_title_and_persists(self, storage: SqliteStorage) -> None:
        backend = _ScriptedBackend(
            [
                [
                    _resp("# Greeting\n", init=True),
                    _resp("Hi there", init=True),
                    _resp("", done=True, init=True, usage=(3, 7)),
                ]
            ]
        )
        events: list[Event] = []
        convo = Conversation.new_hello("Hello!")
        chat = ChatSession(backend, storage, convo, "m", on_event=events.append)

        response = await chat.send("Hi")

        assert response.text == "# Greeting\nHi there"
        assert response.id == "resp-1"
        assert len(events) == 3
        assert backend.prompts[0].context == []
        assert backend.prompts[0].model == "m"
        assert backend.prompts[0].text == "Hi"

        assert convo.title == "Greeting"
        assert convo.model == "m"
        user, reply = convo.messages[1:]
        assert user.token_count == 3
        assert reply.token_count == 7

        stored = storage.get_conversation(convo.id)
        assert stored.title == "Greeting"
        assert [m.text for m in stored.messages] == ["Hello!", "Hi", "# Greeting\nHi there"]
        assert stored.messages[1].token_count == 3
        assert stored.messages[2].token_count == 7

    @pytest.mark.asyncio()
    async def test_follow_up_sends_history_and_keeps_title(self, storage: SqliteStorage) -> None:
        convo = _history(1)
        storage.upsert_conversation(convo)
        backend = _ScriptedBackend([[_resp("# Not a title"), _resp("", done=True)]])
        chat = ChatSession(backend, storage, convo, "m", stored=True)

        await chat.send("q3")

        assert [m.id for m in backend.prompts[0].context] == ["m1", "m2"]
        assert convo.title == "History"
        stored = storage.get_conversation(convo.id)
        assert stored.title == "History"
        assert [m.text for m in stored.messages][-2:] == ["q3", "# Not a title"]

    @pytest.mark.asyncio()
    async def test_notices_are_forwarded_not_applied(self, storage: SqliteStorage) -> None:
        notice = Notice.info('Calling tool "echo" (provider: toolbox)')
        backend = _ScriptedBackend([[notice, _resp("done"), _resp("", done=True)]])
        events: list[Event] = []
        convo = Conversation.new_hello("Hello!")
        chat = ChatSession(backend, storage, convo, "m", on_event=events.append)

        await chat.send("Echo")

        assert events[0] is notice
        assert convo.last_message().text == "done"

    @pytest.mark.asyncio()
    async def test_backend_error_is_recorded(self, storage: SqliteStorage) -> None:
        error = ProviderError("OpenAI", 500, "boom")
        backend = _ScriptedBackend([[error]])
        convo = Conversation.new_hello("Hello!")
        chat = ChatSession(backend, storage, convo, "m")

        with pytest.raises(ProviderError):
            await chat.send("Hi")

        expected = BACKEND_ERROR_TEMPLATE.format(err="OpenAI error (500): boom")
        assert convo.last_message().text == expected
        assert convo.last_message().is_system()
        assert storage.get_messages(convo.id)[-1].text == expected

    @pytest.mark.asyncio()
    async def test_cancellation_keeps_partial_response(self, storage: SqliteStorage) -> None:
        backend = _ScriptedBackend([[_resp("Partial"), _WAIT_FOR_CANCEL]])
        convo = Conversation.new_hello("Hello!")
        chat = ChatSession(backend, storage, convo, "m")
        chat.on_event = lambda event: chat.cancel()

        with pytest.raises(CompletionCancelled):
            await chat.send("Write an essay")

        assert convo.last_message().text == "Partial"
        assert storage.get_messages(convo.id)[-1].text == "Partial"

    def test_cancel_without_request_is_noop(self, storage: SqliteStorage) -> None:
        ChatSession(_ScriptedBackend([]), storage, Conversation.new_hello("Hello!"), "m").cancel()


class TestRename:
    def test_unsaved_conversation_is_not_written(self, storage: SqliteStorage) -> None:
        convo = Conversation.new_hello("Hello!")
        ChatSession(_ScriptedBackend([]), storage, convo, "m").rename("Draft")
        assert convo.title == "Draft"
        assert storage.get_conversation(convo.id) is None

    def test_stored_conversation_is_written(self, storage: SqliteStorage) -> None:
        convo = _history(1)
        storage.upsert_conversation(convo)
        ChatSession(_ScriptedBackend([]), storage, convo, "m", stored=True).rename("Renamed")
        assert storage.get_conversation(convo.id).title == "Renamed"


class TestCompression:
    @pytest.mark.asyncio()
    async def test_send_triggers_background_compression(self, storage: SqliteStorage) -> None:
        convo = _history(4)
        storage.upsert_conversation(convo)
        summarizer = _ScriptedBackend([[_resp("Summary: four questions."), _resp("", done=True, usage=(20, 4))]])
        compressor = Compressor(summarizer, enabled=True, max_convo_length=3)
        backend = _ScriptedBackend([[_resp("a9"), _resp("", done=True)]])
        events: list[Event] = []
        chat = ChatSession(backend, storage, convo, "m", compressor=compressor, on_event=events.append, stored=True)

        await chat.send("q9")
        await chat.wait_for_compression()

        notices = [e for e in events if isinstance(e, Notice)]
        assert [(n.kind, n.message) for n in notices] == [
            ("warning", "Compressing conversation using model m"),
            ("info", "Context compressed!"),
        ]
        assert summarizer.prompts[0].no_generate_title
        assert len(convo.contexts) == 1
        context = convo.contexts[0]
        assert context.last_message_id == "m4"
        assert context.content == "Summary: four questions."
        assert context.token_count == 4

        stored = storage.get_conversation(convo.id)
        assert [c.content for c in stored.contexts] == ["Summary: four questions."]
        assert stored.build_context()[0].is_context

    @pytest.mark.asyncio()
    async def test_failure_becomes_warning(self, storage: SqliteStorage) -> None:
        convo = _history(5)
        storage.upsert_conversation(convo)
        compressor = Compressor(_ScriptedBackend([[RuntimeError("boom")]]), enabled=True, max_convo_length=3)
        events: list[Event] = []
        chat = ChatSession(
            _ScriptedBackend([]), storage, convo, "m", compressor=compressor, on_event=events.append, stored=True
        )

        assert await chat.compress() is None

        assert events[-1].kind == "warning"
        assert events[-1].message == "Failed to compress conversation: boom"
        assert convo.contexts == []
        assert storage.get_conversation(convo.id).contexts == []

    @pytest.mark.asyncio()
    async def test_no_compressor(self, storage: SqliteStorage) -> None:
        chat = ChatSession(_ScriptedBackend([]), storage, _history(5), "m")
        assert await chat.compress() is None
        await chat.wait_for_compression()

    @pytest.mark.asyncio()
    async def test_compress_model_override(self, storage: SqliteStorage) -> None:
        convo = _history(5)
        storage.upsert_conversation(convo)
        summarizer = _ScriptedBackend([[_resp("Summary: ok."), _resp("", done=True)]])
        compressor = Compressor(summarizer, enabled=True, max_convo_length=3, compress_model="small")
        events: list[Event] = []
        chat = ChatSession(
            _ScriptedBackend([]), storage, convo, "m", compressor=compressor, on_event=events.append, stored=True
        )

        await chat.compress()

        assert events[0].message == "Compressing conversation using model small"
        assert summarizer.prompts[0].model == "small"
