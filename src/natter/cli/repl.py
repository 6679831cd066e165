"""REPL loop and one-shot mode for the natter CLI."""

from __future__ import annotations

import asyncio
import logging
import platform
import signal
from typing import Any

from ..config import AppConfig
from ..errors import CompletionCancelled
from ..models import BackendResponse, Conversation, Model, Notice
from ..services.backend import Backend, Event
from ..services.chat import ChatSession
from ..services.compressor import Compressor
from ..services.mcp_manager import McpClient
from ..services.storage import Storage
from . import renderer

logger = logging.getLogger(__name__)

_IS_WINDOWS = platform.system() == "Windows"

COMMANDS = [
    "new", "list", "resume", "models", "model", "tools", "compact",
    "code", "title", "delete", "help", "quit", "exit",
]


def _add_signal_handler(loop: asyncio.AbstractEventLoop, sig: int, callback: Any) -> bool:
    """Add a signal handler, returning False on Windows where it's unsupported."""
    if _IS_WINDOWS:
        return False
    try:
        loop.add_signal_handler(sig, callback)
        return True
    except NotImplementedError:
        return False


def _remove_signal_handler(loop: asyncio.AbstractEventLoop, sig: int) -> None:
    """Remove a signal handler, no-op on Windows."""
    if _IS_WINDOWS:
        return
    try:
        loop.remove_signal_handler(sig)
    except NotImplementedError:
        pass


class _TurnView:
    """Feeds session events to the renderer: tokens are buffered, notices printed."""

    def __init__(self) -> None:
        self.elapsed = 0.0

    def on_event(self, event: Event) -> None:
        if isinstance(event, Notice):
            renderer.render_notice(event)
            return
        if isinstance(event, BackendResponse):
            if not renderer.is_thinking():
                renderer.start_thinking()
            renderer.render_token(event.text)
            renderer.update_thinking()

    def finish(self) -> None:
        if renderer.is_thinking():
            self.elapsed += renderer.stop_thinking()
        renderer.render_newline()
        renderer.render_response_end()


def resolve_model(requested: str | None, default: str | None, models: list[Model]) -> str | None:
    """Pick the model to chat with: explicit request, then configured default, then first listed."""
    if requested:
        return requested
    if default:
        return default
    return models[0].id if models else None


def _open_conversation(
    storage: Storage,
    hello_message: str,
    continue_last: bool = False,
    conversation_id: str | None = None,
) -> tuple[Conversation, bool]:
    """Return the conversation to chat in and whether it already exists in storage."""
    target = conversation_id
    if target is None and continue_last:
        latest = storage.list_conversations(limit=1)
        if latest:
            target = latest[0]["id"]

    if target is not None:
        conversation = storage.get_conversation(target)
        if conversation is not None:
            return conversation, True
        renderer.render_error(f"Conversation {target} not found, starting new")
    return Conversation.new_hello(hello_message), False


async def _send(chat: ChatSession, text: str, config: AppConfig) -> None:
    view = _TurnView()
    chat.on_event = view.on_event

    loop = asyncio.get_event_loop()
    original_handler = signal.getsignal(signal.SIGINT)
    _add_signal_handler(loop, signal.SIGINT, chat.cancel)
    try:
        response = await chat.send(text)
    except CompletionCancelled:
        view.finish()
        renderer.render_info("Response cancelled")
        return
    except Exception as e:
        view.finish()
        logger.exception("Chat request failed")
        renderer.render_error(str(e))
        return
    finally:
        _remove_signal_handler(loop, signal.SIGINT)
        if not _IS_WINDOWS:
            signal.signal(signal.SIGINT, original_handler)

    view.finish()
    if config.general.show_usage and response is not None:
        truncation = config.context.truncation
        user_message = chat.conversation.messages[-2] if len(chat.conversation.messages) > 1 else None
        renderer.render_usage_footer(
            context_tokens=chat.conversation.token_count(),
            prompt_tokens=user_message.token_count if user_message else 0,
            completion_tokens=response.token_count,
            elapsed=view.elapsed,
            max_context=truncation.max_tokens if truncation.enabled else None,
        )
    renderer.render_newline()


async def run_cli(
    config: AppConfig,
    backend: Backend,
    storage: Storage,
    compressor: Compressor | None = None,
    mcp: McpClient | None = None,
    model: str | None = None,
    prompt: str | None = None,
    continue_last: bool = False,
    conversation_id: str | None = None,
) -> None:
    """Main entry point for CLI mode."""
    models = await backend.list_models()
    current_model = resolve_model(model, config.backend.default_model, models)
    if current_model is None:
        renderer.render_error("No models available from the configured connections")
        return
    if current_model not in {m.id for m in models}:
        renderer.render_notice(Notice.warning(f"Model {current_model} is not offered by any connection"))

    conversation, stored = _open_conversation(
        storage,
        config.general.hello_message,
        continue_last=continue_last,
        conversation_id=conversation_id,
    )
    chat = ChatSession(
        backend,
        storage,
        conversation,
        current_model,
        compressor=compressor,
        stored=stored,
    )

    if prompt:
        await _send(chat, prompt, config)
        await chat.wait_for_compression()
        return

    tools = await mcp.list_tools() if mcp is not None else []
    renderer.render_welcome(current_model, len(models), len(tools), config.general.hello_message)
    if stored:
        renderer.render_info(f"Resumed: {conversation.title} ({len(conversation.messages)} messages)")

    await _run_repl(config, backend, storage, chat, mcp)
    await chat.wait_for_compression()


async def _switch_conversation(chat: ChatSession, conversation: Conversation, stored: bool = False) -> ChatSession:
    """Let the current session finish compressing, then start one on ``conversation``."""
    await chat.wait_for_compression()
    return ChatSession(
        chat.backend,
        chat.storage,
        conversation,
        chat.model,
        compressor=chat.compressor,
        stored=stored,
    )


async def _run_repl(
    config: AppConfig,
    backend: Backend,
    storage: Storage,
    chat: ChatSession,
    mcp: McpClient | None,
) -> None:
    """Run the interactive REPL."""
    from prompt_toolkit import PromptSession
    from prompt_toolkit.completion import WordCompleter
    from prompt_toolkit.history import FileHistory
    from prompt_toolkit.key_binding import KeyBindings

    completer = WordCompleter([f"/{c}" for c in COMMANDS], sentence=True)
    history_path = config.data_dir / "cli_history"

    kb = KeyBindings()

    @kb.add("escape", "enter")
    def _newline(event: Any) -> None:
        event.current_buffer.insert_text("\n")

    # Ctrl+C: clear buffer if text present, exit if empty
    _exit_flag: list[bool] = [False]

    @kb.add("c-c")
    def _handle_ctrl_c(event: Any) -> None:
        buf = event.current_buffer
        if buf.text:
            buf.reset()
        else:
            _exit_flag[0] = True
            buf.validate_and_handle()

    session: PromptSession[str] = PromptSession(
        history=FileHistory(str(history_path)),
        key_bindings=kb,
        multiline=False,
        completer=completer,
    )

    while True:
        _exit_flag[0] = False
        try:
            user_input = await session.prompt_async("you> ", multiline=False)
        except EOFError:
            break
        except KeyboardInterrupt:
            continue

        if _exit_flag[0]:
            break

        user_input = user_input.strip()
        if not user_input:
            continue

        if not user_input.startswith("/"):
            await _send(chat, user_input, config)
            continue

        parts = user_input.split(maxsplit=1)
        cmd = parts[0].lower()
        arg = parts[1].strip() if len(parts) > 1 else ""

        if cmd in ("/quit", "/exit"):
            break
        elif cmd == "/help":
            renderer.render_help()
        elif cmd == "/new":
            chat = await _switch_conversation(chat, Conversation.new_hello(config.general.hello_message))
            renderer.render_info("New conversation started")
        elif cmd == "/list":
            renderer.render_conversations(storage.list_conversations(search=arg or None, limit=20))
        elif cmd == "/resume":
            if not arg:
                renderer.render_info("Usage: /resume <number> or /resume <conversation_id>")
                continue
            resolved_id = arg
            if arg.isdigit():
                idx = int(arg) - 1
                convs = storage.list_conversations(limit=20)
                if not 0 <= idx < len(convs):
                    renderer.render_error(f"Invalid number: {arg}")
                    continue
                resolved_id = convs[idx]["id"]
            loaded = storage.get_conversation(resolved_id)
            if loaded is None:
                renderer.render_error(f"Conversation not found: {resolved_id}")
                continue
            chat = await _switch_conversation(chat, loaded, stored=True)
            renderer.render_info(f"Resumed: {loaded.title} ({len(loaded.messages)} messages)")
        elif cmd == "/models":
            renderer.render_models(await backend.list_models(), chat.model)
        elif cmd == "/model":
            if not arg:
                renderer.render_info(f"Current model: {chat.model}\nUsage: /model <model_id>")
                continue
            available = {m.id for m in await backend.list_models()}
            if arg not in available:
                renderer.render_error(f"Model is not available: {arg}")
                continue
            chat.model = arg
            renderer.render_info(f"Switched to model: {arg}")
        elif cmd == "/tools":
            renderer.render_tools(await mcp.list_tools() if mcp is not None else [])
        elif cmd == "/compact":
            chat.on_event = renderer.render_notice
            if await chat.compress() is None:
                renderer.render_info("Nothing to compress")
        elif cmd == "/code":
            last = chat.conversation.last_message()
            renderer.render_codeblocks(last.codeblocks() if last is not None and last.is_system() else [])
        elif cmd == "/title":
            if not arg:
                renderer.render_info(f"Title: {chat.conversation.title}\nUsage: /title <text>")
                continue
            chat.rename(arg)
            renderer.render_info(f"Renamed to: {arg}")
        elif cmd == "/delete":
            storage.delete_conversation(chat.conversation.id)
            renderer.render_info(f"Deleted: {chat.conversation.title}")
            chat = await _switch_conversation(chat, Conversation.new_hello(config.general.hello_message))
        else:
            renderer.render_error(f"Unknown command: {cmd}. Type /help for commands.")
